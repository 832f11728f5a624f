"""Append-only bridge ledger (JSONL).

Every decision and action the gate takes lands here, one canonical JSON
object per line, hash chained to the previous entry. ``append`` does not
return until the line has been flushed and fsync'd.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_private_key

from . import __version__
from .errors import PersistenceFailure

log = logging.getLogger(__name__)

ENGINE_VERSION = f"hbce-bridge-{__version__}"


@contextmanager
def _exclusive_file_lock(f):
    """Best-effort cross-platform exclusive file lock.

    Prevents two bridge processes from appending with the same previous_hash.
    """

    locked = False
    try:
        if os.name == "nt":
            import msvcrt

            f.seek(0)
            msvcrt.locking(f.fileno(), msvcrt.LK_LOCK, 1)
        else:
            import fcntl

            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        locked = True
    except (ImportError, OSError):
        log.debug("file lock unavailable for %s", getattr(f, "name", f))

    try:
        yield
    finally:
        if locked:
            if os.name == "nt":
                import msvcrt

                f.seek(0)
                msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def utc_iso(ts: float | None = None) -> str:
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def serialize_entries(entries: Iterable[dict]) -> bytes:
    """Canonical on-disk form of a sequence of entries."""
    return "".join(canonical_json(e) + "\n" for e in entries).encode("utf-8")


def export_record(data: bytes) -> dict:
    """Payload of the LEDGER_EXPORT entry that follows a snapshot."""
    return {
        "sha256": hashlib.sha256(data).hexdigest(),
        "size": len(data),
        "entries": len(data.splitlines()),
    }


def _parse_line(line: bytes) -> dict | None:
    """One ledger line as a dict, or None if it is blank or damaged."""
    raw = line.strip()
    if not raw:
        return None
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (ValueError, RecursionError):
        return None
    return obj if isinstance(obj, dict) else None


@dataclass
class LedgerEntry:
    seq: int
    kind: str
    ts_unix: float
    ts_utc: str
    payload: dict
    engine_version: str
    previous_hash: str
    hash: str | None = None

    def to_dict(self) -> dict:
        d = {
            "seq": self.seq,
            "kind": self.kind,
            "ts_unix": self.ts_unix,
            "ts_utc": self.ts_utc,
            "payload": self.payload,
            "engine_version": self.engine_version,
            "previous_hash": self.previous_hash,
        }
        if self.hash is not None:
            d["hash"] = self.hash
        return d

    def compute_hash(self) -> str:
        d = self.to_dict()
        d.pop("hash", None)
        return _sha256_text(canonical_json(d))


class LedgerStore:
    """Append-only JSONL ledger with a single global hash chain.

    ``append`` is the only mutating operation. ``read_all`` and ``export``
    take the same lock as ``append`` so a reader always sees a whole number
    of entries.
    """

    def __init__(
        self,
        ledger_path: str | Path = "validation/hbce_bridge/ledger.jsonl",
        engine_version: str = ENGINE_VERSION,
    ) -> None:
        self.ledger_path = Path(ledger_path)
        self.engine_version = engine_version
        self._lock = threading.Lock()
        self._check_readable()

    def _check_readable(self) -> None:
        try:
            for _ in self._iter_entries():
                pass
        except OSError as e:
            # Auditability is best-effort relative to availability.
            log.warning("ledger %s unreadable at startup (%s); starting empty", self.ledger_path, e)

    def _iter_entries(self) -> Iterable[dict]:
        if not self.ledger_path.exists():
            return
        with self.ledger_path.open("rb") as f:
            for line in f:
                # Corruption is reported by verify(); readers stay best-effort.
                obj = _parse_line(line)
                if obj is not None:
                    yield obj

    def append(self, kind: str, payload: dict, ts: float | None = None) -> dict:
        if not kind or not isinstance(kind, str):
            raise ValueError("kind must be a non-empty string")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")

        ts_unix = time.time() if ts is None else float(ts)

        with self._lock:
            try:
                self.ledger_path.parent.mkdir(parents=True, exist_ok=True)
                with self.ledger_path.open("a+b") as f:
                    with _exclusive_file_lock(f):
                        # Re-index the tail under the lock: another process may have appended.
                        f.seek(0)
                        prev_hash = ""
                        prev_seq = 0
                        for line in f:
                            obj = _parse_line(line)
                            if obj is None:
                                continue
                            h = obj.get("hash")
                            seq = obj.get("seq")
                            if isinstance(h, str) and isinstance(seq, int):
                                prev_hash = h
                                prev_seq = seq

                        entry = LedgerEntry(
                            seq=prev_seq + 1,
                            kind=kind,
                            ts_unix=ts_unix,
                            ts_utc=utc_iso(ts_unix),
                            payload=payload,
                            engine_version=self.engine_version,
                            previous_hash=prev_hash,
                        )
                        entry.hash = entry.compute_hash()
                        line_out = (canonical_json(entry.to_dict()) + "\n").encode("utf-8")

                        f.seek(0, os.SEEK_END)
                        f.write(line_out)
                        f.flush()
                        os.fsync(f.fileno())
            except OSError as e:
                raise PersistenceFailure(f"ledger append failed ({kind}): {e}") from e
            except (TypeError, ValueError, RecursionError) as e:
                raise PersistenceFailure(f"ledger payload not serializable ({kind}): {e}") from e

            return entry.to_dict()

    def read_all(self) -> list[dict]:
        with self._lock:
            try:
                return list(self._iter_entries())
            except OSError as e:
                log.warning("ledger read failed: %s", e)
                return []

    def export(self) -> bytes:
        """Raw ledger bytes, identical to what ``read_all`` parses."""
        with self._lock:
            try:
                if not self.ledger_path.exists():
                    return b""
                return self.ledger_path.read_bytes()
            except OSError as e:
                log.warning("ledger export failed: %s", e)
                return b""

    def tail(self, n: int = 10) -> list[dict]:
        if n <= 0:
            return []
        return self.read_all()[-n:]

    def verify(self) -> dict:
        """Verify chain links, entry hashes and sequence numbers.

        Returns a structured report.
        """

        ok = True
        reasons: list[str] = []
        total = 0

        prev_hash = ""
        prev_seq = 0

        data = self.export()
        for idx, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
            raw = line.strip()
            if not raw:
                continue
            total += 1
            try:
                obj = json.loads(raw)
            except (ValueError, RecursionError):
                ok = False
                reasons.append(f"line {idx}: invalid json")
                continue

            if not isinstance(obj, dict):
                ok = False
                reasons.append(f"line {idx}: not an object")
                continue

            h = obj.get("hash")
            seq = obj.get("seq")
            if not isinstance(h, str) or not isinstance(seq, int):
                ok = False
                reasons.append(f"line {idx}: missing hash/seq")
                continue

            obj_copy = dict(obj)
            obj_copy.pop("hash", None)
            if _sha256_text(canonical_json(obj_copy)) != h:
                ok = False
                reasons.append(f"line {idx}: hash mismatch")

            if obj.get("previous_hash", "") != prev_hash:
                ok = False
                reasons.append(f"line {idx}: previous_hash mismatch")

            if seq <= prev_seq:
                ok = False
                reasons.append(f"line {idx}: seq not increasing ({prev_seq} -> {seq})")

            prev_hash = h
            prev_seq = seq

        return {
            "ok": ok,
            "ledger_path": str(self.ledger_path),
            "total_entries": total,
            "reasons": reasons,
            "ts_utc": utc_iso(),
        }


# =========================
# Detached export signatures
# =========================

def load_signing_key(path: str | Path) -> ec.EllipticCurvePrivateKey:
    with open(path, "rb") as f:
        key = load_pem_private_key(f.read(), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError(f"{path}: expected an EC private key")
    return key


def generate_signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP384R1())


def public_key_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def sign_export(data: bytes, key: ec.EllipticCurvePrivateKey) -> str:
    return key.sign(data, ec.ECDSA(hashes.SHA256())).hex()


def verify_export(data: bytes, signature: str, public_pem: str) -> bool:
    public_key = serialization.load_pem_public_key(public_pem.encode())
    try:
        public_key.verify(bytes.fromhex(signature), data, ec.ECDSA(hashes.SHA256()))
    except (InvalidSignature, ValueError):
        return False
    return True
