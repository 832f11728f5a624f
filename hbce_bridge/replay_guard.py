"""Persisted anti-replay counter.

``check`` is pure: it classifies an event as fresh, stale or invalid against
the last applied id. Only ``commit`` touches disk, and the bridge calls it
only once an event has been fully accepted, before any command goes out.
"""
from __future__ import annotations

import json
import logging
import math
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import PersistenceFailure

log = logging.getLogger(__name__)

_INT_RE = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class Fresh:
    event_id: int


@dataclass(frozen=True)
class Stale:
    event_id: int
    last_applied_event_id: int


@dataclass(frozen=True)
class Invalid:
    detail: str


Freshness = Fresh | Stale | Invalid


def coerce_event_id(value: Any) -> int | None:
    """Integer id from an int, an integer-valued float, or a numeric string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        text = value.strip()
        try:
            if _INT_RE.match(text):
                return int(text)
            f = float(text)
        except ValueError:
            return None
        if math.isfinite(f) and f.is_integer():
            return int(f)
    return None


class ReplayGuard:
    def __init__(self, counter_path: str | Path = "validation/hbce_bridge/replay_counter.json") -> None:
        self.counter_path = Path(counter_path)
        self.loaded_from = "default"
        self._last = self._load()

    @property
    def last_applied_event_id(self) -> int:
        return self._last

    def _load(self) -> int:
        if not self.counter_path.exists():
            return 0
        try:
            obj = json.loads(self.counter_path.read_text(encoding="utf-8"))
        except (OSError, ValueError, RecursionError) as e:
            log.warning("replay counter %s unreadable (%s); starting at 0", self.counter_path, e)
            self.loaded_from = "unreadable"
            return 0

        value = obj.get("last_applied_event_id") if isinstance(obj, dict) else None
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            log.warning("replay counter %s malformed: %r; starting at 0", self.counter_path, obj)
            self.loaded_from = "unreadable"
            return 0

        self.loaded_from = "file"
        return value

    def check(self, event: Any) -> Freshness:
        if not isinstance(event, dict):
            return Invalid("event is not an object")
        if "event_id" not in event:
            return Invalid("event_id missing")

        event_id = coerce_event_id(event.get("event_id"))
        if event_id is None:
            return Invalid(f"event_id not an integer: {event.get('event_id')!r}")

        if event_id <= self._last:
            return Stale(event_id=event_id, last_applied_event_id=self._last)
        return Fresh(event_id)

    def commit(self, event_id: int) -> None:
        """Durably record ``event_id`` as the last applied id."""
        if event_id <= self._last:
            raise PersistenceFailure(f"refusing non-increasing commit {event_id} <= {self._last}")

        self._write(event_id)
        self._last = event_id

    def raise_floor(self, event_id: int) -> bool:
        """Lift the counter to ``event_id`` if it is behind (e.g. after a damaged counter file)."""
        if event_id <= self._last:
            return False
        self.commit(event_id)
        return True

    def _write(self, value: int) -> None:
        data = json.dumps({"last_applied_event_id": value}, sort_keys=True) + "\n"
        try:
            self.counter_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".counter-", dir=str(self.counter_path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.counter_path)
            except BaseException:
                try:
                    os.unlink(tmp)
                except OSError:
                    pass
                raise
            _fsync_dir(self.counter_path.parent)
        except OSError as e:
            raise PersistenceFailure(f"replay counter commit failed: {e}") from e


def _fsync_dir(path: Path) -> None:
    if os.name == "nt":
        return
    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY
    try:
        fd = os.open(str(path), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        log.debug("directory fsync unsupported for %s", path)
    finally:
        os.close(fd)
