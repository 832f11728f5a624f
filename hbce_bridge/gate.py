from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from .errors import MalformedEvent, Reason
from .replay_guard import Freshness, Invalid, Stale
from .state import Mode, coerce_mode


@dataclass(frozen=True)
class Accepted:
    event_id: int
    mode: Mode
    estop: bool
    requested_mode: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": "ACCEPTED",
            "event_id": self.event_id,
            "mode": self.mode.value,
            "estop": self.estop,
        }


@dataclass(frozen=True)
class Denied:
    reason: Reason
    event_id: Any = None
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = {"verdict": "DENIED", "reason": self.reason.value, "event_id": self.event_id}
        if self.detail:
            d["detail"] = self.detail
        return d


@dataclass(frozen=True)
class Ignored:
    reason: Reason
    event_id: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"verdict": "IGNORED", "reason": self.reason.value, "event_id": self.event_id}


Verdict = Accepted | Denied | Ignored


def parse_event(event_bytes: bytes) -> Any:
    try:
        return json.loads(event_bytes.decode("utf-8"))
    except (ValueError, RecursionError) as e:
        # Covers bad UTF-8, bad JSON, oversized integers and runaway nesting.
        raise MalformedEvent(str(e)) from e


def record_value(raw: Any) -> Any:
    """A submitted value as it goes into records: scalars verbatim, containers by type name."""
    if raw is None or isinstance(raw, (str, int, float, bool)):
        return raw
    return f"<{type(raw).__name__}>"


def evaluate(event: Any, freshness: Freshness) -> Verdict:
    """First matching rule wins. The order is part of the safety contract."""
    raw_id = record_value(event.get("event_id")) if isinstance(event, dict) else None

    # 1. e-stop is absolute; nothing else is inspected.
    if isinstance(event, dict) and event.get("estop") is True:
        return Denied(Reason.ESTOP_OVERRIDE, raw_id)

    # 2. only a JSON object can carry the fields below.
    if not isinstance(event, dict):
        return Denied(Reason.EVENT_INVALID, None, f"event is {type(event).__name__}, not an object")

    # 3. no usable id, no ordering guarantee.
    if isinstance(freshness, Invalid):
        return Denied(Reason.EVENT_ID_MISSING_OR_INVALID, raw_id, freshness.detail)

    # 4. stale carries no trust signal either way: leave state alone.
    if isinstance(freshness, Stale):
        return Ignored(Reason.EVENT_REPLAY_IGNORED, freshness.event_id)

    # 5. anything short of a verified hash is untrusted.
    if event.get("integrity") != "HASH_OK":
        return Denied(Reason.INTEGRITY_NOT_OK, freshness.event_id)

    # 6. the upstream gate must say yes explicitly.
    if event.get("gate") != "ALLOWED":
        return Denied(Reason.GATE_NOT_ALLOWED, freshness.event_id)

    requested = event.get("mode")
    return Accepted(
        event_id=freshness.event_id,
        mode=coerce_mode(requested) if requested else Mode.HOLD,
        estop=bool(event.get("estop")),
        requested_mode=record_value(requested),
    )
