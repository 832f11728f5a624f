"""Control state and its transitions.

The state is never assigned field by field. Each transition is a pure
function returning the next state plus the ledger records that describe it,
so the ledger replayed from entry 0 rebuilds the same state.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Iterable

from .errors import Reason


class Gate(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class Mode(str, Enum):
    HOLD = "HOLD"
    EXPLORE_SLOW = "EXPLORE_SLOW"
    FOLLOW_PROXIMITY = "FOLLOW_PROXIMITY"


class Integrity(str, Enum):
    HASH_OK = "HASH_OK"
    FAIL = "FAIL"
    UNKNOWN = "UNKNOWN"


# Ledger kinds
BOOT = "BOOT"
EVENT_INGEST = "EVENT_INGEST"
EVENT_PARSE_ERROR = "EVENT_PARSE_ERROR"
EVENT_IGNORED = "EVENT_IGNORED"
FAIL_CLOSED = "FAIL_CLOSED"
STATE_ACCEPT = "STATE_ACCEPT"
EXEC_STEP = "EXEC_STEP"
EXEC_SKIP = "EXEC_SKIP"
EXEC_SEND_FAULT = "EXEC_SEND_FAULT"
POST_STEP_FORCED_HALT = "POST_STEP_FORCED_HALT"
LEDGER_EXPORT = "LEDGER_EXPORT"


@dataclass(frozen=True)
class ControlState:
    gate: Gate = Gate.DENIED
    mode: Mode = Mode.HOLD
    integrity: Integrity = Integrity.UNKNOWN
    estop: bool = True
    last_event_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["gate"] = self.gate.value
        d["mode"] = self.mode.value
        d["integrity"] = self.integrity.value
        return d

    @property
    def is_safe(self) -> bool:
        return self.estop and self.gate is Gate.DENIED and self.mode is Mode.HOLD


@dataclass(frozen=True)
class Transition:
    state: ControlState
    records: list[tuple[str, dict]]


def baseline() -> ControlState:
    return ControlState()


def coerce_mode(value: Any) -> Mode:
    if isinstance(value, str):
        try:
            return Mode(value)
        except ValueError:
            pass
    return Mode.HOLD


def fail_closed(state: ControlState, reason: Reason, now: float, event_id: Any = None, detail: str = "") -> Transition:
    new = replace(
        state,
        gate=Gate.DENIED,
        mode=Mode.HOLD,
        integrity=Integrity.FAIL,
        estop=True,
        last_event_time=now,
    )
    payload: dict[str, Any] = {"reason": reason.value, "event_id": event_id, "state": new.to_dict()}
    if detail:
        payload["detail"] = detail
    return Transition(new, [(FAIL_CLOSED, payload)])


def accept(state: ControlState, event_id: int, mode: Mode, estop: bool, now: float, requested_mode: Any = None) -> Transition:
    new = replace(
        state,
        gate=Gate.ALLOWED,
        mode=mode,
        integrity=Integrity.HASH_OK,
        estop=bool(estop),
        last_event_time=now,
    )
    payload = {
        "event_id": event_id,
        "mode": mode.value,
        "estop": bool(estop),
        "requested_mode": requested_mode,
        "state": new.to_dict(),
    }
    return Transition(new, [(STATE_ACCEPT, payload)])


def forced_halt(state: ControlState, now: float, outcome: dict[str, Any] | None = None) -> Transition:
    # Integrity is left as evaluated; only the motion-enabling fields are forced.
    new = replace(state, gate=Gate.DENIED, mode=Mode.HOLD, estop=True, last_event_time=now)
    return Transition(new, [(POST_STEP_FORCED_HALT, {"outcome": outcome or {}, "state": new.to_dict()})])


def replay(entries: Iterable[dict]) -> tuple[ControlState, int]:
    """Rebuild (state, last_applied_event_id) from ledger entries in order."""
    state = baseline()
    counter = 0

    for entry in entries:
        kind = entry.get("kind")
        payload = entry.get("payload")
        payload = payload if isinstance(payload, dict) else {}
        ts = entry.get("ts_unix")
        now = float(ts) if isinstance(ts, (int, float)) else None

        if kind == BOOT:
            state = baseline()
            seed = payload.get("last_applied_event_id")
            if isinstance(seed, int) and not isinstance(seed, bool):
                counter = max(counter, seed)
        elif kind == FAIL_CLOSED:
            try:
                reason = Reason(payload.get("reason"))
            except ValueError:
                reason = Reason.EVENT_INVALID
            event_id = payload.get("event_id")
            # The counter is committed before STATE_ACCEPT is written.
            if reason in (Reason.LEDGER_UNAVAILABLE, Reason.EXECUTION_FAULT) and isinstance(event_id, int):
                counter = max(counter, event_id)
            state = fail_closed(state, reason, now, event_id).state
        elif kind == STATE_ACCEPT:
            event_id = payload.get("event_id")
            if isinstance(event_id, int) and not isinstance(event_id, bool):
                counter = max(counter, event_id)
            state = accept(
                state,
                event_id,
                coerce_mode(payload.get("mode")),
                bool(payload.get("estop")),
                now,
            ).state
        elif kind == POST_STEP_FORCED_HALT:
            state = forced_halt(state, now).state

    return state, counter
