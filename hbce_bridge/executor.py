from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .actuator import ActuatorSink
from .errors import ActuatorFault, PersistenceFailure, Reason
from .ledger import LedgerStore
from .state import (
    EXEC_SEND_FAULT,
    EXEC_SKIP,
    EXEC_STEP,
    ControlState,
    Gate,
    Integrity,
    Mode,
    forced_halt,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Skipped:
    reason: Reason

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": "SKIPPED", "reason": self.reason.value}


@dataclass(frozen=True)
class Executed:
    mode: Mode
    command: str | None = None
    delivered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "EXECUTED",
            "mode": self.mode.value,
            "command": self.command,
            "delivered": self.delivered,
        }


StepOutcome = Skipped | Executed


def command_table(forward_cm: int = 20, rotate_deg: int = 15) -> dict[Mode, str]:
    return {
        Mode.EXPLORE_SLOW: f"forward {int(forward_cm)}",
        Mode.FOLLOW_PROXIMITY: f"cw {int(rotate_deg)}",
    }


class SingleStepExecutor:
    """Issues at most one bounded command, then forces HOLD.

    The caller holds the bridge lock; nothing here loops or retries.
    """

    def __init__(self, sink: ActuatorSink, ledger: LedgerStore, commands: dict[Mode, str] | None = None) -> None:
        self.sink = sink
        self.ledger = ledger
        self.commands = dict(commands) if commands is not None else command_table()

    def execute_one_step(self, state: ControlState, now: float) -> tuple[StepOutcome, ControlState]:
        outcome: StepOutcome | None = None
        try:
            outcome = self._step(state, now)
        finally:
            # Unconditional: the halt is ledgered even if the step itself raised.
            halted = self._halt(state, now, outcome)
        return outcome, halted

    def _preconditions(self, state: ControlState) -> Reason | None:
        if state.estop:
            return Reason.ESTOP_ACTIVE
        if state.gate is not Gate.ALLOWED:
            return Reason.GATE_NOT_ALLOWED
        if state.integrity is not Integrity.HASH_OK:
            return Reason.INTEGRITY_NOT_OK
        return None

    def _step(self, state: ControlState, now: float) -> StepOutcome:
        blocked = self._preconditions(state)
        if blocked is not None:
            self._record(EXEC_SKIP, {"reason": blocked.value, "state": state.to_dict()}, now)
            log.info("step skipped: %s", blocked.value)
            return Skipped(blocked)

        command = self.commands.get(state.mode)
        mode = state.mode if command is not None else Mode.HOLD

        # The intent must be on disk before anything can reach the actuator.
        try:
            self.ledger.append(EXEC_STEP, {"mode": mode.value, "command": command}, ts=now)
        except PersistenceFailure as e:
            log.error("EXEC_STEP not durable, no command sent: %s", e)
            self._record(EXEC_SKIP, {"reason": Reason.LEDGER_UNAVAILABLE.value, "error": str(e)}, now)
            return Skipped(Reason.LEDGER_UNAVAILABLE)

        if command is None:
            return Executed(Mode.HOLD)

        try:
            self.sink.send(command)
        except ActuatorFault as e:
            log.error("actuator fault: %s", e)
            self._record(EXEC_SEND_FAULT, {"mode": mode.value, "command": command, "error": str(e)}, now)
            return Executed(mode, command, delivered=False)

        log.info("EXEC %s -> %s", mode.value, command)
        return Executed(mode, command, delivered=True)

    def _halt(self, state: ControlState, now: float, outcome: StepOutcome | None) -> ControlState:
        t = forced_halt(state, now, outcome.to_dict() if outcome is not None else None)
        for kind, payload in t.records:
            self._record(kind, payload, now)
        return t.state

    def _record(self, kind: str, payload: dict, now: float) -> None:
        try:
            self.ledger.append(kind, payload, ts=now)
        except PersistenceFailure as e:
            log.error("ledger append failed for %s: %s", kind, e)
