"""Gate bridge: the single owner of control state and the replay counter.

Pipeline per event, run to completion under one lock:

    ingest -> freshness -> evaluate -> (commit counter -> STATE_ACCEPT
    -> one step -> forced halt) | fail closed | ignore

Every step is ledgered. Nothing here is fatal: every failure path resolves
to a safe, ledgered, denied state.
"""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from .actuator import ActuatorSink, build_sink
from .config import BridgeConfig
from .errors import MalformedEvent, PersistenceFailure, Reason
from .executor import SingleStepExecutor, StepOutcome, command_table
from .gate import Accepted, Denied, Ignored, Verdict, evaluate, parse_event, record_value
from .ledger import LedgerStore, export_record
from .replay_guard import ReplayGuard
from .state import (
    BOOT,
    EVENT_IGNORED,
    EVENT_INGEST,
    EVENT_PARSE_ERROR,
    LEDGER_EXPORT,
    ControlState,
    accept,
    baseline,
    fail_closed,
    replay,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    verdict: Verdict
    outcome: StepOutcome | None
    state: ControlState

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.to_dict(),
            "outcome": self.outcome.to_dict() if self.outcome is not None else None,
            "state": self.state.to_dict(),
        }


class GateBridge:
    def __init__(
        self,
        ledger: LedgerStore,
        guard: ReplayGuard,
        sink: ActuatorSink,
        config: BridgeConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or BridgeConfig.defaults()
        self.ledger = ledger
        self.guard = guard
        self.sink = sink
        self.executor = SingleStepExecutor(
            sink,
            ledger,
            command_table(self.config.actuator.forward_cm, self.config.actuator.rotate_deg),
        )
        self._clock = clock
        self._lock = threading.RLock()
        self._state = baseline()
        self._boot()

    @classmethod
    def open(cls, config: BridgeConfig) -> "GateBridge":
        return cls(
            LedgerStore(config.ledger_path),
            ReplayGuard(config.counter_path),
            build_sink(config.actuator),
            config,
        )

    def _boot(self) -> None:
        log.info("HBCE BRIDGE STARTING...")
        counter_source = self.guard.loaded_from

        # A damaged or rolled-back counter file must never re-open ids the ledger already applied.
        _, ledger_counter = replay(self.ledger.read_all())
        if ledger_counter > self.guard.last_applied_event_id:
            try:
                self.guard.raise_floor(ledger_counter)
                counter_source = "ledger"
            except PersistenceFailure as e:
                log.error("could not persist counter recovered from ledger: %s", e)
            log.warning("replay counter raised to %s from ledger", self.guard.last_applied_event_id)

        self._record(
            BOOT,
            {
                "last_applied_event_id": self.guard.last_applied_event_id,
                "counter_source": counter_source,
                "actuator_live": bool(getattr(self.sink, "live", True)),
                "state": self._state.to_dict(),
            },
            self._clock(),
        )
        log.info("HBCE BRIDGE ACTIVE (last_applied_event_id=%s)", self.guard.last_applied_event_id)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def deliver(self, event_bytes: bytes) -> DeliveryResult:
        with self._lock:
            now = self._clock()
            log.info("EVENT RECEIVED (%d bytes)", len(event_bytes))
            digest = hashlib.sha256(event_bytes).hexdigest()

            try:
                event = parse_event(event_bytes)
            except MalformedEvent as e:
                self._record(EVENT_PARSE_ERROR, {"sha256": digest, "size": len(event_bytes), "error": str(e)}, now)
                return self._deny(Denied(Reason.EVENT_INVALID, None, "unparseable event"), now)

            raw_id = record_value(event.get("event_id")) if isinstance(event, dict) else None
            self._record(EVENT_INGEST, {"event_id": raw_id, "sha256": digest, "size": len(event_bytes)}, now)

            verdict = evaluate(event, self.guard.check(event))

            if isinstance(verdict, Ignored):
                self._record(EVENT_IGNORED, verdict.to_dict(), now)
                log.info("event %s ignored: %s", verdict.event_id, verdict.reason.value)
                return DeliveryResult(verdict, None, self._state)

            if isinstance(verdict, Denied):
                return self._deny(verdict, now)

            return self._apply(verdict, now)

    def report_transport_failure(self, detail: str) -> DeliveryResult:
        """A transport outage is never read as permission."""
        with self._lock:
            return self._deny(Denied(Reason.TRANSPORT_FAILURE, None, detail), self._clock())

    def _apply(self, verdict: Accepted, now: float) -> DeliveryResult:
        try:
            self.guard.commit(verdict.event_id)
        except PersistenceFailure as e:
            log.error("counter commit failed for event %s: %s", verdict.event_id, e)
            return self._deny(Denied(Reason.PERSISTENCE_FAILURE, verdict.event_id, str(e)), now)

        t = accept(self._state, verdict.event_id, verdict.mode, verdict.estop, now, verdict.requested_mode)
        try:
            for kind, payload in t.records:
                self.ledger.append(kind, payload, ts=now)
        except PersistenceFailure as e:
            log.error("STATE_ACCEPT not durable for event %s: %s", verdict.event_id, e)
            return self._deny(Denied(Reason.LEDGER_UNAVAILABLE, verdict.event_id, str(e)), now)

        self._state = t.state
        log.info("event %s accepted: mode=%s", verdict.event_id, verdict.mode.value)

        try:
            outcome, self._state = self.executor.execute_one_step(self._state, now)
        except Exception as e:
            log.exception("single step failed for event %s", verdict.event_id)
            denied = self._deny(Denied(Reason.EXECUTION_FAULT, verdict.event_id, repr(e)), now)
            return DeliveryResult(verdict, None, denied.state)

        return DeliveryResult(verdict, outcome, self._state)

    def _deny(self, verdict: Denied, now: float) -> DeliveryResult:
        t = fail_closed(self._state, verdict.reason, now, verdict.event_id, verdict.detail)
        # The safe state applies whether or not the record lands.
        self._state = t.state
        for kind, payload in t.records:
            self._record(kind, payload, now)
        log.warning("FAIL CLOSED: %s (event_id=%r)", verdict.reason.value, verdict.event_id)
        return DeliveryResult(verdict, None, self._state)

    def _record(self, kind: str, payload: dict, now: float) -> None:
        try:
            self.ledger.append(kind, payload, ts=now)
        except PersistenceFailure as e:
            log.error("ledger append failed for %s: %s", kind, e)

    # ------------------------------------------------------------------
    # Status / export
    # ------------------------------------------------------------------

    def current_state(self) -> ControlState:
        with self._lock:
            return self._state

    @property
    def last_applied_event_id(self) -> int:
        with self._lock:
            return self.guard.last_applied_event_id

    def read_ledger(self) -> list[dict]:
        return self.ledger.read_all()

    def export_ledger(self) -> bytes:
        data = self.ledger.export()
        self._record(LEDGER_EXPORT, export_record(data), self._clock())
        return data

    def verify_ledger(self) -> dict:
        return self.ledger.verify()

    def replay_ledger(self) -> tuple[ControlState, int]:
        return replay(self.ledger.read_all())

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "ok": True,
                "system": "HBCE BRIDGE",
                "state": self._state.to_dict(),
                "last_applied_event_id": self.guard.last_applied_event_id,
                "actuator_live": bool(getattr(self.sink, "live", True)),
            }
