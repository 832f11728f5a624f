from hbce_bridge.errors import Reason
from hbce_bridge.state import (
    ControlState,
    Gate,
    Integrity,
    Mode,
    accept,
    baseline,
    fail_closed,
    forced_halt,
    replay,
)


def test_baseline_is_safe():
    state = baseline()
    assert state.is_safe
    assert state.to_dict() == {
        "gate": "DENIED",
        "mode": "HOLD",
        "integrity": "UNKNOWN",
        "estop": True,
        "last_event_time": None,
    }


def test_fail_closed_transition():
    armed = accept(baseline(), 1, Mode.EXPLORE_SLOW, False, 1.0).state
    t = fail_closed(armed, Reason.GATE_NOT_ALLOWED, 2.0, event_id=2)

    assert t.state == ControlState(Gate.DENIED, Mode.HOLD, Integrity.FAIL, True, 2.0)
    assert t.records[0][0] == "FAIL_CLOSED"
    assert t.records[0][1]["reason"] == "GATE_NOT_ALLOWED"


def test_accept_then_halt():
    armed = accept(baseline(), 3, Mode.FOLLOW_PROXIMITY, False, 1.0)
    assert armed.state.gate is Gate.ALLOWED
    assert not armed.state.is_safe
    assert armed.records[0][1]["event_id"] == 3

    halted = forced_halt(armed.state, 1.5)
    assert halted.state.is_safe
    assert halted.state.integrity is Integrity.HASH_OK


def _entry(kind, ts, **payload):
    return {"kind": kind, "ts_unix": ts, "payload": payload}


def test_replay_rebuilds_state_and_counter():
    entries = [
        _entry("BOOT", 1.0, last_applied_event_id=4),
        _entry("EVENT_INGEST", 2.0, event_id=5),
        _entry("STATE_ACCEPT", 2.0, event_id=5, mode="EXPLORE_SLOW", estop=False),
        _entry("EXEC_STEP", 2.0, mode="EXPLORE_SLOW", command="forward 20"),
        _entry("POST_STEP_FORCED_HALT", 2.0),
        _entry("EVENT_IGNORED", 3.0, reason="EVENT_REPLAY_IGNORED", event_id=5),
    ]
    state, counter = replay(entries)

    assert counter == 5
    assert state == ControlState(Gate.DENIED, Mode.HOLD, Integrity.HASH_OK, True, 2.0)


def test_replay_boot_resets_state_and_keeps_counter():
    entries = [
        _entry("STATE_ACCEPT", 1.0, event_id=8, mode="HOLD", estop=False),
        _entry("BOOT", 2.0, last_applied_event_id=0),
    ]
    assert replay(entries) == (baseline(), 8)


def test_replay_counts_committed_id_when_accept_record_was_lost():
    entries = [_entry("FAIL_CLOSED", 1.0, reason="LEDGER_UNAVAILABLE", event_id=6)]
    state, counter = replay(entries)
    assert counter == 6
    assert state.integrity is Integrity.FAIL


def test_replay_tolerates_junk():
    assert replay([{"kind": "WHATEVER"}, {"payload": "x"}, _entry("FAIL_CLOSED", 1.0, reason="???")])[1] == 0
