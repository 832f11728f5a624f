import pytest

from hbce_bridge.errors import MalformedEvent, Reason
from hbce_bridge.gate import Accepted, Denied, Ignored, evaluate, parse_event, record_value
from hbce_bridge.replay_guard import Fresh, Invalid, Stale
from hbce_bridge.state import Mode

GOOD = {"event_id": 1, "integrity": "HASH_OK", "gate": "ALLOWED", "mode": "EXPLORE_SLOW"}


def test_accepts_good_event():
    assert evaluate(GOOD, Fresh(1)) == Accepted(1, Mode.EXPLORE_SLOW, False, "EXPLORE_SLOW")


def test_estop_checked_before_everything():
    # Even an invalid id and a stale verdict lose to the e-stop.
    assert evaluate({"estop": True}, Invalid("event_id missing")).reason is Reason.ESTOP_OVERRIDE
    assert evaluate({**GOOD, "estop": True}, Stale(1, 4)).reason is Reason.ESTOP_OVERRIDE


def test_estop_must_be_literal_true():
    verdict = evaluate({**GOOD, "estop": 1}, Fresh(1))
    assert isinstance(verdict, Accepted)
    assert verdict.estop is True


@pytest.mark.parametrize("event", [[1, 2], "HASH_OK", 42, None])
def test_non_object_is_invalid(event):
    verdict = evaluate(event, Invalid("event is not an object"))
    assert verdict == Denied(Reason.EVENT_INVALID, None, verdict.detail)


def test_invalid_id():
    verdict = evaluate({**GOOD, "event_id": "x"}, Invalid("bad"))
    assert verdict.reason is Reason.EVENT_ID_MISSING_OR_INVALID
    assert verdict.event_id == "x"


def test_stale_is_ignored_not_denied():
    assert evaluate({**GOOD, "integrity": "BAD"}, Stale(1, 1)) == Ignored(Reason.EVENT_REPLAY_IGNORED, 1)


def test_integrity_before_gate():
    verdict = evaluate({**GOOD, "integrity": "hash_ok", "gate": "DENIED"}, Fresh(1))
    assert verdict.reason is Reason.INTEGRITY_NOT_OK


def test_gate_not_allowed():
    assert evaluate({**GOOD, "gate": "allowed"}, Fresh(1)).reason is Reason.GATE_NOT_ALLOWED


@pytest.mark.parametrize("mode,expected", [(None, Mode.HOLD), ("", Mode.HOLD), ("FOLLOW_PROXIMITY", Mode.FOLLOW_PROXIMITY), ("SPIN", Mode.HOLD), (5, Mode.HOLD)])
def test_mode_defaults_to_hold(mode, expected):
    event = {**GOOD, "mode": mode}
    assert evaluate(event, Fresh(1)).mode is expected


def test_verdict_dicts():
    assert evaluate(GOOD, Fresh(1)).to_dict() == {"verdict": "ACCEPTED", "event_id": 1, "mode": "EXPLORE_SLOW", "estop": False}
    assert evaluate({**GOOD, "integrity": "BAD"}, Fresh(1)).to_dict() == {"verdict": "DENIED", "reason": "INTEGRITY_NOT_OK", "event_id": 1}


def test_parse_event():
    assert parse_event(b'{"event_id": 1}') == {"event_id": 1}
    with pytest.raises(MalformedEvent):
        parse_event(b"{")
    with pytest.raises(MalformedEvent):
        parse_event(b"\xff\xfe")


def test_parse_event_rejects_oversized_and_runaway_input():
    with pytest.raises(MalformedEvent):
        parse_event(b'{"event_id": ' + b"9" * 5000 + b"}")
    with pytest.raises(MalformedEvent):
        parse_event(b"[" * 100000 + b"]" * 100000)


def test_container_values_recorded_by_type():
    verdict = evaluate({"event_id": {"n": 1}}, Invalid("event_id not an integer"))
    assert verdict == Denied(Reason.EVENT_ID_MISSING_OR_INVALID, "<dict>", "event_id not an integer")
    assert record_value([1]) == "<list>"
    assert record_value("7") == "7"
