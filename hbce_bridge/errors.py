from __future__ import annotations

from enum import Enum


class BridgeError(Exception):
    """Base class for bridge failures."""
    pass


class MalformedEvent(BridgeError):
    """Raised when inbound event bytes cannot be decoded as JSON."""
    pass


class TransportFailure(BridgeError):
    """Raised when an event document cannot be fetched or delivered."""
    pass


class PersistenceFailure(BridgeError):
    """Raised when a ledger append or counter commit is not durable."""
    pass


class ActuatorFault(BridgeError):
    """Raised when the actuator sink cannot hand a command to the link."""
    pass


class Reason(str, Enum):
    ESTOP_OVERRIDE = "ESTOP_OVERRIDE"
    EVENT_INVALID = "EVENT_INVALID"
    EVENT_ID_MISSING_OR_INVALID = "EVENT_ID_MISSING_OR_INVALID"
    EVENT_REPLAY_IGNORED = "EVENT_REPLAY_IGNORED"
    INTEGRITY_NOT_OK = "INTEGRITY_NOT_OK"
    GATE_NOT_ALLOWED = "GATE_NOT_ALLOWED"
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    # executor-only
    ESTOP_ACTIVE = "ESTOP_ACTIVE"
    EXECUTION_FAULT = "EXECUTION_FAULT"
