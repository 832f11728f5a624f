import json

import pytest

from hbce_bridge.actuator import DryRunSink
from hbce_bridge.bridge import GateBridge
from hbce_bridge.ledger import LedgerStore
from hbce_bridge.replay_guard import ReplayGuard

HBCE_ENV = (
    "HBCE_CONFIG",
    "HBCE_LEDGER",
    "HBCE_COUNTER",
    "HBCE_ACTUATOR",
    "HBCE_HOST",
    "HBCE_PORT",
    "HBCE_POINTER_URL",
    "HBCE_EVENT_URL",
)


class FakeClock:
    """Strictly increasing timestamps, one second apart."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def __call__(self) -> float:
        self.t += 1.0
        return self.t


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in HBCE_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def ev():
    def _ev(**fields) -> bytes:
        return json.dumps(fields).encode("utf-8")

    return _ev


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "ledger.jsonl"


@pytest.fixture
def counter_path(tmp_path):
    return tmp_path / "replay_counter.json"


@pytest.fixture
def sink():
    return DryRunSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_bridge(ledger_path, counter_path, sink, clock):
    def _make(actuator=None) -> GateBridge:
        return GateBridge(
            LedgerStore(ledger_path),
            ReplayGuard(counter_path),
            actuator if actuator is not None else sink,
            clock=clock,
        )

    return _make


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()
