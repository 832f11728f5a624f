import pytest

from hbce_bridge.actuator import DryRunSink, UdpActuatorSink, build_sink
from hbce_bridge.config import BridgeConfig


def test_missing_file_gives_defaults(tmp_path):
    cfg = BridgeConfig.load(tmp_path / "absent.yaml", environ={})

    assert cfg == BridgeConfig.defaults()
    assert cfg.port == 17777
    assert cfg.actuator.mode == "dry_run"


def test_yaml_values(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text(
        """
ledger_path: /var/lib/hbce/ledger.jsonl
port: 18000
actuator:
  mode: udp
  udp_host: 10.0.0.5
  forward_cm: 30
poll:
  pointer_url: http://hub/pointer.json
  interval_seconds: 0.5
""",
        encoding="utf-8",
    )
    cfg = BridgeConfig.load(path, environ={})

    assert cfg.ledger_path == "/var/lib/hbce/ledger.jsonl"
    assert cfg.port == 18000
    assert cfg.actuator.mode == "udp"
    assert cfg.actuator.udp_host == "10.0.0.5"
    assert cfg.actuator.udp_port == 8889
    assert cfg.actuator.forward_cm == 30
    assert cfg.poll.pointer_url == "http://hub/pointer.json"
    assert cfg.poll.interval_seconds == 0.5


def test_bad_values_fall_back(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text("port: lots\nactuator:\n  mode: warp\n  udp_port: true\npoll: [1, 2]\n", encoding="utf-8")
    cfg = BridgeConfig.load(path, environ={})

    assert cfg.port == 17777
    assert cfg.actuator.mode == "dry_run"
    assert cfg.actuator.udp_port == 8889
    assert cfg.poll == BridgeConfig.defaults().poll


def test_non_mapping_yaml_gives_defaults(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert BridgeConfig.load(path, environ={}) == BridgeConfig.defaults()


def test_env_overrides(tmp_path):
    env = {
        "HBCE_LEDGER": str(tmp_path / "l.jsonl"),
        "HBCE_COUNTER": str(tmp_path / "c.json"),
        "HBCE_ACTUATOR": "UDP",
        "HBCE_PORT": "19000",
        "HBCE_EVENT_URL": "http://hub/event.json",
    }
    cfg = BridgeConfig.load(tmp_path / "absent.yaml", environ=env)

    assert cfg.ledger_path == env["HBCE_LEDGER"]
    assert cfg.counter_path == env["HBCE_COUNTER"]
    assert cfg.actuator.mode == "udp"
    assert cfg.port == 19000
    assert cfg.poll.event_url == "http://hub/event.json"


def test_config_path_from_env(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text("host: 0.0.0.0\n", encoding="utf-8")
    assert BridgeConfig.load(environ={"HBCE_CONFIG": str(path)}).host == "0.0.0.0"


@pytest.mark.parametrize("mode,kind", [("dry_run", DryRunSink), ("udp", UdpActuatorSink)])
def test_build_sink(mode, kind):
    cfg = BridgeConfig.from_dict({"actuator": {"mode": mode}})
    assert isinstance(build_sink(cfg.actuator), kind)
