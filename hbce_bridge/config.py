"""Bridge configuration.

Loaded from a YAML file (``HBCE_CONFIG`` or ``--config``), then overridden by
environment variables. A missing file means defaults; ill-typed keys fall back
to the default for that key. The default actuator mode is ``dry_run`` so an
unconfigured bridge never transmits.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/hbce_bridge.yaml"
ACTUATOR_MODES = {"dry_run", "udp"}


@dataclass(frozen=True)
class ActuatorConfig:
    mode: str = "dry_run"
    udp_host: str = "192.168.10.1"
    udp_port: int = 8889
    forward_cm: int = 20
    rotate_deg: int = 15


@dataclass(frozen=True)
class PollConfig:
    event_url: str = ""
    pointer_url: str = ""
    interval_seconds: float = 2.0
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class BridgeConfig:
    ledger_path: str = "validation/hbce_bridge/ledger.jsonl"
    counter_path: str = "validation/hbce_bridge/replay_counter.json"
    host: str = "127.0.0.1"
    port: int = 17777
    actuator: ActuatorConfig = field(default_factory=ActuatorConfig)
    poll: PollConfig = field(default_factory=PollConfig)

    @staticmethod
    def defaults() -> "BridgeConfig":
        return BridgeConfig()

    @staticmethod
    def from_dict(obj: dict[str, Any]) -> "BridgeConfig":
        d = BridgeConfig.defaults()

        act_raw = obj.get("actuator")
        act_raw = act_raw if isinstance(act_raw, dict) else {}
        mode = str(act_raw.get("mode", d.actuator.mode)).strip().lower()
        if mode not in ACTUATOR_MODES:
            log.warning("unknown actuator mode %r, using %s", mode, d.actuator.mode)
            mode = d.actuator.mode
        actuator = ActuatorConfig(
            mode=mode,
            udp_host=_as_str(act_raw.get("udp_host"), d.actuator.udp_host),
            udp_port=_as_int(act_raw.get("udp_port"), d.actuator.udp_port),
            forward_cm=_as_int(act_raw.get("forward_cm"), d.actuator.forward_cm),
            rotate_deg=_as_int(act_raw.get("rotate_deg"), d.actuator.rotate_deg),
        )

        poll_raw = obj.get("poll")
        poll_raw = poll_raw if isinstance(poll_raw, dict) else {}
        poll = PollConfig(
            event_url=_as_str(poll_raw.get("event_url"), d.poll.event_url),
            pointer_url=_as_str(poll_raw.get("pointer_url"), d.poll.pointer_url),
            interval_seconds=_as_float(poll_raw.get("interval_seconds"), d.poll.interval_seconds),
            timeout_seconds=_as_float(poll_raw.get("timeout_seconds"), d.poll.timeout_seconds),
        )

        return BridgeConfig(
            ledger_path=_as_str(obj.get("ledger_path"), d.ledger_path),
            counter_path=_as_str(obj.get("counter_path"), d.counter_path),
            host=_as_str(obj.get("host"), d.host),
            port=_as_int(obj.get("port"), d.port),
            actuator=actuator,
            poll=poll,
        )

    @staticmethod
    def load(path: str | Path | None = None, environ: dict[str, str] | None = None) -> "BridgeConfig":
        env = os.environ if environ is None else environ
        path = path or env.get("HBCE_CONFIG") or DEFAULT_CONFIG_PATH
        p = Path(path)

        cfg = BridgeConfig.defaults()
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            if isinstance(raw, dict):
                cfg = BridgeConfig.from_dict(raw)
            else:
                log.warning("config %s is not a mapping, using defaults", p)

        return cfg.with_env(env)

    def with_env(self, env: dict[str, str]) -> "BridgeConfig":
        cfg = self
        if env.get("HBCE_LEDGER"):
            cfg = replace(cfg, ledger_path=env["HBCE_LEDGER"])
        if env.get("HBCE_COUNTER"):
            cfg = replace(cfg, counter_path=env["HBCE_COUNTER"])
        if env.get("HBCE_HOST"):
            cfg = replace(cfg, host=env["HBCE_HOST"])
        if env.get("HBCE_PORT"):
            cfg = replace(cfg, port=_as_int(env["HBCE_PORT"], cfg.port))
        mode = (env.get("HBCE_ACTUATOR") or "").strip().lower()
        if mode in ACTUATOR_MODES:
            cfg = replace(cfg, actuator=replace(cfg.actuator, mode=mode))
        if env.get("HBCE_POINTER_URL"):
            cfg = replace(cfg, poll=replace(cfg.poll, pointer_url=env["HBCE_POINTER_URL"]))
        if env.get("HBCE_EVENT_URL"):
            cfg = replace(cfg, poll=replace(cfg.poll, event_url=env["HBCE_EVENT_URL"]))
        return cfg


def _as_str(x: Any, default: str) -> str:
    if isinstance(x, str) and x.strip():
        return x.strip()
    return default


def _as_int(x: Any, default: int) -> int:
    if isinstance(x, bool):
        return default
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _as_float(x: Any, default: float) -> float:
    if isinstance(x, bool):
        return default
    try:
        return float(x)
    except (TypeError, ValueError):
        return default
