"""Actuator sinks.

A sink takes one text command and hands it to the link without waiting for
an acknowledgement. The gate never consults a return value; a failure to hand
off raises ``ActuatorFault`` so the executor can ledger it.
"""
from __future__ import annotations

import logging
import socket
from typing import Protocol

from .config import ActuatorConfig
from .errors import ActuatorFault

log = logging.getLogger(__name__)


class ActuatorSink(Protocol):
    def send(self, command: str) -> None: ...


class DryRunSink:
    """Records commands in memory; nothing leaves the process."""

    live = False

    def __init__(self) -> None:
        self.sent: list[str] = []

    def send(self, command: str) -> None:
        log.info("DRY RUN command: %s", command)
        self.sent.append(command)


class UdpActuatorSink:
    """Fire-and-forget UDP text commands (Tello SDK style)."""

    live = True

    def __init__(self, host: str = "192.168.10.1", port: int = 8889) -> None:
        self.host = host
        self.port = port

    def send(self, command: str) -> None:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(command.encode("utf-8"), (self.host, self.port))
        except OSError as e:
            raise ActuatorFault(f"udp send to {self.host}:{self.port} failed: {e}") from e
        log.info("UDP command sent to %s:%s: %s", self.host, self.port, command)


def build_sink(cfg: ActuatorConfig) -> ActuatorSink:
    if cfg.mode == "udp":
        return UdpActuatorSink(cfg.udp_host, cfg.udp_port)
    return DryRunSink()
