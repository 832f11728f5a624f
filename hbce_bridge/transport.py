"""Poll transport.

Fetches the current event document over HTTP, optionally through a pointer
document that names it, and hands the raw bytes to the bridge. This layer
owns timeouts; the bridge never sees a ``requests`` exception, only bytes or
a transport failure report.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import requests

from .errors import TransportFailure

if TYPE_CHECKING:
    from .bridge import DeliveryResult, GateBridge

log = logging.getLogger(__name__)

POINTER_KEYS = ("event_url", "url", "current")


class EventSource:
    def __init__(
        self,
        event_url: str | None = None,
        pointer_url: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        if not event_url and not pointer_url:
            raise ValueError("need an event_url or a pointer_url")
        self.event_url = event_url or None
        self.pointer_url = pointer_url or None
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, url: str) -> bytes:
        try:
            resp = self.session.get(url, timeout=self.timeout, headers={"Cache-Control": "no-cache"})
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransportFailure(f"GET {url} failed: {e}") from e
        return resp.content

    def resolve_pointer(self) -> str:
        """Return the locator of the current event document."""
        if not self.pointer_url:
            return self.event_url

        body = self._get(self.pointer_url)
        text = body.decode("utf-8", errors="replace").strip()
        locator: Any = None

        try:
            doc = json.loads(text)
        except (ValueError, RecursionError):
            doc = None

        if isinstance(doc, dict):
            for key in POINTER_KEYS:
                if isinstance(doc.get(key), str) and doc[key].strip():
                    locator = doc[key].strip()
                    break
        elif isinstance(doc, str):
            locator = doc.strip()
        elif doc is None and text:
            locator = text.splitlines()[0].strip()

        if not locator:
            raise TransportFailure(f"pointer {self.pointer_url} names no event resource")
        return urljoin(self.pointer_url, locator)

    def fetch(self, locator: str) -> bytes:
        return self._get(locator)

    def fetch_current(self) -> bytes:
        return self.fetch(self.resolve_pointer())


class Poller:
    """Poll-then-fetch loop. One fetch per iteration, no retries."""

    def __init__(self, bridge: "GateBridge", source: EventSource) -> None:
        self.bridge = bridge
        self.source = source
        self._last_digest: str | None = None

    def poll_once(self) -> "DeliveryResult | None":
        try:
            body = self.source.fetch_current()
        except TransportFailure as e:
            log.warning("transport failure: %s", e)
            self._last_digest = None
            return self.bridge.report_transport_failure(str(e))

        digest = hashlib.sha256(body).hexdigest()
        if digest == self._last_digest:
            log.debug("event document unchanged (%s)", digest[:12])
            return None
        self._last_digest = digest
        return self.bridge.deliver(body)

    def run(self, iterations: int | None = None, interval: float = 2.0) -> int:
        n = 0
        while iterations is None or n < iterations:
            self.poll_once()
            n += 1
            if iterations is not None and n >= iterations:
                break
            time.sleep(max(0.0, interval))
        return n
