"""HBCE Bridge: fail-closed gate between remote control events and a drone.

Design goals:
- Append-only evidence ledger (JSONL, hash chained, fsync'd)
- Persisted anti-replay counter, advanced only on full acceptance
- One bounded actuator step per accepted event, then forced HOLD
"""
from __future__ import annotations

__version__ = "0.4.0"
