"""HTTP surface: push ingestion plus read-only status and ledger export.

Endpoints
---------
/status         : current control state and replay counter.
/event          : POST raw event JSON; returns the verdict and resulting state.
/ledger         : last ``limit`` ledger entries.
/ledger/export  : the full ledger, byte for byte, as NDJSON.
/ledger/verify  : hash chain verification report.
"""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from .bridge import GateBridge


def create_app(bridge: GateBridge) -> FastAPI:
    app = FastAPI(title="HBCE Bridge")

    @app.get("/status")
    def get_status() -> dict:
        return bridge.status()

    @app.post("/event")
    async def post_event(request: Request) -> dict:
        body = await request.body()
        # Denials are answers, not HTTP errors.
        result = await run_in_threadpool(bridge.deliver, body)
        return result.to_dict()

    @app.get("/ledger")
    def get_ledger(limit: int = 50) -> list:
        entries = bridge.read_ledger()
        if limit <= 0:
            return []
        return entries[-limit:]

    @app.get("/ledger/export")
    def export_ledger() -> Response:
        return Response(content=bridge.export_ledger(), media_type="application/x-ndjson")

    @app.get("/ledger/verify")
    def verify_ledger() -> dict:
        return bridge.verify_ledger()

    return app
