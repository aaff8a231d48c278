from __future__ import annotations

import asyncio
import time

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from region_checks.config import ProbeConfig, load_config
from region_checks.h2_probe import run_probe
from region_checks.persistence import TelemetryStore


logger = structlog.get_logger(__name__)

CHECK_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


async def handle_check(config: ProbeConfig, store: TelemetryStore) -> str:
    """Run one probe, persist it, and return the acknowledgement text."""
    result = await run_probe(config)
    await store.log_to_database(result.start_time, result.connection, result.requests)
    return f"ok at {int(time.time() * 1000)}"


def create_app(config: ProbeConfig | None = None, store: TelemetryStore | None = None) -> FastAPI:
    app = FastAPI(title="Regional HTTP/2 Checks", version="0.1.0")
    app.state.config = config if config is not None else load_config()
    app.state.store = store if store is not None else TelemetryStore(app.state.config)

    @app.on_event("startup")
    async def _startup() -> None:
        await app.state.store.connect()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.store.close()

    @app.api_route("/check", methods=CHECK_METHODS)
    async def check() -> PlainTextResponse:
        cfg: ProbeConfig = app.state.config
        try:
            body = await asyncio.wait_for(
                handle_check(cfg, app.state.store),
                timeout=float(cfg.probe_timeout_seconds),
            )
        except asyncio.TimeoutError:
            logger.error("Check exceeded execution timeout", timeout_seconds=cfg.probe_timeout_seconds)
            raise HTTPException(status_code=504, detail="execution_timeout")
        return PlainTextResponse(body, headers={"Cache-Control": "no-store"})

    return app
