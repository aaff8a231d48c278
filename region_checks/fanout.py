from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import structlog

from region_checks.auth import GoogleIdTokenProvider, IdTokenProvider
from region_checks.clock import Clock
from region_checks.config import ProbeConfig
from region_checks.errors import handle_error
from region_checks.persistence import TelemetryStore


logger = structlog.get_logger(__name__)

PHASE_TOKEN = "Getting ID Token"
PHASE_REQUEST = "Requesting resource"

# Batches that lost the deadline race keep running; hold references until they finish.
_detached: set[asyncio.Task[Any]] = set()


def response_body_for_log(resp: httpx.Response) -> Any:
    """Structured bodies are stringified; primitive bodies are logged as they are."""
    try:
        body: Any = resp.json()
    except ValueError:
        body = resp.text
    if isinstance(body, (dict, list)):
        return json.dumps(body, ensure_ascii=False)
    return body


async def _check_region(
    region: str,
    *,
    config: ProbeConfig,
    pending: dict[str, str],
    token_provider: IdTokenProvider,
    client: httpx.AsyncClient,
) -> None:
    url = config.region_url(region)

    pending[region] = PHASE_TOKEN
    if config.dry_run:
        logger.info(f"Fetch {url} ran.", region=region)
        pending.pop(region, None)
        return
    token = await token_provider.fetch(url)

    pending[region] = PHASE_REQUEST
    resp = await client.get(url, headers={"Authorization": f"Bearer {token}"})
    # The call is over either way; only in-flight regions stay pending.
    pending.pop(region, None)
    if 200 <= resp.status_code < 300:
        return

    logger.warning(
        "Region check returned non-2xx",
        region=region,
        status_code=resp.status_code,
        body=response_body_for_log(resp),
    )


async def _settle(
    region_tasks: dict[str, asyncio.Task[None]],
    purge_task: asyncio.Task[int],
    *,
    clock: Clock,
    client: httpx.AsyncClient,
    owns_client: bool,
) -> None:
    try:
        results = await asyncio.gather(*region_tasks.values(), purge_task, return_exceptions=True)
        for region, result in zip(region_tasks, results):
            if isinstance(result, BaseException):
                logger.warning("Region check failed", region=region, error=handle_error(result))
        if isinstance(results[-1], BaseException):
            logger.warning("Retention purge failed", error=handle_error(results[-1]))
        logger.debug("Region batch settled", elapsed_ms=clock.elapsed(), regions=len(region_tasks))
    finally:
        if owns_client:
            await client.aclose()


async def trigger_checks(
    config: ProbeConfig,
    store: TelemetryStore,
    *,
    token_provider: IdTokenProvider | None = None,
    client: httpx.AsyncClient | None = None,
    deadline_seconds: float | None = None,
) -> dict[str, str]:
    """
    Fan the check out to every region and purge old telemetry, racing a deadline.

    Never raises. Returns the regions still pending when the deadline won
    (empty when the batch finished in time).
    """
    try:
        return await _trigger_checks(
            config,
            store,
            token_provider=token_provider or GoogleIdTokenProvider(),
            client=client,
            deadline_seconds=config.scheduler_deadline_seconds if deadline_seconds is None else deadline_seconds,
        )
    except Exception as exc:
        logger.error("Scheduled check run failed", error=handle_error(exc))
        return {}


async def _trigger_checks(
    config: ProbeConfig,
    store: TelemetryStore,
    *,
    token_provider: IdTokenProvider,
    client: httpx.AsyncClient | None,
    deadline_seconds: float,
) -> dict[str, str]:
    clock = Clock()
    pending: dict[str, str] = {}

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(max(1.0, float(config.probe_timeout_seconds))))

    region_tasks = {
        region: asyncio.create_task(
            _check_region(region, config=config, pending=pending, token_provider=token_provider, client=client)
        )
        for region in config.regions
    }
    purge_task = asyncio.create_task(store.purge_old_data())
    batch = asyncio.create_task(
        _settle(region_tasks, purge_task, clock=clock, client=client, owns_client=owns_client)
    )
    timer = asyncio.create_task(asyncio.sleep(max(0.0, float(deadline_seconds))))

    done, _ = await asyncio.wait({batch, timer}, return_when=asyncio.FIRST_COMPLETED)
    if batch in done:
        timer.cancel()
        # Surfaces anything _settle itself raised.
        await batch
        return {}

    _detached.add(batch)
    batch.add_done_callback(_detached.discard)

    if not pending:
        logger.error("Purge step timed out", deadline_seconds=deadline_seconds, elapsed_ms=clock.elapsed())
    else:
        logger.error(
            "Region checks timed out",
            pending=dict(pending),
            deadline_seconds=deadline_seconds,
            elapsed_ms=clock.elapsed(),
        )
    return dict(pending)
