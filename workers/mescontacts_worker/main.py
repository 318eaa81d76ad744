from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging

from opentelemetry import trace

from mescontacts_worker.core.config import Settings, get_settings
from mescontacts_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from mescontacts_worker.jobs.expiration import next_backoff, next_run_at, seconds_until
from mescontacts_worker.services.api_client import ListingApiClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_expiration(client: ListingApiClient, settings: Settings) -> int:
    with tracer.start_as_current_span("worker.expire_posts") as span:
        result = await client.expire_posts(limit=settings.expire_batch_size)
        span.set_attribute("posts.expired", result["count"])
    if result["count"]:
        logger.info("expired posts count=%s ids=%s", result["count"], ",".join(result["post_ids"]))
    else:
        logger.info("no posts due for expiry")
    return result["count"]


async def run_until_success(client: ListingApiClient, settings: Settings) -> int:
    backoff = 0.0
    while True:
        try:
            return await run_expiration(client, settings)
        except Exception as exc:  # pragma: no cover - bootstrap robustness
            backoff = next_backoff(
                backoff,
                initial=settings.retry_initial_seconds,
                maximum=settings.max_backoff_seconds,
            )
            logger.exception("expiration run failed: %s; retry in %.1fs", exc, backoff)
            await asyncio.sleep(backoff)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = ListingApiClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    try:
        if settings.run_on_start:
            await run_until_success(client, settings)

        while True:
            now = datetime.now(timezone.utc)
            scheduled = next_run_at(now, hour_utc=settings.expire_hour_utc, minute_utc=settings.expire_minute_utc)
            logger.info("next expiration run at %s", scheduled.isoformat())
            await asyncio.sleep(seconds_until(scheduled, now))
            await run_until_success(client, settings)
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
