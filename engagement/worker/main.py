from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from engagement.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from engagement.worker.config import Settings, get_settings
from engagement.worker.dispatch_client import DispatchClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_tick(client: DispatchClient, settings: Settings, *, last_maintenance_at: float) -> float:
    """Run one dispatch call, plus maintenance when its interval has elapsed; return the maintenance mark."""
    with tracer.start_as_current_span("worker.tick"):
        now = time.monotonic()
        if now - last_maintenance_at >= settings.maintenance_interval_seconds:
            maintenance = await client.run_maintenance()
            if maintenance.get("requeued") or maintenance.get("purged"):
                logger.info(
                    "job maintenance requeued=%s purged=%s",
                    maintenance.get("requeued"),
                    maintenance.get("purged"),
                )
            last_maintenance_at = now

        summary = await client.dispatch()
        if summary.get("claimed"):
            logger.info(
                "dispatch claimed=%s succeeded=%s failed=%s elapsed_ms=%s",
                summary.get("claimed"),
                summary.get("succeeded"),
                summary.get("failed"),
                summary.get("elapsedMs"),
            )
    return last_maintenance_at


async def run_worker(*, max_ticks: int | None = None) -> None:
    settings = get_settings()
    configure_logging(correlate=settings.otel_log_correlation)
    telemetry_runtime = setup_telemetry(settings, component="worker")
    client = DispatchClient(
        settings.api_base_url,
        settings.cron_secret,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.tick_interval_seconds
    last_maintenance_at = float("-inf")
    ticks = 0

    try:
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            try:
                last_maintenance_at = await run_tick(client, settings, last_maintenance_at=last_maintenance_at)
                backoff = settings.tick_interval_seconds
                await asyncio.sleep(settings.tick_interval_seconds)
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker tick failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
