from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

import httpx
from opentelemetry import trace

from patch_sync_worker.core.config import get_settings
from patch_sync_worker.core.telemetry import (
    configure_worker_logging,
    set_job_attributes,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from patch_sync_worker.jobs.executor import execute_job
from patch_sync_worker.jobs.lease_reaper import lease_expired
from patch_sync_worker.services.job_client import JobClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_job(client: JobClient, job: dict[str, Any], *, lease_seconds: int) -> str:
    """Claim, run and report one job. Returns the outcome recorded for it."""
    try:
        claimed = await client.claim_job(job["id"], lease_seconds=lease_seconds)
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code in {404, 409}:
            logger.info("job no longer claimable id=%s status=%s", job["id"], exc.response.status_code)
            return "skipped"
        raise

    if lease_expired(claimed):
        logger.warning("lease expired before execution id=%s", claimed["id"])
        return "lease_expired"

    try:
        result = await execute_job(claimed, client=client)
    except Exception as exc:
        logger.exception("job execution failed for id=%s", claimed["id"])
        await client.submit_result(
            claimed["id"],
            status="failed",
            error_json={"error": str(exc), "error_type": type(exc).__name__},
        )
        return "failed"

    await client.submit_result(claimed["id"], status="done", result_json=result)
    logger.info(
        "job done id=%s lead=%s added=%s removed=%s",
        claimed["id"],
        result.get("lead_organiser_id"),
        result.get("patches_added"),
        result.get("patches_removed"),
    )
    return "done"


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    client = JobClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        requeued = await client.reap_expired_jobs(limit=settings.lease_reaper_batch_size)
                        if requeued:
                            logger.info("requeued expired leases: %s", requeued)
                        last_reap_at = now

                    jobs = await client.get_jobs(limit=settings.job_batch_size)
                    if not jobs:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    for job in jobs:
                        with tracer.start_as_current_span("worker.process_job") as job_span:
                            set_job_attributes(job_span, job)
                            outcome = await process_job(client, job, lease_seconds=settings.claim_lease_seconds)
                            job_span.set_attribute("job.outcome", outcome)

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
