from __future__ import annotations

import asyncio
import logging
import random
import time
from concurrent.futures import BrokenExecutor, Executor, ProcessPoolExecutor
from typing import Any

import httpx
from opentelemetry import trace

from standings.core.telemetry import configure_logging, setup_telemetry
from standings.services.errors import FatalError, LockConflictError, classify_error
from standings.worker.config import WorkerSettings, get_worker_settings
from standings.worker.executor import execute_job
from standings.worker.job_client import JobClient
from standings.worker.lease_reaper import lease_expired, lease_remaining_seconds

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def process_packet(
    client: JobClient,
    packet: dict[str, Any],
    *,
    executor: Executor | None,
    timeout_seconds: float,
) -> str:
    """Compute and submit one claimed job.

    Returns the outcome: ``committed``, ``conflict``, ``failed``, or
    ``executor_broken`` when the process pool lost a child and must be
    replaced before the next job.
    """
    job = packet["job"]
    with tracer.start_as_current_span("worker.process_job") as span:
        span.set_attribute("job.id", job["id"])
        span.set_attribute("job.league_id", job["league_id"])
        span.set_attribute("job.season_id", job["season_id"])

        remaining = lease_remaining_seconds(job)
        if remaining is not None:
            timeout_seconds = min(timeout_seconds, remaining)

        try:
            result = await execute_job(packet, executor=executor, timeout_seconds=timeout_seconds)
        except Exception as exc:
            fatal = classify_error(exc) == FatalError.kind
            logger.exception("calculation failed for job=%s fatal=%s", job["id"], fatal)
            await _report_failure(client, job["id"], f"{type(exc).__name__}: {exc}", fatal=fatal)
            if isinstance(exc, BrokenExecutor):
                return "executor_broken"
            return "failed"

        if lease_expired(job):
            logger.warning("job %s outlived its lease; commit may be rejected", job["id"])
        if result["warnings"]:
            logger.info("job %s skipped %s matches with data errors", job["id"], len(result["warnings"]))

        try:
            await client.submit_result(
                job["id"],
                entries=result["entries"],
                warnings=result["warnings"],
                expected_version=packet["standings_version"],
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code != httpx.codes.CONFLICT:
                raise
            logger.warning("commit rejected for job=%s: %s", job["id"], exc.response.text)
            await _report_failure(client, job["id"], "standings changed before commit", fatal=False)
            return "conflict"
        return "committed"


async def _report_failure(client: JobClient, job_id: str, error: str, *, fatal: bool) -> None:
    try:
        await client.report_failure(job_id, error=error, fatal=fatal)
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code != httpx.codes.CONFLICT:
            raise
        logger.info("job %s already left processing; failure report dropped", job_id)


def build_executor(settings: WorkerSettings) -> ProcessPoolExecutor:
    return ProcessPoolExecutor(max_workers=max(1, settings.calculation_processes))


def replace_executor(executor: ProcessPoolExecutor, settings: WorkerSettings) -> ProcessPoolExecutor:
    """Drop a broken pool without waiting on its dead children and start a fresh one."""
    executor.shutdown(wait=False, cancel_futures=True)
    logger.warning("calculation pool broken; starting a new one")
    return build_executor(settings)


async def run_worker(settings: WorkerSettings | None = None) -> None:
    settings = settings or get_worker_settings()
    configure_logging()
    telemetry = setup_telemetry(settings, instrument_httpx=True)
    client = JobClient(base_url=settings.api_base_url, api_key=settings.api_key)
    executor = build_executor(settings)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0
    last_retention_at = time.monotonic()

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        reclaimed = await client.reap_expired_jobs(limit=settings.lease_reaper_batch_size)
                        if reclaimed:
                            logger.info("reclaimed expired leases: %s", reclaimed)
                        last_reap_at = now

                    if (
                        settings.retention_interval_seconds > 0
                        and now - last_retention_at >= settings.retention_interval_seconds
                    ):
                        report = await client.run_retention()
                        logger.info("retention sweep: %s", report)
                        last_retention_at = now

                    try:
                        packet = await client.claim_job(lease_seconds=settings.claim_lease_seconds)
                    except LockConflictError:
                        logger.debug("claim lost to another worker; retrying")
                        continue
                    if packet is None:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    outcome = await process_packet(
                        client,
                        packet,
                        executor=executor,
                        timeout_seconds=settings.calculation_timeout_seconds,
                    )
                    logger.info("job %s %s", packet["job"]["id"], outcome)
                    if outcome == "executor_broken":
                        executor = replace_executor(executor, settings)

                backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
        telemetry.shutdown()


if __name__ == "__main__":
    asyncio.run(run_worker())
