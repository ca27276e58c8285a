from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from listing_relay.core.addresses import dedup_key, extract_address
from listing_relay.core.metrics import MetricsCollector
from listing_relay.jobs.adapters import AdapterRegistry, AdapterResult
from listing_relay.jobs.errors import classify_exception
from listing_relay.jobs.scheduler import Scheduler
from listing_relay.services.events import EventBus
from listing_relay.services.ports import JobBackend
from listing_relay.services.records import EVENT_JOB_COMPLETED, EVENT_PROPERTY_NEW, Job, utcnow
from listing_relay.services.repository import RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class UnknownJobError(LookupError):
    pass


class OrchestratorClosedError(RuntimeError):
    pass


@dataclass(slots=True)
class JobRunStats:
    processed: int = 0
    success: int = 0
    failed: int = 0
    durations_ms: deque[float] = field(default_factory=lambda: deque(maxlen=1000))
    per_source: dict[str, dict[str, int]] = field(default_factory=dict)

    def record(self, source: str, *, ok: bool, duration_ms: float) -> None:
        self.processed += 1
        bucket = self.per_source.setdefault(source, {"success": 0, "failed": 0})
        if ok:
            self.success += 1
            bucket["success"] += 1
        else:
            self.failed += 1
            bucket["failed"] += 1
        self.durations_ms.append(duration_ms)

    @property
    def mean_duration_ms(self) -> float:
        if not self.durations_ms:
            return 0.0
        return sum(self.durations_ms) / len(self.durations_ms)

    def describe(self) -> str:
        per_source = " ".join(
            f"{source}:{bucket['success']}/{bucket['failed']}" for source, bucket in sorted(self.per_source.items())
        )
        return (
            f"processed={self.processed} success={self.success} failed={self.failed} "
            f"mean_duration_ms={self.mean_duration_ms:.1f} per_source=[{per_source}]"
        )


class JobOrchestrator:
    """Owns the scrape job state machine: queued -> running -> completed | queued (retry) | failed."""

    def __init__(
        self,
        *,
        store: JobBackend,
        adapters: AdapterRegistry,
        bus: EventBus,
        scheduler: Scheduler,
        metrics: MetricsCollector,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        concurrency: int = 4,
        stats_log_every: int = 10,
        default_adapter_version: str = "unknown",
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.bus = bus
        self.scheduler = scheduler
        self.metrics = metrics
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self.stats_log_every = stats_log_every
        self.default_adapter_version = default_adapter_version
        self.stats = JobRunStats()
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._executing: set[str] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(self, source: str, region: str, params: dict[str, Any] | None = None) -> str:
        if self._closed:
            raise OrchestratorClosedError("orchestrator is shutting down")
        job = await self.store.create_job(
            Job(
                job_id=str(uuid4()),
                source=source,
                region=region,
                input_payload=dict(params or {}),
            )
        )
        self._schedule(job.job_id, 0.0)
        logger.info("job queued job_id=%s source=%s region=%s", job.job_id, source, region)
        return job.job_id

    async def get_job(self, job_id: str) -> Job:
        try:
            return await self.store.get_job(job_id)
        except RepositoryNotFoundError as exc:
            raise UnknownJobError(job_id) from exc

    async def execute(self, job_id: str) -> Job:
        """Run one attempt of ``job_id``. Terminal or already-executing jobs are returned unchanged."""
        job = await self.get_job(job_id)
        if job.is_terminal or job_id in self._executing:
            return job

        self._executing.add(job_id)
        retry_delay: float | None = None
        try:
            async with self._semaphore:
                job, retry_delay = await self._run(job)
        finally:
            self._executing.discard(job_id)

        if retry_delay is not None:
            self._schedule(job_id, retry_delay)
        return job

    async def resume_unfinished(self, *, batch_size: int = 200) -> int:
        """Reschedule every persisted ``queued`` or ``running`` job.

        Only call this when no other process is executing jobs against the same
        store: a ``running`` row is assumed to belong to a process that died.
        """
        job_ids: list[str] = []
        for job_status in ("queued", "running"):
            offset = 0
            while True:
                jobs = await self.store.list_jobs(status=job_status, limit=batch_size, offset=offset)
                job_ids.extend(job.job_id for job in jobs)
                if len(jobs) < batch_size:
                    break
                offset += batch_size
        for job_id in job_ids:
            self._schedule(job_id, 0.0)
        if job_ids:
            logger.info("resumed unfinished jobs count=%s", len(job_ids))
        return len(job_ids)

    def close(self) -> int:
        self._closed = True
        cancelled = self.scheduler.cancel_all()
        logger.info("job orchestrator closed cancelled_timers=%s", cancelled)
        return cancelled

    async def drain(self, timeout: float | None = None) -> None:
        await self.scheduler.drain(timeout)

    def _schedule(self, job_id: str, delay_seconds: float) -> None:
        if self._closed:
            logger.info("job left queued on shutdown job_id=%s", job_id)
            return
        self.scheduler.after(delay_seconds, lambda: self._execute_scheduled(job_id))

    async def _execute_scheduled(self, job_id: str) -> None:
        try:
            await self.execute(job_id)
        except Exception:
            logger.exception("scheduled job execution failed job_id=%s", job_id)

    async def _run(self, job: Job) -> tuple[Job, float | None]:
        with tracer.start_as_current_span("job.execute") as span:
            span.set_attribute("job.id", job.job_id)
            span.set_attribute("job.source", job.source)
            span.set_attribute("job.attempt", job.attempt)

            started = time.perf_counter()
            try:
                job.status = "running"
                job.started_at = utcnow()
                job.finished_at = None
                job = await self.store.save_job(job)
                logger.info(
                    "job running job_id=%s source=%s region=%s attempt=%s",
                    job.job_id,
                    job.source,
                    job.region,
                    job.attempt,
                )

                params = {**job.input_payload, "region": job.region}
                result = await self.adapters.run(job.source, params)
                deduped_count = await self._persist_items(job, result.items)
                elapsed_ms = (time.perf_counter() - started) * 1000.0
                meta = self._build_meta(job, result, deduped_count=deduped_count, elapsed_ms=elapsed_ms)

                job.status = "completed"
                job.result_payload = meta
                job.error = None
                job.finished_at = utcnow()
                job = await self.store.save_job(job)
            except Exception as exc:
                span.record_exception(exc)
                return await self._handle_failure(job, exc, started)

            self._record_run(job.source, ok=True, duration_ms=elapsed_ms)
            logger.info(
                "job completed job_id=%s total_items=%s deduped=%s errors=%s duration_ms=%.2f",
                job.job_id,
                meta["totalItems"],
                deduped_count,
                meta["errorsCount"],
                elapsed_ms,
            )

            await self.bus.emit(
                EVENT_JOB_COMPLETED,
                {"jobId": job.job_id, "source": job.source, "region": job.region, "meta": meta},
            )
            return job, None

    async def _persist_items(self, job: Job, items: list[dict[str, Any]]) -> int:
        deduped = 0
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                logger.warning(
                    "skipping malformed item job_id=%s item_index=%s item_type=%s",
                    job.job_id,
                    index,
                    type(item).__name__,
                )
                continue
            try:
                key = dedup_key(source=job.source, region=job.region, item=item)
                address = extract_address(item)
                upserted = await self.store.upsert_record(key, address=address, payload=item)
            except Exception:
                logger.exception("record upsert failed job_id=%s item_index=%s", job.job_id, index)
                continue

            if upserted.deduped:
                deduped += 1
                continue
            await self.bus.emit(
                EVENT_PROPERTY_NEW,
                {
                    "job_id": job.job_id,
                    "source": job.source,
                    "region": job.region,
                    "address": address,
                    "normalized_address": key.normalized_address,
                    "record_id": upserted.record_id,
                },
            )
        return deduped

    def _build_meta(
        self,
        job: Job,
        result: AdapterResult,
        *,
        deduped_count: int,
        elapsed_ms: float,
    ) -> dict[str, Any]:
        meta = dict(result.meta)
        meta.setdefault("source", job.source)
        meta.setdefault("errors", list(result.errors))
        meta.setdefault("totalItems", len(result.items))
        meta["dedupedCount"] = deduped_count
        meta["errorsCount"] = len(result.errors)
        meta.setdefault("scrapeDurationMs", meta.get("durationMs", round(elapsed_ms)))
        if not isinstance(meta.get("filtersApplied"), list):
            filters = job.input_payload.get("filters")
            meta["filtersApplied"] = list(filters) if isinstance(filters, dict) else []
        meta.setdefault("sourceAdapterVersion", self.default_adapter_version)
        return meta

    async def _handle_failure(self, job: Job, exc: Exception, started: float) -> tuple[Job, float | None]:
        classified = classify_exception(exc)
        job.previous_errors.append(classified)
        job.attempt += 1
        job.result_payload = None
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        retry_delay: float | None = None
        if job.attempt < self.max_attempts:
            job.status = "queued"
            job.finished_at = None
            retry_delay = job.attempt * self.retry_backoff_seconds
            logger.warning(
                "job retry scheduled job_id=%s attempt=%s max_attempts=%s delay_seconds=%.1f error=%s",
                job.job_id,
                job.attempt,
                self.max_attempts,
                retry_delay,
                classified,
            )
        else:
            job.status = "failed"
            job.error = classified
            job.finished_at = utcnow()
            logger.error(
                "job failed job_id=%s attempts=%s error=%s",
                job.job_id,
                job.attempt,
                classified,
            )

        job = await self.store.save_job(job)
        self._record_run(job.source, ok=False, duration_ms=elapsed_ms)
        return job, retry_delay

    def _record_run(self, source: str, *, ok: bool, duration_ms: float) -> None:
        self.stats.record(source, ok=ok, duration_ms=duration_ms)
        self.metrics.incr("jobs_processed_total")
        self.metrics.incr("jobs_success_total" if ok else "jobs_failed_total", source=source)
        self.metrics.observe("job_duration_ms", duration_ms)
        if self.stats_log_every > 0 and self.stats.processed % self.stats_log_every == 0:
            logger.info("job stats %s", self.stats.describe())
