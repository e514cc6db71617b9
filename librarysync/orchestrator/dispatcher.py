"""Run one claimed job and turn its outcome into queue and SyncState transitions."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime, timedelta
import time
from typing import Any

from librarysync.errors import (
    ErrorCode,
    InvalidPayloadError,
    RateLimitedError,
    RetryableError,
    error_code_for,
    sanitize_error_message,
)
from librarysync.logging import get_logger
from librarysync.orchestrator import events as orchestrator_events
from librarysync.orchestrator.context import SyncContext
from librarysync.orchestrator.handlers import JobHandler, SyncOutcome, default_handlers
from librarysync.schemas.jobs import (
    BackfillPayload,
    JobType,
    dump_payload,
    parse_job_type,
    parse_payload,
    resource_key,
)
from librarysync.services.sync_service import enqueue_if_absent
from librarysync.utils.retry import backoff_delay_seconds
from librarysync.workers.persistence import JobDTO

_ENRICHMENT_TRIGGERS = frozenset({JobType.PLAYLISTS, JobType.PLAYLIST_ITEMS})
_ENRICHMENT_JOBS = (JobType.TRACK_METADATA, JobType.COVERS)

RESULT_DONE = "done"
RESULT_CONTINUED = "continued"
RESULT_BACKOFF = "backoff"
RESULT_FAILED = "failed"


class Dispatcher:
    """Executes jobs; never lets a per-job exception escape."""

    def __init__(
        self,
        context: SyncContext,
        *,
        handlers: Mapping[JobType, JobHandler] | None = None,
    ) -> None:
        self._ctx = context
        self._handlers: dict[JobType, JobHandler] = dict(handlers or default_handlers())
        self._logger = get_logger(__name__)

    async def dispatch(self, job: JobDTO) -> str:
        started = time.monotonic()
        try:
            job_type = parse_job_type(job.type)
            payload = parse_payload(job_type, job.payload)
        except InvalidPayloadError as exc:
            resource = self._fallback_resource(job)
            return await self._handle_fatal(job, resource, exc)

        resource = resource_key(job_type, payload)
        handler = self._handlers.get(job_type)
        if handler is None:
            return await self._handle_fatal(
                job, resource, InvalidPayloadError(f"no handler for {job_type.value}")
            )

        await asyncio.to_thread(self._ctx.tracker.mark_running, job.user_id, resource)
        orchestrator_events.emit_dispatch_event(
            self._logger,
            job_id=job.id,
            job_type=job.type,
            user_id=job.user_id,
            resource=resource,
            attempts=job.attempts,
        )

        try:
            outcome = await handler(job, payload, self._ctx)
        except RateLimitedError as exc:
            return await self._handle_rate_limited(job, resource, exc)
        except RetryableError as exc:
            return await self._handle_retryable(job, resource, exc)
        except Exception as exc:
            return await self._handle_fatal(job, resource, exc)

        duration_ms = int((time.monotonic() - started) * 1000)
        if outcome.done:
            return await self._handle_done(job, job_type, outcome, duration_ms)
        return await self._handle_continuation(job, resource, outcome, duration_ms)

    def _fallback_resource(self, job: JobDTO) -> str | None:
        try:
            return resource_key(parse_job_type(job.type), job.payload)
        except InvalidPayloadError:
            return None

    async def _handle_done(
        self, job: JobDTO, job_type: JobType, outcome: SyncOutcome, duration_ms: int
    ) -> str:
        now = self._ctx.clock()
        await self._ctx.queue.complete_async(job.id, now=now)
        orchestrator_events.emit_commit_event(
            self._logger,
            job_id=job.id,
            job_type=job.type,
            status=RESULT_DONE,
            written=outcome.written,
            duration_ms=duration_ms,
            cursor=outcome.next_cursor if outcome.next_cursor is not None else outcome.next_offset,
        )
        if job_type in _ENRICHMENT_TRIGGERS:
            await asyncio.to_thread(self._seed_enrichment, job.user_id, now)
        return RESULT_DONE

    def _seed_enrichment(self, user_id: str, now: datetime) -> None:
        config = self._ctx.config
        for job_type in _ENRICHMENT_JOBS:
            payload = BackfillPayload(
                limit=config.backfill_limit, max_batches=config.backfill_max_batches
            )
            job_id = enqueue_if_absent(
                user_id,
                job_type,
                dump_payload(payload),
                tracker=self._ctx.tracker,
                now=now,
            )
            if job_id is not None:
                orchestrator_events.emit_seed_event(
                    self._logger, user_id=user_id, job_type=job_type.value, job_id=job_id
                )

    async def _handle_continuation(
        self, job: JobDTO, resource: str, outcome: SyncOutcome, duration_ms: int
    ) -> str:
        now = self._ctx.clock()
        payload: dict[str, Any] | None = None
        if outcome.next_payload is not None:
            payload = dump_payload(outcome.next_payload)
        not_before = now + timedelta(seconds=self._ctx.config.continuation_delay_s)
        await self._ctx.queue.reschedule_async(
            job.id, not_before=not_before, payload=payload, now=now
        )
        await asyncio.to_thread(self._ctx.tracker.mark_queued, job.user_id, resource)
        orchestrator_events.emit_commit_event(
            self._logger,
            job_id=job.id,
            job_type=job.type,
            status=RESULT_CONTINUED,
            written=outcome.written,
            duration_ms=duration_ms,
            cursor=outcome.next_cursor if outcome.next_cursor is not None else outcome.next_offset,
        )
        return RESULT_CONTINUED

    async def _handle_rate_limited(
        self, job: JobDTO, resource: str, exc: RateLimitedError
    ) -> str:
        now = self._ctx.clock()
        jitter = self._ctx.rng.uniform(0.0, self._ctx.config.jitter_s)
        delay = exc.retry_after_seconds + jitter
        return await self._defer(job, resource, exc, now=now, delay_s=delay)

    async def _handle_retryable(self, job: JobDTO, resource: str, exc: RetryableError) -> str:
        now = self._ctx.clock()
        failures = job.retry_count
        config = self._ctx.config
        delay = backoff_delay_seconds(
            failures,
            base_s=config.backoff_base_s,
            max_delay_s=config.backoff_max_s,
            jitter_s=config.jitter_s,
            rng=self._ctx.rng,
        )
        return await self._defer(job, resource, exc, now=now, delay_s=delay, failures=failures)

    async def _defer(
        self,
        job: JobDTO,
        resource: str,
        exc: RetryableError | RateLimitedError,
        *,
        now: datetime,
        delay_s: float,
        failures: int | None = None,
    ) -> str:
        code = error_code_for(exc)
        retry_at = await asyncio.to_thread(
            self._ctx.tracker.mark_backoff,
            job.user_id,
            resource,
            now + timedelta(seconds=delay_s),
            code,
        )
        await self._ctx.queue.reschedule_async(
            job.id, not_before=retry_at, retry=True, now=now
        )
        orchestrator_events.emit_backoff_event(
            self._logger,
            job_id=job.id,
            job_type=job.type,
            error_code=code,
            retry_at=retry_at,
            delay_ms=int((retry_at - now).total_seconds() * 1000),
            failures=failures,
        )
        return RESULT_BACKOFF

    async def _handle_fatal(
        self, job: JobDTO, resource: str | None, exc: Exception
    ) -> str:
        code = error_code_for(exc)
        if code == ErrorCode.INTERNAL_ERROR.value:
            self._logger.exception("Job %s raised an unclassified error", job.id, exc_info=exc)
        message = sanitize_error_message(f"{code}: {exc}")
        now = self._ctx.clock()
        await self._ctx.queue.fail_async(job.id, reason=message, now=now)
        if resource is not None:
            await asyncio.to_thread(
                self._ctx.tracker.mark_error, job.user_id, resource, message
            )
        orchestrator_events.emit_failed_event(
            self._logger,
            job_id=job.id,
            job_type=job.type,
            error_code=code,
            error=message,
        )
        return RESULT_FAILED


__all__ = [
    "Dispatcher",
    "RESULT_BACKOFF",
    "RESULT_CONTINUED",
    "RESULT_DONE",
    "RESULT_FAILED",
]
