from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from opentelemetry import trace

from engagement.core.models import RECURRENCE_DAILY, JobDraft, JobStatus, JobType, ScheduledJob
from engagement.core.telemetry import annotate_job, annotate_subject
from engagement.jobs.executor import JOB_HANDLERS, JOB_PRECONDITIONS, JobHandler, job_is_stale
from engagement.services.context import EngineContext

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_MAX_ERROR_LENGTH = 1000


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


@dataclass(slots=True)
class DispatchSummary:
    claimed: int
    succeeded: int
    failed: int
    skipped: int
    retried: int
    elapsed_ms: int


class Dispatcher:
    """Consumer side of the job queue.

    Each tick claims a batch of due jobs with the repository's skip-locked
    claim and processes them concurrently. Every job resolves on its own;
    one job raising never affects the rest of the batch.
    """

    def __init__(
        self,
        context: EngineContext,
        *,
        batch_size: int = 50,
        concurrency: int = 10,
        retry_backoff_seconds: int = 300,
        slow_threshold_ms: int = 10_000,
        handlers: dict[JobType, JobHandler] | None = None,
    ) -> None:
        self.context = context
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.retry_backoff = timedelta(seconds=retry_backoff_seconds)
        self.slow_threshold_ms = slow_threshold_ms
        self.handlers = handlers if handlers is not None else JOB_HANDLERS

    async def run_once(self) -> DispatchSummary:
        started = time.perf_counter()
        with tracer.start_as_current_span("dispatch.tick") as span:
            jobs = await self.context.repository.claim_due_jobs(self.batch_size, self.context.now())
            span.set_attribute("dispatch.claimed", len(jobs))

            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(job: ScheduledJob) -> JobOutcome:
                async with semaphore:
                    return await self.process_job(job)

            results = await asyncio.gather(*(bounded(job) for job in jobs), return_exceptions=True)

        outcomes: list[JobOutcome] = []
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error(
                    "job resolution failed job_id=%s job_type=%s error=%s",
                    job.job_id,
                    job.job_type.value,
                    result,
                )
                outcomes.append(JobOutcome.FAILED)
            else:
                outcomes.append(result)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        summary = DispatchSummary(
            claimed=len(jobs),
            succeeded=sum(1 for outcome in outcomes if outcome == JobOutcome.SUCCEEDED),
            failed=sum(1 for outcome in outcomes if outcome in {JobOutcome.FAILED, JobOutcome.RETRY_SCHEDULED}),
            skipped=sum(1 for outcome in outcomes if outcome == JobOutcome.SKIPPED),
            retried=sum(1 for outcome in outcomes if outcome == JobOutcome.RETRY_SCHEDULED),
            elapsed_ms=elapsed_ms,
        )
        if elapsed_ms > self.slow_threshold_ms:
            logger.warning("slow dispatch elapsed_ms=%s claimed=%s", elapsed_ms, summary.claimed)
        if jobs:
            logger.info(
                "dispatch tick claimed=%s succeeded=%s failed=%s skipped=%s elapsed_ms=%s",
                summary.claimed,
                summary.succeeded,
                summary.failed,
                summary.skipped,
                elapsed_ms,
            )
        return summary

    async def process_job(self, job: ScheduledJob) -> JobOutcome:
        with tracer.start_as_current_span("dispatch.process_job") as span:
            annotate_job(span, job)
            outcome = await self._process(job, span)
            span.set_attribute("job.outcome", outcome.value)
            return outcome

    async def _process(self, job: ScheduledJob, span: trace.Span) -> JobOutcome:
        repository = self.context.repository
        try:
            subject = await repository.get_subject(job.subject_id)
            if subject is None:
                await repository.fail_job(
                    job.job_id,
                    error=f"subject not found: {job.subject_id}",
                    retry_at=None,
                    processed_at=self.context.now(),
                )
                logger.error("job failed, subject missing job_id=%s subject_id=%s", job.job_id, job.subject_id)
                return JobOutcome.FAILED
            annotate_subject(span, subject)

            if job_is_stale(job, subject):
                logger.info(
                    "stale job skipped job_id=%s job_type=%s state=%s",
                    job.job_id,
                    job.job_type.value,
                    subject.state.value,
                )
                await repository.complete_job(job.job_id, processed_at=self.context.now())
                return JobOutcome.SKIPPED

            # resolved before the handler runs so a bad payload fails without sending
            follow_up = self._next_occurrence(job)
            handler: JobHandler = self.handlers[job.job_type]
            await handler(job, subject, self.context)
        except Exception as exc:
            span.record_exception(exc)
            return await self._resolve_failure(job, exc)

        try:
            await repository.complete_job(
                job.job_id,
                processed_at=self.context.now(),
                follow_up=follow_up,
                follow_up_states=JOB_PRECONDITIONS[job.job_type] or (),
            )
        except Exception as exc:
            span.record_exception(exc)
            return await self._resolve_completion_failure(job, exc)
        return JobOutcome.SUCCEEDED

    async def _resolve_completion_failure(self, job: ScheduledJob, exc: Exception) -> JobOutcome:
        # the handler already delivered, so the job must not run again
        now = self.context.now()
        error = f"completion failed: {type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH]
        await self.context.repository.fail_job(job.job_id, error=error, retry_at=None, processed_at=now)
        logger.error("job completion failed job_id=%s job_type=%s error=%s", job.job_id, job.job_type.value, error)
        await self._continue_chain(job)
        return JobOutcome.FAILED

    async def _resolve_failure(self, job: ScheduledJob, exc: Exception) -> JobOutcome:
        now = self.context.now()
        error = f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH]
        updated = await self.context.repository.fail_job(
            job.job_id,
            error=error,
            retry_at=now + self.retry_backoff,
            processed_at=now,
        )
        if updated.status != JobStatus.FAILED:
            logger.warning(
                "job attempt failed job_id=%s job_type=%s attempts=%s/%s error=%s",
                job.job_id,
                job.job_type.value,
                updated.attempts,
                updated.max_attempts,
                error,
            )
            return JobOutcome.RETRY_SCHEDULED

        logger.error(
            "job failed permanently job_id=%s job_type=%s attempts=%s error=%s",
            job.job_id,
            job.job_type.value,
            updated.attempts,
            error,
        )
        await self._continue_chain(job)
        return JobOutcome.FAILED

    async def _continue_chain(self, job: ScheduledJob) -> None:
        # a failed day must not end the subject's recurring schedule
        follow_up = self._next_occurrence(job)
        if follow_up is None:
            return
        subject = await self.context.repository.get_subject(job.subject_id)
        allowed = JOB_PRECONDITIONS[job.job_type]
        if subject is None or (allowed is not None and subject.state not in allowed):
            return
        pending = await self.context.repository.list_jobs(job.subject_id, JobStatus.PENDING)
        if any(item.job_type == job.job_type and item.recurrence == job.recurrence for item in pending):
            return
        await self.context.repository.insert_job(follow_up)

    def _next_occurrence(self, job: ScheduledJob) -> JobDraft | None:
        if job.recurrence != RECURRENCE_DAILY:
            return None
        local_time = job.payload.get("preferred_time")
        if not local_time:
            logger.warning("recurring job without preferred_time job_id=%s", job.job_id)
            return None
        after = max(self.context.now(), job.scheduled_for)
        return self.context.scheduler.daily_draft(
            job.subject_id,
            local_time,
            job.payload.get("timezone"),
            after=after,
        )
