from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from engagement.core.errors import InvalidInputError
from engagement.core.models import RECURRENCE_DAILY, JobDraft, JobType, ScheduledJob
from engagement.services.gateway import EngagementRepository

logger = logging.getLogger(__name__)

DEFAULT_JITTER_MAX_SECONDS = 300


def resolve_timezone(name: str | None, default: str = "America/New_York") -> ZoneInfo:
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidInputError(f"unknown timezone: {name}") from exc


def parse_local_time(value: str) -> time:
    hour_text, separator, minute_text = value.strip().partition(":")
    if not separator:
        raise InvalidInputError(f"local time must be HH:MM: {value!r}")
    try:
        hour = int(hour_text)
        minute = int(minute_text[:2])
    except ValueError as exc:
        raise InvalidInputError(f"local time must be HH:MM: {value!r}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidInputError(f"local time out of range: {value!r}")
    return time(hour, minute)


def local_date(instant: datetime, tz_name: str | None) -> date:
    return instant.astimezone(resolve_timezone(tz_name)).date()


def next_occurrence(local_time: str, tz_name: str | None, after: datetime | None = None) -> datetime:
    """Return the next UTC instant at which the wall clock in ``tz_name`` reads ``local_time``.

    The UTC offset is derived from the target local date itself, so a fire
    time on the far side of a DST change keeps its wall-clock time. A local
    time that does not exist on the target date (spring-forward gap) is moved
    forward by the size of the gap.
    """
    tz = resolve_timezone(tz_name)
    target_time = parse_local_time(local_time)
    reference = (after or datetime.now(timezone.utc)).astimezone(tz)

    candidate_date = reference.date()
    for _ in range(3):
        candidate = _localize(datetime.combine(candidate_date, target_time), tz)
        if candidate > reference:
            return candidate.astimezone(timezone.utc)
        candidate_date += timedelta(days=1)
    raise InvalidInputError(f"could not compute next occurrence for {local_time!r} in {tz_name}")


def _localize(naive: datetime, tz: ZoneInfo) -> datetime:
    aware = naive.replace(tzinfo=tz, fold=0)
    round_trip = aware.astimezone(timezone.utc).astimezone(tz)
    if round_trip.replace(tzinfo=None) != naive:
        # nonexistent wall time; shift by the offset change across the gap
        gap = aware.replace(fold=1).utcoffset() - aware.replace(fold=0).utcoffset()
        return (naive + abs(gap)).replace(tzinfo=tz)
    return aware


class JobScheduler:
    """Producer side of the job queue: computes fire times and inserts or cancels jobs."""

    def __init__(
        self,
        repository: EngagementRepository,
        *,
        jitter_max_seconds: int = DEFAULT_JITTER_MAX_SECONDS,
        max_attempts: int = 3,
        default_timezone: str = "America/New_York",
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.jitter_max_seconds = max(0, jitter_max_seconds)
        self.max_attempts = max(1, max_attempts)
        self.default_timezone = default_timezone
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._rng = rng or random.Random()

    def now(self) -> datetime:
        return self._clock()

    def jitter(self) -> int:
        return self._rng.randint(0, self.jitter_max_seconds)

    def daily_draft(
        self,
        subject_id: str,
        local_time: str,
        tz_name: str | None,
        *,
        after: datetime | None = None,
    ) -> JobDraft:
        tz_value = tz_name or self.default_timezone
        fire_at = next_occurrence(local_time, tz_value, after=after or self.now())
        jitter = self.jitter()
        return JobDraft(
            subject_id=subject_id,
            job_type=JobType.DAILY_CHECKIN,
            scheduled_for=fire_at + timedelta(seconds=jitter),
            payload={"preferred_time": local_time, "timezone": tz_value},
            recurrence=RECURRENCE_DAILY,
            jitter_seconds=jitter,
            max_attempts=self.max_attempts,
        )

    async def schedule_recurring(
        self,
        subject_id: str,
        local_time: str,
        tz_name: str | None,
        *,
        after: datetime | None = None,
    ) -> ScheduledJob:
        job = await self.repository.insert_job(self.daily_draft(subject_id, local_time, tz_name, after=after))
        logger.info(
            "scheduled daily job subject_id=%s job_id=%s scheduled_for=%s jitter_seconds=%s",
            subject_id,
            job.job_id,
            job.scheduled_for.isoformat(),
            job.jitter_seconds,
        )
        return job

    async def schedule_one_shot(
        self,
        subject_id: str,
        job_type: JobType,
        when: datetime,
        payload: dict[str, Any] | None = None,
    ) -> ScheduledJob:
        if when.tzinfo is None:
            raise InvalidInputError("one-shot fire time must be timezone-aware")
        job = await self.repository.insert_job(
            JobDraft(
                subject_id=subject_id,
                job_type=job_type,
                scheduled_for=when.astimezone(timezone.utc),
                payload=dict(payload or {}),
                max_attempts=self.max_attempts,
            )
        )
        logger.info(
            "scheduled one-shot job subject_id=%s job_id=%s job_type=%s scheduled_for=%s",
            subject_id,
            job.job_id,
            job_type.value,
            job.scheduled_for.isoformat(),
        )
        return job

    async def cancel_all(self, subject_id: str) -> int:
        cancelled = await self.repository.cancel_pending_jobs(subject_id, processed_at=self.now())
        if cancelled:
            logger.info("cancelled pending jobs subject_id=%s count=%s", subject_id, cancelled)
        return cancelled
