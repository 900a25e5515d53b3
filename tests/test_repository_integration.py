from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta, timezone

import asyncpg  # type: ignore[import-untyped]
import pytest

from engagement.core.models import (
    DailyEntryDraft,
    EnrollmentSource,
    JobDraft,
    JobStatus,
    JobType,
    ResponseMethod,
    SubjectState,
    TriggerType,
)
from engagement.services.gateway import RepositoryConflictError, TransitionAudit
from engagement.services.repository import PostgresRepository

NOW = datetime(2026, 6, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("HV_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require HV_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    asyncio.run(_truncate_tables(database_url))


def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[None]]) -> None:
    async def run() -> None:
        repository = PostgresRepository(database_url, min_pool_size=1, max_pool_size=8, job_max_attempts=3)
        try:
            await scenario(repository)
        finally:
            await repository.close()

    asyncio.run(run())


async def _enroll(repository: PostgresRepository, phone_number: str = "+15555550100"):
    return await repository.create_subject(
        phone_number=phone_number,
        first_name="Dana",
        timezone="America/New_York",
        enrollment_source=EnrollmentSource.SELF_SERVICE,
    )


def test_concurrent_claims_never_overlap(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        subject = await _enroll(repository)
        for offset in range(25):
            await repository.insert_job(
                JobDraft(subject.subject_id, JobType.INSIGHT, NOW - timedelta(minutes=offset))
            )

        batches = await asyncio.gather(*(repository.claim_due_jobs(10, NOW) for _ in range(4)))

        claimed = [job.job_id for batch in batches for job in batch]
        assert len(claimed) == 25
        assert len(set(claimed)) == 25
        processing = await repository.list_jobs(subject.subject_id, JobStatus.PROCESSING)
        assert len(processing) == 25

    _with_repository(database_url, scenario)


def test_compare_and_set_state_writes_audit_row(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        subject = await _enroll(repository)
        audit = TransitionAudit(trigger_type=TriggerType.PATIENT_RESPONSE, trigger_detail="START")

        written = await repository.compare_and_set_state(
            subject.subject_id,
            expected_state=SubjectState.ENROLLED,
            new_state=SubjectState.ONBOARDING,
            fields={"opted_in_at": NOW},
            audit=audit,
            now=NOW,
        )
        lost = await repository.compare_and_set_state(
            subject.subject_id,
            expected_state=SubjectState.ENROLLED,
            new_state=SubjectState.DORMANT,
            fields={},
            audit=audit,
            now=NOW,
        )

        assert written.subject.state == SubjectState.ONBOARDING
        assert written.subject.opted_in_at == NOW
        assert lost is None
        [record] = await repository.list_transitions(subject.subject_id)
        assert (record.from_state, record.to_state) == (SubjectState.ENROLLED, SubjectState.ONBOARDING)

    _with_repository(database_url, scenario)


def test_daily_entry_upsert_recounts(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> None:
        subject = await _enroll(repository)
        sprint = await repository.create_sprint(subject.subject_id, start_date=date(2026, 6, 10), target_days=30)

        for level in (2, 4):
            await repository.upsert_daily_entry(
                DailyEntryDraft(
                    subject_id=subject.subject_id,
                    sprint_id=sprint.sprint_id,
                    entry_date=date(2026, 6, 10),
                    level=level,
                    response_method=ResponseMethod.NUMERIC,
                    confidence=1.0,
                    response_raw=None,
                    prompt_sent_at=NOW,
                    response_received_at=NOW + timedelta(minutes=5),
                    day_number=1,
                )
            )

        [entry] = await repository.list_sprint_entries(sprint.sprint_id)
        assert entry.level == 4
        assert entry.response_latency_min == 5
        stored = await repository.get_subject(subject.subject_id)
        assert stored.day_count == 1

        with pytest.raises(RepositoryConflictError):
            await _enroll(repository)

    _with_repository(database_url, scenario)


async def _truncate_tables(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              state_transitions,
              scheduled_jobs,
              inbound_receipts,
              messages,
              medication_history,
              weekly_entries,
              daily_entries,
              sprints,
              subjects
            restart identity cascade
            """
        )
    finally:
        await conn.close()
