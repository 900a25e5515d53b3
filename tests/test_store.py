import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from engagement.core.models import DailyEntryDraft, EnrollmentSource, ResponseMethod
from engagement.services.gateway import RepositoryConflictError, RepositoryValidationError
from engagement.services.store import InMemoryRepository

PROMPTED = datetime(2026, 6, 10, 12, 0, tzinfo=timezone.utc)


def _draft(subject_id: str, sprint_id: str, entry_date: date, level: int) -> DailyEntryDraft:
    return DailyEntryDraft(
        subject_id=subject_id,
        sprint_id=sprint_id,
        entry_date=entry_date,
        level=level,
        response_method=ResponseMethod.NUMERIC,
        confidence=1.0,
        response_raw=None,
        prompt_sent_at=PROMPTED,
        response_received_at=PROMPTED + timedelta(minutes=42, seconds=30),
        day_number=1,
    )


async def _subject_with_sprint(repository: InMemoryRepository):
    subject = await repository.create_subject(
        phone_number="+15555550100",
        first_name="Dana",
        timezone="America/New_York",
        enrollment_source=EnrollmentSource.SELF_SERVICE,
    )
    sprint = await repository.create_sprint(subject.subject_id, start_date=date(2026, 6, 10), target_days=30)
    return subject, sprint


def test_upsert_overwrites_same_day_and_recounts() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        subject, sprint = await _subject_with_sprint(repository)

        first = await repository.upsert_daily_entry(_draft(subject.subject_id, sprint.sprint_id, date(2026, 6, 10), 2))
        second = await repository.upsert_daily_entry(_draft(subject.subject_id, sprint.sprint_id, date(2026, 6, 10), 4))
        await repository.upsert_daily_entry(_draft(subject.subject_id, sprint.sprint_id, date(2026, 6, 11), 1))

        assert second.entry_id == first.entry_id
        assert second.level == 4
        assert second.response_latency_min == 42
        entries = await repository.list_sprint_entries(sprint.sprint_id)
        assert [entry.level for entry in entries] == [4, 1]
        stored = await repository.get_subject(subject.subject_id)
        assert stored.day_count == 2
        assert (await repository.get_active_sprint(subject.subject_id)).days_completed == 2

    asyncio.run(scenario())


def test_answer_after_missed_day_replaces_the_missed_row() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        subject, sprint = await _subject_with_sprint(repository)
        recorded = await repository.record_missed_day(
            subject_id=subject.subject_id,
            sprint_id=sprint.sprint_id,
            entry_date=date(2026, 6, 10),
            prompt_sent_at=PROMPTED,
            day_number=1,
        )
        again = await repository.record_missed_day(
            subject_id=subject.subject_id,
            sprint_id=sprint.sprint_id,
            entry_date=date(2026, 6, 10),
            prompt_sent_at=PROMPTED,
            day_number=1,
        )
        assert (recorded, again) == (True, False)
        assert (await repository.get_subject(subject.subject_id)).consecutive_missed == 1

        await repository.upsert_daily_entry(_draft(subject.subject_id, sprint.sprint_id, date(2026, 6, 10), 3))

        refreshed = await repository.get_active_sprint(subject.subject_id)
        assert (refreshed.days_completed, refreshed.days_missed) == (1, 0)
        assert (await repository.get_subject(subject.subject_id)).consecutive_missed == 0

    asyncio.run(scenario())


def test_new_sprint_abandons_the_active_one() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        subject, first = await _subject_with_sprint(repository)
        second = await repository.create_sprint(subject.subject_id, start_date=date(2026, 7, 10), target_days=30)

        assert (await repository.get_active_sprint(subject.subject_id)).sprint_id == second.sprint_id
        assert repository.sprints[first.sprint_id].status.value == "ABANDONED"

    asyncio.run(scenario())


def test_phone_numbers_are_unique() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        await _subject_with_sprint(repository)
        with pytest.raises(RepositoryConflictError):
            await repository.create_subject(
                phone_number="+15555550100",
                first_name="Sam",
                timezone="America/Chicago",
                enrollment_source=EnrollmentSource.REFERRAL,
            )

    asyncio.run(scenario())


@pytest.mark.parametrize("fields", [{"state": "PAUSED"}, {"favourite_colour": "blue"}])
def test_update_rejects_protected_and_unknown_fields(fields: dict) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        subject, _ = await _subject_with_sprint(repository)
        with pytest.raises(RepositoryValidationError):
            await repository.update_subject_fields(subject.subject_id, fields)

    asyncio.run(scenario())


def test_inbound_receipts_dedupe() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        assert await repository.register_inbound("SM1", from_address="+15555550100", at=PROMPTED)
        assert not await repository.register_inbound("SM1", from_address="+15555550100", at=PROMPTED)

    asyncio.run(scenario())
