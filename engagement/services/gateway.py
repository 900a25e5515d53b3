from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

from engagement.core.errors import (
    AuditWriteError,
    EngagementError,
    InvalidInputError,
    NotFoundError,
    TransientDependencyError,
)
from engagement.core.models import (
    DailyEntry,
    DailyEntryDraft,
    EnrollmentSource,
    JobDraft,
    JobStatus,
    MessageDirection,
    MessageRecord,
    ScheduledJob,
    Sprint,
    StateTransitionRecord,
    Subject,
    SubjectState,
    TriggerType,
    WeeklyEntry,
    WeeklyQuestionType,
)


class RepositoryError(EngagementError):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError, TransientDependencyError):
    """Raised when the datastore is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError, NotFoundError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write conflicts with existing data."""


class RepositoryValidationError(RepositoryError, InvalidInputError):
    """Raised when payload validation fails before persistence."""


# Columns owned by the state machine; plain field updates may not touch them.
STATE_OWNED_FIELDS = frozenset({"state", "opted_in_at", "opted_out_at"})
SUBJECT_MUTABLE_FIELDS = frozenset(
    {
        "first_name",
        "email",
        "preferred_time",
        "timezone",
        "day_count",
        "consecutive_missed",
        "pending_question",
        "appointment_date",
        "sprint_start_date",
        "pcp_name",
    }
)


@dataclass(slots=True)
class TransitionAudit:
    trigger_type: TriggerType
    trigger_detail: str | None


@dataclass(slots=True)
class StateWriteResult:
    subject: Subject
    transition: StateTransitionRecord | None
    audit_error: AuditWriteError | None = None


def validate_subject_fields(fields: dict[str, Any]) -> None:
    owned = STATE_OWNED_FIELDS.intersection(fields)
    if owned:
        raise RepositoryValidationError(f"fields are owned by the state machine: {sorted(owned)}")
    unknown = set(fields) - SUBJECT_MUTABLE_FIELDS
    if unknown:
        raise RepositoryValidationError(f"unknown subject fields: {sorted(unknown)}")


class EngagementRepository(Protocol):
    """Storage port consumed by the engine.

    ``claim_due_jobs`` must be atomic and skip rows claimed concurrently;
    ``compare_and_set_state`` must only write when the stored state equals
    ``expected_state``; ``upsert_daily_entry`` must be keyed on
    (subject, sprint, entry date).
    """

    async def close(self) -> None: ...

    # subjects
    async def create_subject(
        self,
        *,
        phone_number: str,
        first_name: str,
        timezone: str,
        enrollment_source: EnrollmentSource,
        email: str | None = None,
        pcp_name: str | None = None,
        appointment_date: date | None = None,
    ) -> Subject: ...

    async def get_subject(self, subject_id: str) -> Subject | None: ...

    async def get_subject_by_phone(self, phone_number: str) -> Subject | None: ...

    async def update_subject_fields(self, subject_id: str, fields: dict[str, Any]) -> Subject: ...

    async def compare_and_set_state(
        self,
        subject_id: str,
        *,
        expected_state: SubjectState,
        new_state: SubjectState,
        fields: dict[str, Any],
        audit: TransitionAudit,
        now: datetime,
    ) -> StateWriteResult | None: ...

    async def list_transitions(self, subject_id: str, limit: int = 100) -> list[StateTransitionRecord]: ...

    # sprints and entries
    async def create_sprint(self, subject_id: str, *, start_date: date, target_days: int) -> Sprint: ...

    async def get_active_sprint(self, subject_id: str) -> Sprint | None: ...

    async def get_latest_reported_sprint(self, subject_id: str) -> Sprint | None: ...

    async def complete_sprint(self, sprint_id: str, *, report_token: str, end_date: date) -> Sprint: ...

    async def upsert_daily_entry(self, draft: DailyEntryDraft) -> DailyEntry: ...

    async def record_missed_day(
        self,
        *,
        subject_id: str,
        sprint_id: str,
        entry_date: date,
        prompt_sent_at: datetime,
        day_number: int,
    ) -> bool: ...

    async def get_entry_for_date(self, subject_id: str, sprint_id: str, entry_date: date) -> DailyEntry | None: ...

    async def get_latest_entry(self, sprint_id: str) -> DailyEntry | None: ...

    async def list_sprint_entries(self, sprint_id: str) -> list[DailyEntry]: ...

    async def create_weekly_entry(
        self,
        *,
        subject_id: str,
        sprint_id: str,
        question_type: WeeklyQuestionType,
        week_number: int,
        asked_at: datetime,
    ) -> WeeklyEntry: ...

    async def get_open_weekly_entry(self, subject_id: str) -> WeeklyEntry | None: ...

    async def answer_weekly_entry(self, weekly_entry_id: str, *, response_text: str, responded_at: datetime) -> None: ...

    async def add_medication_history(self, subject_id: str, medication_raw: str) -> None: ...

    # messages
    async def log_message(
        self,
        *,
        subject_id: str,
        direction: MessageDirection,
        body: str,
        template_id: str | None,
        provider_sid: str | None,
        at: datetime,
    ) -> MessageRecord: ...

    async def last_outbound_at(self, subject_id: str, template_id: str) -> datetime | None: ...

    async def register_inbound(self, provider_message_id: str, *, from_address: str, at: datetime) -> bool: ...

    async def release_inbound(self, provider_message_id: str) -> None: ...

    # jobs
    async def insert_job(self, draft: JobDraft) -> ScheduledJob: ...

    async def get_job(self, job_id: str) -> ScheduledJob | None: ...

    async def list_jobs(self, subject_id: str, status: JobStatus | None = None) -> list[ScheduledJob]: ...

    async def claim_due_jobs(self, limit: int, now: datetime) -> list[ScheduledJob]: ...

    async def complete_job(
        self,
        job_id: str,
        *,
        processed_at: datetime,
        follow_up: JobDraft | None = None,
        follow_up_states: Collection[SubjectState] = (),
    ) -> ScheduledJob: ...

    async def fail_job(
        self,
        job_id: str,
        *,
        error: str,
        retry_at: datetime | None,
        processed_at: datetime,
    ) -> ScheduledJob: ...

    async def cancel_pending_jobs(self, subject_id: str, *, processed_at: datetime) -> int: ...

    async def requeue_stale_processing(self, *, claimed_before: datetime, limit: int) -> int: ...

    async def purge_terminal_jobs(self, *, processed_before: datetime, limit: int) -> int: ...

