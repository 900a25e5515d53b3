from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Collection
from datetime import date, datetime, timezone
from typing import Any

from engagement.core.errors import AuditWriteError
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
    SprintStatus,
    StateTransitionRecord,
    Subject,
    SubjectState,
    TERMINAL_JOB_STATUSES,
    WeeklyEntry,
    WeeklyQuestionType,
)
from engagement.services.gateway import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    StateWriteResult,
    TransitionAudit,
    validate_subject_fields,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local repository used for development and tests.

    Every public method returns copies so callers never hold live references
    to stored rows. Job claims are serialized by a lock.
    """

    def __init__(self, job_max_attempts: int = 3) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.subjects: dict[str, Subject] = {}
        self.sprints: dict[str, Sprint] = {}
        self.entries: dict[tuple[str, str, date], DailyEntry] = {}
        self.weekly_entries: dict[str, WeeklyEntry] = {}
        self.medication_history: list[dict[str, Any]] = []
        self.messages: list[MessageRecord] = []
        self.inbound_receipts: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, ScheduledJob] = {}
        self.transitions: list[StateTransitionRecord] = []
        self.fail_audit_writes = False
        self._claim_lock = asyncio.Lock()

    async def close(self) -> None:
        return None

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
    ) -> Subject:
        if any(subject.phone_number == phone_number for subject in self.subjects.values()):
            raise RepositoryConflictError("phone number already enrolled")
        now = _utcnow()
        subject = Subject(
            subject_id=_new_id(),
            phone_number=phone_number,
            first_name=first_name,
            state=SubjectState.ENROLLED,
            timezone=timezone,
            enrollment_source=enrollment_source,
            email=email,
            pcp_name=pcp_name,
            appointment_date=appointment_date,
            created_at=now,
            updated_at=now,
        )
        self.subjects[subject.subject_id] = subject
        return copy.copy(subject)

    async def get_subject(self, subject_id: str) -> Subject | None:
        subject = self.subjects.get(subject_id)
        return copy.copy(subject) if subject else None

    async def get_subject_by_phone(self, phone_number: str) -> Subject | None:
        for subject in self.subjects.values():
            if subject.phone_number == phone_number:
                return copy.copy(subject)
        return None

    async def update_subject_fields(self, subject_id: str, fields: dict[str, Any]) -> Subject:
        validate_subject_fields(fields)
        subject = self._require_subject(subject_id)
        for key, value in fields.items():
            setattr(subject, key, value)
        subject.updated_at = _utcnow()
        return copy.copy(subject)

    async def compare_and_set_state(
        self,
        subject_id: str,
        *,
        expected_state: SubjectState,
        new_state: SubjectState,
        fields: dict[str, Any],
        audit: TransitionAudit,
        now: datetime,
    ) -> StateWriteResult | None:
        subject = self._require_subject(subject_id)
        if subject.state != expected_state:
            return None

        subject.state = new_state
        for key, value in fields.items():
            setattr(subject, key, value)
        subject.updated_at = now

        if self.fail_audit_writes:
            return StateWriteResult(
                subject=copy.copy(subject),
                transition=None,
                audit_error=AuditWriteError("audit store rejected the write"),
            )

        record = StateTransitionRecord(
            transition_id=_new_id(),
            subject_id=subject_id,
            from_state=expected_state,
            to_state=new_state,
            trigger_type=audit.trigger_type,
            trigger_detail=audit.trigger_detail,
            created_at=now,
        )
        self.transitions.append(record)
        return StateWriteResult(subject=copy.copy(subject), transition=copy.copy(record))

    async def list_transitions(self, subject_id: str, limit: int = 100) -> list[StateTransitionRecord]:
        rows = [record for record in self.transitions if record.subject_id == subject_id]
        rows.sort(key=lambda record: record.created_at, reverse=True)
        return [copy.copy(record) for record in rows[:limit]]

    async def create_sprint(self, subject_id: str, *, start_date: date, target_days: int) -> Sprint:
        self._require_subject(subject_id)
        for sprint in self.sprints.values():
            if sprint.subject_id == subject_id and sprint.status == SprintStatus.ACTIVE:
                sprint.status = SprintStatus.ABANDONED
                sprint.end_date = start_date
        sprint = Sprint(
            sprint_id=_new_id(),
            subject_id=subject_id,
            start_date=start_date,
            target_days=target_days,
            created_at=_utcnow(),
        )
        self.sprints[sprint.sprint_id] = sprint
        return copy.copy(sprint)

    async def get_active_sprint(self, subject_id: str) -> Sprint | None:
        for sprint in self.sprints.values():
            if sprint.subject_id == subject_id and sprint.status == SprintStatus.ACTIVE:
                return copy.copy(sprint)
        return None

    async def get_latest_reported_sprint(self, subject_id: str) -> Sprint | None:
        reported = [
            sprint
            for sprint in self.sprints.values()
            if sprint.subject_id == subject_id and sprint.report_token is not None
        ]
        if not reported:
            return None
        latest = max(reported, key=lambda sprint: sprint.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return copy.copy(latest)

    async def complete_sprint(self, sprint_id: str, *, report_token: str, end_date: date) -> Sprint:
        sprint = self.sprints.get(sprint_id)
        if sprint is None:
            raise RepositoryNotFoundError("sprint not found")
        sprint.status = SprintStatus.COMPLETED
        sprint.report_token = report_token
        sprint.end_date = end_date
        return copy.copy(sprint)

    async def upsert_daily_entry(self, draft: DailyEntryDraft) -> DailyEntry:
        subject = self._require_subject(draft.subject_id)
        sprint = self.sprints.get(draft.sprint_id)
        if sprint is None:
            raise RepositoryNotFoundError("sprint not found")

        key = (draft.subject_id, draft.sprint_id, draft.entry_date)
        existing = self.entries.get(key)
        latency = int((draft.response_received_at - draft.prompt_sent_at).total_seconds() // 60)
        entry = DailyEntry(
            entry_id=existing.entry_id if existing else _new_id(),
            subject_id=draft.subject_id,
            sprint_id=draft.sprint_id,
            entry_date=draft.entry_date,
            level=draft.level,
            response_method=draft.response_method,
            confidence=draft.confidence,
            response_raw=draft.response_raw,
            prompt_sent_at=draft.prompt_sent_at,
            response_received_at=draft.response_received_at,
            response_latency_min=max(0, latency),
            is_missed=False,
            day_number=existing.day_number if existing else draft.day_number,
            acknowledgment_template=draft.acknowledgment_template,
        )
        self.entries[key] = entry

        completed = sum(
            1 for item in self.entries.values() if item.sprint_id == draft.sprint_id and not item.is_missed
        )
        missed = sum(1 for item in self.entries.values() if item.sprint_id == draft.sprint_id and item.is_missed)
        sprint.days_completed = completed
        sprint.days_missed = missed
        subject.day_count = completed
        subject.consecutive_missed = 0
        subject.updated_at = _utcnow()
        return copy.copy(entry)

    async def record_missed_day(
        self,
        *,
        subject_id: str,
        sprint_id: str,
        entry_date: date,
        prompt_sent_at: datetime,
        day_number: int,
    ) -> bool:
        subject = self._require_subject(subject_id)
        sprint = self.sprints.get(sprint_id)
        if sprint is None:
            raise RepositoryNotFoundError("sprint not found")
        key = (subject_id, sprint_id, entry_date)
        if key in self.entries:
            return False
        self.entries[key] = DailyEntry(
            entry_id=_new_id(),
            subject_id=subject_id,
            sprint_id=sprint_id,
            entry_date=entry_date,
            level=None,
            response_method=None,
            confidence=None,
            response_raw=None,
            prompt_sent_at=prompt_sent_at,
            response_received_at=None,
            response_latency_min=None,
            is_missed=True,
            day_number=day_number,
        )
        sprint.days_missed += 1
        subject.consecutive_missed += 1
        subject.updated_at = _utcnow()
        return True

    async def get_entry_for_date(self, subject_id: str, sprint_id: str, entry_date: date) -> DailyEntry | None:
        entry = self.entries.get((subject_id, sprint_id, entry_date))
        return copy.copy(entry) if entry else None

    async def get_latest_entry(self, sprint_id: str) -> DailyEntry | None:
        rows = [entry for entry in self.entries.values() if entry.sprint_id == sprint_id and not entry.is_missed]
        if not rows:
            return None
        return copy.copy(max(rows, key=lambda entry: entry.entry_date))

    async def list_sprint_entries(self, sprint_id: str) -> list[DailyEntry]:
        rows = [entry for entry in self.entries.values() if entry.sprint_id == sprint_id and not entry.is_missed]
        rows.sort(key=lambda entry: entry.entry_date)
        return [copy.copy(entry) for entry in rows]

    async def create_weekly_entry(
        self,
        *,
        subject_id: str,
        sprint_id: str,
        question_type: WeeklyQuestionType,
        week_number: int,
        asked_at: datetime,
    ) -> WeeklyEntry:
        entry = WeeklyEntry(
            weekly_entry_id=_new_id(),
            subject_id=subject_id,
            sprint_id=sprint_id,
            question_type=question_type,
            week_number=week_number,
            asked_at=asked_at,
        )
        self.weekly_entries[entry.weekly_entry_id] = entry
        return copy.copy(entry)

    async def get_open_weekly_entry(self, subject_id: str) -> WeeklyEntry | None:
        rows = [
            entry
            for entry in self.weekly_entries.values()
            if entry.subject_id == subject_id and entry.responded_at is None
        ]
        if not rows:
            return None
        return copy.copy(max(rows, key=lambda entry: entry.asked_at))

    async def answer_weekly_entry(self, weekly_entry_id: str, *, response_text: str, responded_at: datetime) -> None:
        entry = self.weekly_entries.get(weekly_entry_id)
        if entry is None:
            raise RepositoryNotFoundError("weekly entry not found")
        entry.response_text = response_text
        entry.responded_at = responded_at

    async def add_medication_history(self, subject_id: str, medication_raw: str) -> None:
        self._require_subject(subject_id)
        self.medication_history.append(
            {"subject_id": subject_id, "medication_raw": medication_raw, "status": "UNKNOWN"}
        )

    async def log_message(
        self,
        *,
        subject_id: str,
        direction: MessageDirection,
        body: str,
        template_id: str | None,
        provider_sid: str | None,
        at: datetime,
    ) -> MessageRecord:
        record = MessageRecord(
            message_id=_new_id(),
            subject_id=subject_id,
            direction=direction,
            body=body,
            template_id=template_id,
            provider_sid=provider_sid,
            created_at=at,
        )
        self.messages.append(record)
        return copy.copy(record)

    async def last_outbound_at(self, subject_id: str, template_id: str) -> datetime | None:
        sent = [
            record.created_at
            for record in self.messages
            if record.subject_id == subject_id
            and record.direction == MessageDirection.OUTBOUND
            and record.template_id == template_id
        ]
        return max(sent) if sent else None

    async def register_inbound(self, provider_message_id: str, *, from_address: str, at: datetime) -> bool:
        if provider_message_id in self.inbound_receipts:
            return False
        self.inbound_receipts[provider_message_id] = {"from_address": from_address, "received_at": at}
        return True

    async def release_inbound(self, provider_message_id: str) -> None:
        self.inbound_receipts.pop(provider_message_id, None)

    async def insert_job(self, draft: JobDraft) -> ScheduledJob:
        self._require_subject(draft.subject_id)
        job = ScheduledJob(
            job_id=_new_id(),
            subject_id=draft.subject_id,
            job_type=draft.job_type,
            status=JobStatus.PENDING,
            scheduled_for=draft.scheduled_for,
            payload=dict(draft.payload),
            max_attempts=draft.max_attempts,
            recurrence=draft.recurrence,
            jitter_seconds=draft.jitter_seconds,
            created_at=_utcnow(),
        )
        self.jobs[job.job_id] = job
        return copy.deepcopy(job)

    async def get_job(self, job_id: str) -> ScheduledJob | None:
        job = self.jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def list_jobs(self, subject_id: str, status: JobStatus | None = None) -> list[ScheduledJob]:
        rows = [
            job
            for job in self.jobs.values()
            if job.subject_id == subject_id and (status is None or job.status == status)
        ]
        rows.sort(key=lambda job: job.scheduled_for)
        return [copy.deepcopy(job) for job in rows]

    async def claim_due_jobs(self, limit: int, now: datetime) -> list[ScheduledJob]:
        async with self._claim_lock:
            due = sorted(
                (job for job in self.jobs.values() if job.status == JobStatus.PENDING and job.scheduled_for <= now),
                key=lambda job: job.scheduled_for,
            )[: max(0, limit)]
            # yield while holding the lock so overlapping claimers queue behind it
            await asyncio.sleep(0)
            for job in due:
                job.status = JobStatus.PROCESSING
                job.claimed_at = now
            return [copy.deepcopy(job) for job in due]

    async def complete_job(
        self,
        job_id: str,
        *,
        processed_at: datetime,
        follow_up: JobDraft | None = None,
        follow_up_states: Collection[SubjectState] = (),
    ) -> ScheduledJob:
        job = self._require_job(job_id)
        if job.status != JobStatus.PROCESSING:
            raise RepositoryConflictError(f"job is not processing: {job.status.value}")
        job.status = JobStatus.COMPLETED
        job.processed_at = processed_at
        if follow_up is not None and not self._has_pending_chain(follow_up):
            subject = self.subjects.get(follow_up.subject_id)
            if subject is not None and subject.state in follow_up_states:
                await self.insert_job(follow_up)
        return copy.deepcopy(job)

    def _has_pending_chain(self, draft: JobDraft) -> bool:
        # a chain rescheduled while this job was processing already has its next occurrence
        return any(
            job.subject_id == draft.subject_id
            and job.job_type == draft.job_type
            and job.recurrence == draft.recurrence
            and job.status == JobStatus.PENDING
            for job in self.jobs.values()
        )

    async def fail_job(
        self,
        job_id: str,
        *,
        error: str,
        retry_at: datetime | None,
        processed_at: datetime,
    ) -> ScheduledJob:
        job = self._require_job(job_id)
        if job.status != JobStatus.PROCESSING:
            raise RepositoryConflictError(f"job is not processing: {job.status.value}")
        job.attempts += 1
        job.last_error = error
        if retry_at is not None and job.attempts < job.max_attempts:
            job.status = JobStatus.PENDING
            job.scheduled_for = retry_at
            job.claimed_at = None
        else:
            job.status = JobStatus.FAILED
            job.processed_at = processed_at
        return copy.deepcopy(job)

    async def cancel_pending_jobs(self, subject_id: str, *, processed_at: datetime) -> int:
        cancelled = 0
        for job in self.jobs.values():
            if job.subject_id == subject_id and job.status == JobStatus.PENDING:
                job.status = JobStatus.CANCELLED
                job.processed_at = processed_at
                cancelled += 1
        return cancelled

    async def requeue_stale_processing(self, *, claimed_before: datetime, limit: int) -> int:
        stale = sorted(
            (
                job
                for job in self.jobs.values()
                if job.status == JobStatus.PROCESSING and job.claimed_at is not None and job.claimed_at <= claimed_before
            ),
            key=lambda job: job.claimed_at,
        )[: max(0, limit)]
        for job in stale:
            job.status = JobStatus.PENDING
            job.claimed_at = None
        return len(stale)

    async def purge_terminal_jobs(self, *, processed_before: datetime, limit: int) -> int:
        expired = [
            job_id
            for job_id, job in self.jobs.items()
            if job.status in TERMINAL_JOB_STATUSES and job.processed_at is not None and job.processed_at <= processed_before
        ][: max(0, limit)]
        for job_id in expired:
            del self.jobs[job_id]
        return len(expired)

    def _require_subject(self, subject_id: str) -> Subject:
        subject = self.subjects.get(subject_id)
        if subject is None:
            raise RepositoryNotFoundError("subject not found")
        return subject

    def _require_job(self, job_id: str) -> ScheduledJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job
