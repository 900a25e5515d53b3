from __future__ import annotations

import json
from collections.abc import Collection
from datetime import date, datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from engagement.core.config import get_settings
from engagement.core.errors import AuditWriteError
from engagement.core.models import (
    DailyEntry,
    DailyEntryDraft,
    EnrollmentSource,
    JobDraft,
    JobStatus,
    JobType,
    MessageDirection,
    MessageRecord,
    PendingQuestion,
    ResponseMethod,
    ScheduledJob,
    Sprint,
    SprintStatus,
    StateTransitionRecord,
    Subject,
    SubjectState,
    TriggerType,
    WeeklyEntry,
    WeeklyQuestionType,
)
from engagement.services.gateway import (
    STATE_OWNED_FIELDS,
    SUBJECT_MUTABLE_FIELDS,
    EngagementRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    StateWriteResult,
    TransitionAudit,
    validate_subject_fields,
)
from engagement.services.store import InMemoryRepository

_SUBJECT_COLUMNS = """
  subject_id::text as subject_id,
  phone_number,
  first_name,
  email,
  state::text as state,
  preferred_time,
  timezone,
  sprint_start_date,
  day_count,
  consecutive_missed,
  enrollment_source::text as enrollment_source,
  pcp_name,
  appointment_date,
  pending_question::text as pending_question,
  opted_in_at,
  opted_out_at,
  created_at,
  updated_at
"""

_SPRINT_COLUMNS = """
  sprint_id::text as sprint_id,
  subject_id::text as subject_id,
  start_date,
  end_date,
  target_days,
  days_completed,
  days_missed,
  status::text as status,
  report_token,
  created_at
"""

_ENTRY_COLUMNS = """
  entry_id::text as entry_id,
  subject_id::text as subject_id,
  sprint_id::text as sprint_id,
  entry_date,
  level,
  response_method::text as response_method,
  confidence,
  response_raw,
  prompt_sent_at,
  response_received_at,
  response_latency_min,
  is_missed,
  day_number,
  acknowledgment_template
"""

_JOB_COLUMNS = """
  job_id::text as job_id,
  subject_id::text as subject_id,
  job_type::text as job_type,
  status::text as status,
  scheduled_for,
  payload,
  attempts,
  max_attempts,
  last_error,
  recurrence,
  jitter_seconds,
  claimed_at,
  processed_at,
  created_at
"""

_CLAIMED_JOB_COLUMNS = _JOB_COLUMNS.replace("job_id::text as job_id", "j.job_id::text as job_id")

_TRANSITION_COLUMNS = """
  transition_id::text as transition_id,
  subject_id::text as subject_id,
  from_state::text as from_state,
  to_state::text as to_state,
  trigger_type::text as trigger_type,
  trigger_detail,
  created_at
"""

_SUBJECT_COLUMN_CASTS = {
    "pending_question": "::pending_question_type",
}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into subjects (
                  phone_number,
                  first_name,
                  email,
                  timezone,
                  enrollment_source,
                  pcp_name,
                  appointment_date
                )
                values ($1, $2, $3, $4, $5::enrollment_source, $6, $7)
                returning {_SUBJECT_COLUMNS}
                """,
                phone_number,
                first_name,
                email,
                timezone,
                enrollment_source.value,
                pcp_name,
                appointment_date,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("phone number already enrolled") from exc
        return self._subject_row_to_model(row)

    async def get_subject(self, subject_id: str) -> Subject | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_SUBJECT_COLUMNS} from subjects where subject_id = $1::uuid",
                subject_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._subject_row_to_model(row) if row else None

    async def get_subject_by_phone(self, phone_number: str) -> Subject | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_SUBJECT_COLUMNS} from subjects where phone_number = $1",
            phone_number,
        )
        return self._subject_row_to_model(row) if row else None

    async def update_subject_fields(self, subject_id: str, fields: dict[str, Any]) -> Subject:
        validate_subject_fields(fields)
        if not fields:
            subject = await self.get_subject(subject_id)
            if subject is None:
                raise RepositoryNotFoundError("subject not found")
            return subject

        assignments, values = self._subject_assignments(fields, start_index=2)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update subjects
            set {assignments}, updated_at = now()
            where subject_id = $1::uuid
            returning {_SUBJECT_COLUMNS}
            """,
            subject_id,
            *values,
        )
        if not row:
            raise RepositoryNotFoundError("subject not found")
        return self._subject_row_to_model(row)

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
        extra = {key: value for key, value in fields.items() if key not in {"opted_in_at", "opted_out_at"}}
        validate_subject_fields(extra)
        if "state" in fields:
            raise RepositoryValidationError("state must be passed as new_state")

        assignments, values = self._subject_assignments(fields, start_index=5)
        set_clause = "state = $3::subject_state, updated_at = $4"
        if assignments:
            set_clause = f"{set_clause}, {assignments}"

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update subjects
                    set {set_clause}
                    where subject_id = $1::uuid and state = $2::subject_state
                    returning {_SUBJECT_COLUMNS}
                    """,
                    subject_id,
                    expected_state.value,
                    new_state.value,
                    now,
                    *values,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from subjects where subject_id = $1::uuid", subject_id)
                    if not exists:
                        raise RepositoryNotFoundError("subject not found")
                    return None

                subject = self._subject_row_to_model(row)
                try:
                    async with conn.transaction():
                        audit_row = await conn.fetchrow(
                            f"""
                            insert into state_transitions (
                              subject_id,
                              from_state,
                              to_state,
                              trigger_type,
                              trigger_detail,
                              created_at
                            )
                            values ($1::uuid, $2::subject_state, $3::subject_state, $4::transition_trigger, $5, $6)
                            returning {_TRANSITION_COLUMNS}
                            """,
                            subject_id,
                            expected_state.value,
                            new_state.value,
                            audit.trigger_type.value,
                            audit.trigger_detail,
                            now,
                        )
                except asyncpg.PostgresError as exc:
                    return StateWriteResult(subject=subject, transition=None, audit_error=AuditWriteError(str(exc)))
                return StateWriteResult(subject=subject, transition=self._transition_row_to_model(audit_row))

    async def list_transitions(self, subject_id: str, limit: int = 100) -> list[StateTransitionRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_TRANSITION_COLUMNS}
            from state_transitions
            where subject_id = $1::uuid
            order by created_at desc
            limit $2
            """,
            subject_id,
            max(1, min(limit, 1000)),
        )
        return [self._transition_row_to_model(row) for row in rows]

    async def create_sprint(self, subject_id: str, *, start_date: date, target_days: int) -> Sprint:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        update sprints
                        set status = 'ABANDONED', end_date = $2
                        where subject_id = $1::uuid and status = 'ACTIVE'
                        """,
                        subject_id,
                        start_date,
                    )
                    row = await conn.fetchrow(
                        f"""
                        insert into sprints (subject_id, start_date, target_days)
                        values ($1::uuid, $2, $3)
                        returning {_SPRINT_COLUMNS}
                        """,
                        subject_id,
                        start_date,
                        target_days,
                    )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("subject not found") from exc
        return self._sprint_row_to_model(row)

    async def get_active_sprint(self, subject_id: str) -> Sprint | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {_SPRINT_COLUMNS} from sprints where subject_id = $1::uuid and status = 'ACTIVE'",
            subject_id,
        )
        return self._sprint_row_to_model(row) if row else None

    async def get_latest_reported_sprint(self, subject_id: str) -> Sprint | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_SPRINT_COLUMNS}
            from sprints
            where subject_id = $1::uuid and report_token is not null
            order by created_at desc
            limit 1
            """,
            subject_id,
        )
        return self._sprint_row_to_model(row) if row else None

    async def complete_sprint(self, sprint_id: str, *, report_token: str, end_date: date) -> Sprint:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sprints
            set status = 'COMPLETED', report_token = $2, end_date = $3
            where sprint_id = $1::uuid
            returning {_SPRINT_COLUMNS}
            """,
            sprint_id,
            report_token,
            end_date,
        )
        if not row:
            raise RepositoryNotFoundError("sprint not found")
        return self._sprint_row_to_model(row)

    async def upsert_daily_entry(self, draft: DailyEntryDraft) -> DailyEntry:
        latency = int((draft.response_received_at - draft.prompt_sent_at).total_seconds() // 60)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        insert into daily_entries (
                          subject_id,
                          sprint_id,
                          entry_date,
                          level,
                          response_raw,
                          response_method,
                          confidence,
                          prompt_sent_at,
                          response_received_at,
                          response_latency_min,
                          is_missed,
                          day_number,
                          acknowledgment_template
                        )
                        values ($1::uuid, $2::uuid, $3, $4, $5, $6::response_method, $7, $8, $9, $10, false, $11, $12)
                        on conflict (subject_id, sprint_id, entry_date)
                        do update set
                          level = excluded.level,
                          response_raw = excluded.response_raw,
                          response_method = excluded.response_method,
                          confidence = excluded.confidence,
                          response_received_at = excluded.response_received_at,
                          response_latency_min = excluded.response_latency_min,
                          is_missed = false,
                          acknowledgment_template = excluded.acknowledgment_template
                        returning {_ENTRY_COLUMNS}
                        """,
                        draft.subject_id,
                        draft.sprint_id,
                        draft.entry_date,
                        draft.level,
                        draft.response_raw,
                        draft.response_method.value,
                        draft.confidence,
                        draft.prompt_sent_at,
                        draft.response_received_at,
                        max(0, latency),
                        draft.day_number,
                        draft.acknowledgment_template,
                    )
                    completed = await conn.fetchval(
                        """
                        update sprints
                        set
                          days_completed = (
                            select count(*) from daily_entries where sprint_id = $1::uuid and not is_missed
                          ),
                          days_missed = (
                            select count(*) from daily_entries where sprint_id = $1::uuid and is_missed
                          )
                        where sprint_id = $1::uuid
                        returning days_completed
                        """,
                        draft.sprint_id,
                    )
                    await conn.execute(
                        """
                        update subjects
                        set day_count = $2, consecutive_missed = 0, updated_at = now()
                        where subject_id = $1::uuid
                        """,
                        draft.subject_id,
                        completed or 0,
                    )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("subject or sprint not found") from exc
        return self._entry_row_to_model(row)

    async def record_missed_day(
        self,
        *,
        subject_id: str,
        sprint_id: str,
        entry_date: date,
        prompt_sent_at: datetime,
        day_number: int,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    """
                    insert into daily_entries (subject_id, sprint_id, entry_date, prompt_sent_at, is_missed, day_number)
                    values ($1::uuid, $2::uuid, $3, $4, true, $5)
                    on conflict (subject_id, sprint_id, entry_date) do nothing
                    returning entry_id
                    """,
                    subject_id,
                    sprint_id,
                    entry_date,
                    prompt_sent_at,
                    day_number,
                )
                if inserted is None:
                    return False
                await conn.execute(
                    "update sprints set days_missed = days_missed + 1 where sprint_id = $1::uuid",
                    sprint_id,
                )
                await conn.execute(
                    """
                    update subjects
                    set consecutive_missed = consecutive_missed + 1, updated_at = now()
                    where subject_id = $1::uuid
                    """,
                    subject_id,
                )
                return True

    async def get_entry_for_date(self, subject_id: str, sprint_id: str, entry_date: date) -> DailyEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_ENTRY_COLUMNS}
            from daily_entries
            where subject_id = $1::uuid and sprint_id = $2::uuid and entry_date = $3
            """,
            subject_id,
            sprint_id,
            entry_date,
        )
        return self._entry_row_to_model(row) if row else None

    async def get_latest_entry(self, sprint_id: str) -> DailyEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_ENTRY_COLUMNS}
            from daily_entries
            where sprint_id = $1::uuid and not is_missed
            order by entry_date desc
            limit 1
            """,
            sprint_id,
        )
        return self._entry_row_to_model(row) if row else None

    async def list_sprint_entries(self, sprint_id: str) -> list[DailyEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_ENTRY_COLUMNS}
            from daily_entries
            where sprint_id = $1::uuid and not is_missed
            order by entry_date asc
            """,
            sprint_id,
        )
        return [self._entry_row_to_model(row) for row in rows]

    async def create_weekly_entry(
        self,
        *,
        subject_id: str,
        sprint_id: str,
        question_type: WeeklyQuestionType,
        week_number: int,
        asked_at: datetime,
    ) -> WeeklyEntry:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into weekly_entries (subject_id, sprint_id, question_type, week_number, asked_at)
            values ($1::uuid, $2::uuid, $3::weekly_question_type, $4, $5)
            returning
              weekly_entry_id::text as weekly_entry_id,
              subject_id::text as subject_id,
              sprint_id::text as sprint_id,
              question_type::text as question_type,
              week_number,
              asked_at,
              response_text,
              responded_at
            """,
            subject_id,
            sprint_id,
            question_type.value,
            week_number,
            asked_at,
        )
        return self._weekly_row_to_model(row)

    async def get_open_weekly_entry(self, subject_id: str) -> WeeklyEntry | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              weekly_entry_id::text as weekly_entry_id,
              subject_id::text as subject_id,
              sprint_id::text as sprint_id,
              question_type::text as question_type,
              week_number,
              asked_at,
              response_text,
              responded_at
            from weekly_entries
            where subject_id = $1::uuid and responded_at is null
            order by asked_at desc
            limit 1
            """,
            subject_id,
        )
        return self._weekly_row_to_model(row) if row else None

    async def answer_weekly_entry(self, weekly_entry_id: str, *, response_text: str, responded_at: datetime) -> None:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update weekly_entries
            set response_text = $2, responded_at = $3
            where weekly_entry_id = $1::uuid
            """,
            weekly_entry_id,
            response_text,
            responded_at,
        )
        if status.endswith(" 0"):
            raise RepositoryNotFoundError("weekly entry not found")

    async def add_medication_history(self, subject_id: str, medication_raw: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "insert into medication_history (subject_id, medication_raw) values ($1::uuid, $2)",
            subject_id,
            medication_raw,
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into messages (subject_id, direction, template_id, body, provider_sid, created_at)
            values ($1::uuid, $2::message_direction, $3, $4, $5, $6)
            returning message_id::text as message_id, created_at
            """,
            subject_id,
            direction.value,
            template_id,
            body,
            provider_sid,
            at,
        )
        return MessageRecord(
            message_id=row["message_id"],
            subject_id=subject_id,
            direction=direction,
            body=body,
            template_id=template_id,
            provider_sid=provider_sid,
            created_at=row["created_at"],
        )

    async def last_outbound_at(self, subject_id: str, template_id: str) -> datetime | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            select max(created_at)
            from messages
            where subject_id = $1::uuid and direction = 'OUTBOUND' and template_id = $2
            """,
            subject_id,
            template_id,
        )

    async def register_inbound(self, provider_message_id: str, *, from_address: str, at: datetime) -> bool:
        pool = await self._get_pool()
        inserted = await pool.fetchval(
            """
            insert into inbound_receipts (provider_message_id, from_address, received_at)
            values ($1, $2, $3)
            on conflict (provider_message_id) do nothing
            returning provider_message_id
            """,
            provider_message_id,
            from_address,
            at,
        )
        return inserted is not None

    async def release_inbound(self, provider_message_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute("delete from inbound_receipts where provider_message_id = $1", provider_message_id)

    async def insert_job(self, draft: JobDraft) -> ScheduledJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into scheduled_jobs (
                  subject_id,
                  job_type,
                  scheduled_for,
                  payload,
                  max_attempts,
                  recurrence,
                  jitter_seconds
                )
                values ($1::uuid, $2::job_type, $3, $4::jsonb, $5, $6, $7)
                returning {_JOB_COLUMNS}
                """,
                draft.subject_id,
                draft.job_type.value,
                draft.scheduled_for,
                json.dumps(draft.payload),
                draft.max_attempts,
                draft.recurrence,
                draft.jitter_seconds,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("subject not found") from exc
        return self._job_row_to_model(row)

    async def get_job(self, job_id: str) -> ScheduledJob | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from scheduled_jobs where job_id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._job_row_to_model(row) if row else None

    async def list_jobs(self, subject_id: str, status: JobStatus | None = None) -> list[ScheduledJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from scheduled_jobs
            where subject_id = $1::uuid and ($2::job_status is null or status = $2::job_status)
            order by scheduled_for asc
            """,
            subject_id,
            status.value if status else None,
        )
        return [self._job_row_to_model(row) for row in rows]

    async def claim_due_jobs(self, limit: int, now: datetime) -> list[ScheduledJob]:
        if limit <= 0:
            return []
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with due as (
                      select job_id
                      from scheduled_jobs
                      where status = 'PENDING' and scheduled_for <= $2
                      order by scheduled_for asc
                      limit $1
                      for update skip locked
                    )
                    update scheduled_jobs j
                    set status = 'PROCESSING', claimed_at = $2, updated_at = now()
                    from due
                    where j.job_id = due.job_id
                    returning {_CLAIMED_JOB_COLUMNS}
                    """,
                    min(limit, 1000),
                    now,
                )
        jobs = [self._job_row_to_model(row) for row in rows]
        jobs.sort(key=lambda job: job.scheduled_for)
        return jobs

    async def complete_job(
        self,
        job_id: str,
        *,
        processed_at: datetime,
        follow_up: JobDraft | None = None,
        follow_up_states: Collection[SubjectState] = (),
    ) -> ScheduledJob:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update scheduled_jobs
                    set status = 'COMPLETED', processed_at = $2, updated_at = now()
                    where job_id = $1::uuid and status = 'PROCESSING'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    processed_at,
                )
                if not row:
                    await self._raise_for_unprocessable_job(conn, job_id)

                if follow_up is not None:
                    await conn.execute(
                        """
                        insert into scheduled_jobs (
                          subject_id,
                          job_type,
                          scheduled_for,
                          payload,
                          max_attempts,
                          recurrence,
                          jitter_seconds
                        )
                        select $1::uuid, $2::job_type, $3, $4::jsonb, $5, $6, $7
                        where exists (
                          select 1
                          from subjects
                          where subject_id = $1::uuid and state = any($8::subject_state[])
                        )
                        and not exists (
                          select 1
                          from scheduled_jobs
                          where subject_id = $1::uuid
                            and job_type = $2::job_type
                            and recurrence is not distinct from $6
                            and status = 'PENDING'
                        )
                        """,
                        follow_up.subject_id,
                        follow_up.job_type.value,
                        follow_up.scheduled_for,
                        json.dumps(follow_up.payload),
                        follow_up.max_attempts,
                        follow_up.recurrence,
                        follow_up.jitter_seconds,
                        [state.value for state in follow_up_states],
                    )
                return self._job_row_to_model(row)

    async def fail_job(
        self,
        job_id: str,
        *,
        error: str,
        retry_at: datetime | None,
        processed_at: datetime,
    ) -> ScheduledJob:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update scheduled_jobs
                    set
                      attempts = attempts + 1,
                      last_error = $2,
                      status = case
                        when $3::timestamptz is not null and attempts + 1 < max_attempts then 'PENDING'::job_status
                        else 'FAILED'::job_status
                      end,
                      scheduled_for = case when $3::timestamptz is not null and attempts + 1 < max_attempts then $3 else scheduled_for end,
                      claimed_at = case when $3::timestamptz is not null and attempts + 1 < max_attempts then null else claimed_at end,
                      processed_at = case when $3::timestamptz is not null and attempts + 1 < max_attempts then processed_at else $4 end,
                      updated_at = now()
                    where job_id = $1::uuid and status = 'PROCESSING'
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    error,
                    retry_at,
                    processed_at,
                )
                if not row:
                    await self._raise_for_unprocessable_job(conn, job_id)
                return self._job_row_to_model(row)

    async def cancel_pending_jobs(self, subject_id: str, *, processed_at: datetime) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update scheduled_jobs
            set status = 'CANCELLED', processed_at = $2, updated_at = now()
            where subject_id = $1::uuid and status = 'PENDING'
            returning job_id
            """,
            subject_id,
            processed_at,
        )
        return len(rows)

    async def requeue_stale_processing(self, *, claimed_before: datetime, limit: int) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select job_id
                      from scheduled_jobs
                      where status = 'PROCESSING'
                        and claimed_at is not null
                        and claimed_at <= $2
                      order by claimed_at asc
                      limit $1
                      for update skip locked
                    )
                    update scheduled_jobs j
                    set status = 'PENDING', claimed_at = null, updated_at = now()
                    from stale
                    where j.job_id = stale.job_id
                    returning j.job_id
                    """,
                    max(1, min(limit, 1000)),
                    claimed_before,
                )
                return len(rows)

    async def purge_terminal_jobs(self, *, processed_before: datetime, limit: int) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with expired as (
              select job_id
              from scheduled_jobs
              where status in ('COMPLETED', 'FAILED', 'CANCELLED')
                and processed_at is not null
                and processed_at <= $2
              order by processed_at asc
              limit $1
              for update skip locked
            )
            delete from scheduled_jobs j
            using expired
            where j.job_id = expired.job_id
            returning j.job_id
            """,
            max(1, min(limit, 10_000)),
            processed_before,
        )
        return len(rows)

    async def _raise_for_unprocessable_job(self, conn: asyncpg.Connection, job_id: str) -> None:
        status = await conn.fetchval("select status::text from scheduled_jobs where job_id = $1::uuid", job_id)
        if status is None:
            raise RepositoryNotFoundError("job not found")
        raise RepositoryConflictError(f"job is not processing: {status}")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("HV_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _subject_assignments(fields: dict[str, Any], *, start_index: int) -> tuple[str, list[Any]]:
        allowed = SUBJECT_MUTABLE_FIELDS | (STATE_OWNED_FIELDS - {"state"})
        fragments: list[str] = []
        values: list[Any] = []
        for offset, (key, value) in enumerate(sorted(fields.items())):
            if key not in allowed:
                raise RepositoryValidationError(f"unknown subject field: {key}")
            cast = _SUBJECT_COLUMN_CASTS.get(key, "")
            fragments.append(f"{key} = ${start_index + offset}{cast}")
            values.append(value.value if isinstance(value, PendingQuestion) else value)
        return ", ".join(fragments), values

    @staticmethod
    def _subject_row_to_model(row: asyncpg.Record) -> Subject:
        pending = row["pending_question"]
        return Subject(
            subject_id=row["subject_id"],
            phone_number=row["phone_number"],
            first_name=row["first_name"],
            state=SubjectState(row["state"]),
            timezone=row["timezone"],
            enrollment_source=EnrollmentSource(row["enrollment_source"]),
            preferred_time=row["preferred_time"],
            day_count=row["day_count"],
            consecutive_missed=row["consecutive_missed"],
            pending_question=PendingQuestion(pending) if pending else None,
            email=row["email"],
            pcp_name=row["pcp_name"],
            appointment_date=row["appointment_date"],
            sprint_start_date=row["sprint_start_date"],
            opted_in_at=row["opted_in_at"],
            opted_out_at=row["opted_out_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _sprint_row_to_model(row: asyncpg.Record) -> Sprint:
        return Sprint(
            sprint_id=row["sprint_id"],
            subject_id=row["subject_id"],
            start_date=row["start_date"],
            target_days=row["target_days"],
            status=SprintStatus(row["status"]),
            days_completed=row["days_completed"],
            days_missed=row["days_missed"],
            end_date=row["end_date"],
            report_token=row["report_token"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _entry_row_to_model(row: asyncpg.Record) -> DailyEntry:
        method = row["response_method"]
        confidence = row["confidence"]
        return DailyEntry(
            entry_id=row["entry_id"],
            subject_id=row["subject_id"],
            sprint_id=row["sprint_id"],
            entry_date=row["entry_date"],
            level=row["level"],
            response_method=ResponseMethod(method) if method else None,
            confidence=float(confidence) if confidence is not None else None,
            response_raw=row["response_raw"],
            prompt_sent_at=row["prompt_sent_at"],
            response_received_at=row["response_received_at"],
            response_latency_min=row["response_latency_min"],
            is_missed=row["is_missed"],
            day_number=row["day_number"],
            acknowledgment_template=row["acknowledgment_template"],
        )

    @staticmethod
    def _weekly_row_to_model(row: asyncpg.Record) -> WeeklyEntry:
        return WeeklyEntry(
            weekly_entry_id=row["weekly_entry_id"],
            subject_id=row["subject_id"],
            sprint_id=row["sprint_id"],
            question_type=WeeklyQuestionType(row["question_type"]),
            week_number=row["week_number"],
            asked_at=row["asked_at"],
            response_text=row["response_text"],
            responded_at=row["responded_at"],
        )

    @staticmethod
    def _job_row_to_model(row: asyncpg.Record) -> ScheduledJob:
        payload = row["payload"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {}
        if not isinstance(payload, dict):
            payload = {}

        return ScheduledJob(
            job_id=row["job_id"],
            subject_id=row["subject_id"],
            job_type=JobType(row["job_type"]),
            status=JobStatus(row["status"]),
            scheduled_for=row["scheduled_for"],
            payload=payload,
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_error=row["last_error"],
            recurrence=row["recurrence"],
            jitter_seconds=row["jitter_seconds"],
            claimed_at=row["claimed_at"],
            processed_at=row["processed_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _transition_row_to_model(row: asyncpg.Record) -> StateTransitionRecord:
        return StateTransitionRecord(
            transition_id=row["transition_id"],
            subject_id=row["subject_id"],
            from_state=SubjectState(row["from_state"]),
            to_state=SubjectState(row["to_state"]),
            trigger_type=TriggerType(row["trigger_type"]),
            trigger_detail=row["trigger_detail"],
            created_at=row["created_at"],
        )


@lru_cache
def get_repository() -> EngagementRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return InMemoryRepository(job_max_attempts=settings.job_max_attempts)
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
    )
