from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class SubjectState(str, Enum):
    ENROLLED = "ENROLLED"
    ONBOARDING = "ONBOARDING"
    DAILY_ACTIVE = "DAILY_ACTIVE"
    PAUSED = "PAUSED"
    TRANSITION = "TRANSITION"
    WEEKLY = "WEEKLY"
    TREATMENT = "TREATMENT"
    DORMANT = "DORMANT"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class TriggerType(str, Enum):
    PATIENT_RESPONSE = "PATIENT_RESPONSE"
    SYSTEM_TIMER = "SYSTEM_TIMER"
    ADMIN_ACTION = "ADMIN_ACTION"


class PendingQuestion(str, Enum):
    ONBOARD_TIME = "ONBOARD_TIME"
    ONBOARD_APPT = "ONBOARD_APPT"
    MED_HISTORY_YN = "MED_HISTORY_YN"
    MED_HISTORY_LIST = "MED_HISTORY_LIST"
    CLARIFY_LEVEL = "CLARIFY_LEVEL"
    WEEKLY_RESPONSE = "WEEKLY_RESPONSE"
    TRANSITION_CHOICE = "TRANSITION_CHOICE"


class EnrollmentSource(str, Enum):
    PCP_INITIATED = "PCP_INITIATED"
    SELF_SERVICE = "SELF_SERVICE"
    REFERRAL = "REFERRAL"
    QR_CODE = "QR_CODE"


class SprintStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class ResponseMethod(str, Enum):
    NUMERIC = "NUMERIC"
    AI_PARSED = "AI_PARSED"
    REGEX_FALLBACK = "REGEX_FALLBACK"
    CLARIFIED = "CLARIFIED"


class ClassificationAction(str, Enum):
    ACCEPT = "ACCEPT"
    CLARIFY = "CLARIFY"
    REPROMPT = "REPROMPT"


class JobType(str, Enum):
    DAILY_CHECKIN = "DAILY_CHECKIN"
    WEEKLY_QUESTION = "WEEKLY_QUESTION"
    INSIGHT = "INSIGHT"
    RE_ENGAGEMENT = "RE_ENGAGEMENT"
    TRANSITION = "TRANSITION"
    ONBOARD_REMINDER = "ONBOARD_REMINDER"
    REPORT_GENERATION = "REPORT_GENERATION"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class WeeklyQuestionType(str, Enum):
    ACUTE_MEDS = "ACUTE_MEDS"
    MISSED_ACTIVITIES = "MISSED_ACTIVITIES"
    TRIGGERS = "TRIGGERS"


class MessageDirection(str, Enum):
    OUTBOUND = "OUTBOUND"
    INBOUND = "INBOUND"


RECURRENCE_DAILY = "daily"
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
# States in which daily tracking prompts are sent and entries recorded.
TRACKING_STATES = frozenset({SubjectState.DAILY_ACTIVE, SubjectState.TREATMENT})


@dataclass(slots=True)
class Subject:
    subject_id: str
    phone_number: str
    first_name: str
    state: SubjectState
    timezone: str
    enrollment_source: EnrollmentSource
    preferred_time: str | None = None
    day_count: int = 0
    consecutive_missed: int = 0
    pending_question: PendingQuestion | None = None
    email: str | None = None
    pcp_name: str | None = None
    appointment_date: date | None = None
    sprint_start_date: date | None = None
    opted_in_at: datetime | None = None
    opted_out_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class Sprint:
    sprint_id: str
    subject_id: str
    start_date: date
    target_days: int
    status: SprintStatus = SprintStatus.ACTIVE
    days_completed: int = 0
    days_missed: int = 0
    end_date: date | None = None
    report_token: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class DailyEntryDraft:
    subject_id: str
    sprint_id: str
    entry_date: date
    level: int
    response_method: ResponseMethod
    confidence: float | None
    response_raw: str | None
    prompt_sent_at: datetime
    response_received_at: datetime
    day_number: int
    acknowledgment_template: str | None = None


@dataclass(slots=True)
class DailyEntry:
    entry_id: str
    subject_id: str
    sprint_id: str
    entry_date: date
    level: int | None
    response_method: ResponseMethod | None
    confidence: float | None
    response_raw: str | None
    prompt_sent_at: datetime | None
    response_received_at: datetime | None
    response_latency_min: int | None
    is_missed: bool
    day_number: int
    acknowledgment_template: str | None = None


@dataclass(slots=True)
class WeeklyEntry:
    weekly_entry_id: str
    subject_id: str
    sprint_id: str
    question_type: WeeklyQuestionType
    week_number: int
    asked_at: datetime
    response_text: str | None = None
    responded_at: datetime | None = None


@dataclass(slots=True)
class JobDraft:
    subject_id: str
    job_type: JobType
    scheduled_for: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    recurrence: str | None = None
    jitter_seconds: int = 0
    max_attempts: int = 3


@dataclass(slots=True)
class ScheduledJob:
    job_id: str
    subject_id: str
    job_type: JobType
    status: JobStatus
    scheduled_for: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    recurrence: str | None = None
    jitter_seconds: int = 0
    claimed_at: datetime | None = None
    processed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class StateTransitionRecord:
    transition_id: str
    subject_id: str
    from_state: SubjectState
    to_state: SubjectState
    trigger_type: TriggerType
    trigger_detail: str | None
    created_at: datetime


@dataclass(slots=True)
class MessageRecord:
    message_id: str
    subject_id: str
    direction: MessageDirection
    body: str
    template_id: str | None
    provider_sid: str | None
    created_at: datetime
