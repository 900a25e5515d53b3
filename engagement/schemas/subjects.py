from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from engagement.core.models import SubjectState
from engagement.core.parsing import normalize_phone

EnrollmentSourceName = Literal["PCP_INITIATED", "SELF_SERVICE", "REFERRAL", "QR_CODE"]


class EnrollmentRequest(BaseModel):
    phone_number: str = Field(min_length=7, max_length=32)
    first_name: str = Field(min_length=1, max_length=100)
    timezone: str | None = Field(default=None, max_length=64)
    enrollment_source: EnrollmentSourceName = "SELF_SERVICE"
    email: str | None = Field(default=None, max_length=254)
    pcp_name: str | None = Field(default=None, max_length=100)
    appointment_date: date | None = None

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        normalized = normalize_phone(value)
        if normalized is None:
            raise ValueError("phone_number must be a valid US or E.164 number")
        return normalized

    @field_validator("first_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("first_name must not be blank")
        return stripped


class SubjectOut(BaseModel):
    subject_id: str
    phone_number: str
    first_name: str
    state: str
    timezone: str
    enrollment_source: str
    preferred_time: str | None = None
    day_count: int
    consecutive_missed: int
    pending_question: str | None = None
    pcp_name: str | None = None
    appointment_date: date | None = None
    sprint_start_date: date | None = None
    opted_in_at: datetime | None = None
    opted_out_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransitionOut(BaseModel):
    transition_id: str
    from_state: str
    to_state: str
    trigger_type: str
    trigger_detail: str | None = None
    created_at: datetime


class EnrollmentOut(BaseModel):
    subject: SubjectOut
    welcome_template: str
    welcome_sent: bool = True
    reminder_job_id: str | None = None


class TransitionRequest(BaseModel):
    to_state: SubjectState
    detail: str | None = Field(default=None, max_length=500)
