import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from engagement.core.errors import InvalidInputError, InvalidTransitionError, NotFoundError, TransientDependencyError
from engagement.core.models import TRACKING_STATES, EnrollmentSource, JobType, StateTransitionRecord, Subject, TriggerType
from engagement.core.security import get_admin_principal
from engagement.jobs.lifecycle import welcome_message
from engagement.schemas.subjects import EnrollmentOut, EnrollmentRequest, SubjectOut, TransitionOut, TransitionRequest
from engagement.services.container import get_services
from engagement.services.gateway import RepositoryConflictError
from engagement.services.scheduler import resolve_timezone
from engagement.services.sms import SmsDeliveryError

router = APIRouter()
logger = logging.getLogger(__name__)


def subject_out(subject: Subject) -> SubjectOut:
    return SubjectOut(
        subject_id=subject.subject_id,
        phone_number=subject.phone_number,
        first_name=subject.first_name,
        state=subject.state.value,
        timezone=subject.timezone,
        enrollment_source=subject.enrollment_source.value,
        preferred_time=subject.preferred_time,
        day_count=subject.day_count,
        consecutive_missed=subject.consecutive_missed,
        pending_question=subject.pending_question.value if subject.pending_question else None,
        pcp_name=subject.pcp_name,
        appointment_date=subject.appointment_date,
        sprint_start_date=subject.sprint_start_date,
        opted_in_at=subject.opted_in_at,
        opted_out_at=subject.opted_out_at,
        created_at=subject.created_at,
        updated_at=subject.updated_at,
    )


def transition_out(record: StateTransitionRecord) -> TransitionOut:
    return TransitionOut(
        transition_id=record.transition_id,
        from_state=record.from_state.value,
        to_state=record.to_state.value,
        trigger_type=record.trigger_type.value,
        trigger_detail=record.trigger_detail,
        created_at=record.created_at,
    )


@router.post("", response_model=EnrollmentOut, status_code=status.HTTP_201_CREATED)
async def enroll_subject(
    payload: EnrollmentRequest,
    principal=Depends(get_admin_principal),
    services=Depends(get_services),
) -> EnrollmentOut:
    try:
        principal.require_scopes({"subjects:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    context = services.context
    timezone_name = payload.timezone or context.default_timezone
    try:
        resolve_timezone(timezone_name)
        subject = await context.repository.create_subject(
            phone_number=payload.phone_number,
            first_name=payload.first_name,
            timezone=timezone_name,
            enrollment_source=EnrollmentSource(payload.enrollment_source),
            email=payload.email,
            pcp_name=payload.pcp_name,
            appointment_date=payload.appointment_date,
        )
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except TransientDependencyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    reminder = await context.scheduler.schedule_one_shot(
        subject.subject_id,
        JobType.ONBOARD_REMINDER,
        context.now() + timedelta(hours=services.settings.onboard_reminder_delay_hours),
    )
    template_id, data = welcome_message(subject)
    welcome_sent = True
    try:
        await context.messenger.send_template(subject, template_id, **data)
    except SmsDeliveryError as exc:
        # the subject exists; the onboarding reminder still reaches them
        logger.warning("welcome send failed subject_id=%s error=%s", subject.subject_id, exc)
        welcome_sent = False
    return EnrollmentOut(
        subject=subject_out(subject),
        welcome_template=template_id,
        welcome_sent=welcome_sent,
        reminder_job_id=reminder.job_id,
    )


@router.get("/{subject_id}", response_model=SubjectOut)
async def get_subject(
    subject_id: str,
    principal=Depends(get_admin_principal),
    services=Depends(get_services),
) -> SubjectOut:
    try:
        principal.require_scopes({"subjects:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        subject = await services.context.state_machine.get_subject(subject_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransientDependencyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return subject_out(subject)


@router.get("/{subject_id}/transitions", response_model=list[TransitionOut])
async def list_subject_transitions(
    subject_id: str,
    principal=Depends(get_admin_principal),
    services=Depends(get_services),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[TransitionOut]:
    try:
        principal.require_scopes({"subjects:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    repository = services.context.repository
    if await repository.get_subject(subject_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subject not found")
    records = await repository.list_transitions(subject_id, limit=limit)
    return [transition_out(record) for record in records]


@router.post("/{subject_id}/transitions", response_model=SubjectOut)
async def transition_subject(
    subject_id: str,
    payload: TransitionRequest,
    principal=Depends(get_admin_principal),
    services=Depends(get_services),
) -> SubjectOut:
    try:
        principal.require_scopes({"subjects:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    context = services.context
    try:
        outcome = await context.state_machine.transition(
            subject_id,
            payload.to_state,
            TriggerType.ADMIN_ACTION,
            payload.detail or f"admin:{principal.subject}",
            now=context.now(),
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except TransientDependencyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if outcome.changed and outcome.subject.state not in TRACKING_STATES:
        await context.scheduler.cancel_all(subject_id)
    return subject_out(outcome.subject)
