from __future__ import annotations

import logging
from datetime import date, timedelta

from engagement.core.models import JobStatus, JobType, ScheduledJob, Sprint, Subject, WeeklyQuestionType
from engagement.services.context import EngineContext
from engagement.services.scheduler import local_date, next_occurrence

logger = logging.getLogger(__name__)

# sprint day -> (question, week number); asked the day after the trigger day
WEEKLY_SCHEDULE: dict[int, tuple[WeeklyQuestionType, int]] = {
    7: (WeeklyQuestionType.ACUTE_MEDS, 1),
    14: (WeeklyQuestionType.MISSED_ACTIVITIES, 2),
    21: (WeeklyQuestionType.TRIGGERS, 3),
    28: (WeeklyQuestionType.ACUTE_MEDS, 4),
}

REENGAGE_NUDGE_AFTER = 3
REENGAGE_PAUSE_AFTER = 5
# template -> days within which it is not sent again
REENGAGE_QUIET_DAYS = {"D-RE3": 3, "D-RE5": 5}


async def handle_daily_checkin(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    repository = context.repository
    sprint = await repository.get_active_sprint(subject.subject_id)
    if sprint is None:
        logger.warning("daily check-in without active sprint subject_id=%s job_id=%s", subject.subject_id, job.job_id)
        return

    today = local_date(context.now(), subject.timezone)
    subject = await detect_missed_day(subject, sprint, today, context)

    existing = await repository.get_entry_for_date(subject.subject_id, sprint.sprint_id, today)
    if existing is not None and not existing.is_missed:
        logger.info("daily check-in skipped, already answered subject_id=%s date=%s", subject.subject_id, today)
        return

    await queue_weekly_question(subject, subject.day_count + 1, context)
    await queue_reengagement(subject, context)

    # at most one prompt per local day
    last_prompt = await repository.last_outbound_at(subject.subject_id, "D-1")
    if last_prompt is not None and local_date(last_prompt, subject.timezone) == today:
        logger.info("daily prompt already sent subject_id=%s date=%s", subject.subject_id, today)
        return
    await context.messenger.send_template(subject, "D-1", firstName=subject.first_name)


async def detect_missed_day(subject: Subject, sprint: Sprint, today: date, context: EngineContext) -> Subject:
    """Mark the previous prompt's local date missed when it was never answered."""
    repository = context.repository
    prompt_sent_at = await repository.last_outbound_at(subject.subject_id, "D-1")
    if prompt_sent_at is None:
        return subject

    prompt_date = local_date(prompt_sent_at, subject.timezone)
    if prompt_date >= today or prompt_date < sprint.start_date:
        return subject

    answered = await repository.get_entry_for_date(subject.subject_id, sprint.sprint_id, prompt_date)
    if answered is not None:
        return subject

    day_number = min(max((prompt_date - sprint.start_date).days + 1, 1), sprint.target_days)
    recorded = await repository.record_missed_day(
        subject_id=subject.subject_id,
        sprint_id=sprint.sprint_id,
        entry_date=prompt_date,
        prompt_sent_at=prompt_sent_at,
        day_number=day_number,
    )
    if not recorded:
        return subject

    logger.info("missed day recorded subject_id=%s date=%s", subject.subject_id, prompt_date)
    refreshed = await repository.get_subject(subject.subject_id)
    return refreshed or subject


async def queue_weekly_question(subject: Subject, sprint_day: int, context: EngineContext) -> ScheduledJob | None:
    scheduled = WEEKLY_SCHEDULE.get(sprint_day)
    if scheduled is None or not subject.preferred_time:
        return None
    question_type, week_number = scheduled

    pending = await context.repository.list_jobs(subject.subject_id, JobStatus.PENDING)
    for job in pending:
        if job.job_type == JobType.WEEKLY_QUESTION and job.payload.get("weekNumber") == week_number:
            return None

    fire_at = next_occurrence(
        subject.preferred_time,
        subject.timezone or context.default_timezone,
        after=context.now(),
    )
    return await context.scheduler.schedule_one_shot(
        subject.subject_id,
        JobType.WEEKLY_QUESTION,
        fire_at,
        {"questionType": question_type.value, "weekNumber": week_number},
    )


async def queue_reengagement(subject: Subject, context: EngineContext) -> ScheduledJob | None:
    missed = subject.consecutive_missed
    if missed >= REENGAGE_PAUSE_AFTER:
        template_id = "D-RE5"
    elif missed == REENGAGE_NUDGE_AFTER:
        template_id = "D-RE3"
    else:
        return None

    now = context.now()
    last_sent = await context.repository.last_outbound_at(subject.subject_id, template_id)
    if last_sent is not None and now - last_sent < timedelta(days=REENGAGE_QUIET_DAYS[template_id]):
        return None

    pending = await context.repository.list_jobs(subject.subject_id, JobStatus.PENDING)
    if any(job.job_type == JobType.RE_ENGAGEMENT and job.payload.get("type") == template_id for job in pending):
        return None

    return await context.scheduler.schedule_one_shot(
        subject.subject_id,
        JobType.RE_ENGAGEMENT,
        now,
        {"type": template_id},
    )
