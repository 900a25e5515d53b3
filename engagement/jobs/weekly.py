from __future__ import annotations

import logging

from engagement.core.errors import InvalidInputError
from engagement.core.models import PendingQuestion, ScheduledJob, Subject, WeeklyQuestionType
from engagement.services.context import EngineContext

logger = logging.getLogger(__name__)

WEEKLY_TEMPLATES: dict[WeeklyQuestionType, str] = {
    WeeklyQuestionType.ACUTE_MEDS: "W-1",
    WeeklyQuestionType.MISSED_ACTIVITIES: "W-2",
    WeeklyQuestionType.TRIGGERS: "W-3",
}


async def handle_weekly_question(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    try:
        question_type = WeeklyQuestionType(job.payload.get("questionType"))
        week_number = int(job.payload.get("weekNumber", 0))
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"invalid weekly question payload: {job.payload}") from exc

    sprint = await context.repository.get_active_sprint(subject.subject_id)
    if sprint is None:
        logger.info("weekly question skipped, no active sprint subject_id=%s", subject.subject_id)
        return

    await context.repository.create_weekly_entry(
        subject_id=subject.subject_id,
        sprint_id=sprint.sprint_id,
        question_type=question_type,
        week_number=week_number,
        asked_at=context.now(),
    )
    await context.repository.update_subject_fields(
        subject.subject_id,
        {"pending_question": PendingQuestion.WEEKLY_RESPONSE},
    )
    await context.messenger.send_template(subject, WEEKLY_TEMPLATES[question_type])
