from __future__ import annotations

import logging

from engagement.core.errors import InvalidInputError
from engagement.core.models import ScheduledJob, Subject, SubjectState, TriggerType
from engagement.jobs.checkin import REENGAGE_NUDGE_AFTER, REENGAGE_PAUSE_AFTER
from engagement.services.context import EngineContext

logger = logging.getLogger(__name__)


async def handle_reengagement(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    template_id = job.payload.get("type")
    if template_id == "D-RE5":
        if subject.consecutive_missed < REENGAGE_PAUSE_AFTER:
            logger.info("pause nudge skipped, subject replied subject_id=%s", subject.subject_id)
            return
        # once PAUSED, a retry of this job is skipped as stale
        last_sent = await context.repository.last_outbound_at(subject.subject_id, "D-RE5")
        if last_sent is None or last_sent < job.scheduled_for:
            await context.messenger.send_template(subject, "D-RE5", firstName=subject.first_name)
        await context.state_machine.transition(
            subject.subject_id,
            SubjectState.PAUSED,
            TriggerType.SYSTEM_TIMER,
            f"{subject.consecutive_missed} consecutive missed days",
            now=context.now(),
        )
        await context.scheduler.cancel_all(subject.subject_id)
        return

    if template_id == "D-RE3":
        if subject.consecutive_missed < REENGAGE_NUDGE_AFTER:
            logger.info("nudge skipped, subject replied subject_id=%s", subject.subject_id)
            return
        await context.messenger.send_template(subject, "D-RE3", firstName=subject.first_name)
        return

    raise InvalidInputError(f"unknown re-engagement type: {template_id}")
