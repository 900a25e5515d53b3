from __future__ import annotations

from collections.abc import Awaitable, Callable

from engagement.core.models import TRACKING_STATES, JobType, ScheduledJob, Subject, SubjectState
from engagement.jobs.checkin import handle_daily_checkin
from engagement.jobs.insights import handle_insight
from engagement.jobs.lifecycle import handle_onboard_reminder, handle_report_generation, handle_transition_prompt
from engagement.jobs.reengagement import handle_reengagement
from engagement.jobs.weekly import handle_weekly_question
from engagement.services.context import EngineContext

JobHandler = Callable[[ScheduledJob, Subject, EngineContext], Awaitable[None]]

JOB_HANDLERS: dict[JobType, JobHandler] = {
    JobType.DAILY_CHECKIN: handle_daily_checkin,
    JobType.WEEKLY_QUESTION: handle_weekly_question,
    JobType.INSIGHT: handle_insight,
    JobType.RE_ENGAGEMENT: handle_reengagement,
    JobType.TRANSITION: handle_transition_prompt,
    JobType.ONBOARD_REMINDER: handle_onboard_reminder,
    JobType.REPORT_GENERATION: handle_report_generation,
}

# States in which a job of each type may still run; None means any state.
JOB_PRECONDITIONS: dict[JobType, frozenset[SubjectState] | None] = {
    JobType.DAILY_CHECKIN: TRACKING_STATES,
    JobType.WEEKLY_QUESTION: TRACKING_STATES,
    JobType.INSIGHT: TRACKING_STATES | {SubjectState.TRANSITION},
    JobType.RE_ENGAGEMENT: TRACKING_STATES,
    JobType.TRANSITION: frozenset({SubjectState.TRANSITION}),
    JobType.ONBOARD_REMINDER: frozenset({SubjectState.ENROLLED}),
    JobType.REPORT_GENERATION: None,
}

_unhandled = set(JobType) - set(JOB_HANDLERS)
if _unhandled:
    raise RuntimeError(f"job types without handlers: {sorted(job_type.value for job_type in _unhandled)}")
_unguarded = set(JobType) - set(JOB_PRECONDITIONS)
if _unguarded:
    raise RuntimeError(f"job types without preconditions: {sorted(job_type.value for job_type in _unguarded)}")


def job_is_stale(job: ScheduledJob, subject: Subject) -> bool:
    allowed = JOB_PRECONDITIONS[job.job_type]
    return allowed is not None and subject.state not in allowed
