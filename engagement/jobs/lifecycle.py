from __future__ import annotations

from engagement.core.models import EnrollmentSource, ScheduledJob, Subject
from engagement.services.context import EngineContext


def welcome_message(subject: Subject) -> tuple[str, dict[str, str]]:
    if subject.enrollment_source == EnrollmentSource.PCP_INITIATED:
        return "O-1-PCP", {"firstName": subject.first_name, "pcpName": subject.pcp_name or "your doctor"}
    return "O-1-SELF", {"firstName": subject.first_name}


async def handle_transition_prompt(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    await context.messenger.send_template(subject, "T-1", firstName=subject.first_name)


async def handle_onboard_reminder(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    template_id, data = welcome_message(subject)
    await context.messenger.send_template(subject, template_id, **data)


async def handle_report_generation(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    sprint = await context.repository.get_latest_reported_sprint(subject.subject_id)
    token = job.payload.get("reportToken") or (sprint.report_token if sprint else None)
    await context.reports.generate(subject, sprint, token)
