from __future__ import annotations

import logging
from typing import Protocol

from engagement.core.models import Sprint, Subject

logger = logging.getLogger(__name__)


class ReportGenerator(Protocol):
    async def generate(self, subject: Subject, sprint: Sprint | None, report_token: str | None) -> None: ...


class LoggingReportGenerator:
    """Records that a report was requested; rendering happens outside this service."""

    async def generate(self, subject: Subject, sprint: Sprint | None, report_token: str | None) -> None:
        logger.info(
            "report generation requested subject_id=%s sprint_id=%s has_token=%s",
            subject.subject_id,
            sprint.sprint_id if sprint else None,
            report_token is not None,
        )


def report_url(base_url: str, report_token: str) -> str:
    return f"{base_url.rstrip('/')}/{report_token}"
