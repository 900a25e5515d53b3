from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from engagement.services.classification import ClassificationPipeline
from engagement.services.gateway import EngagementRepository
from engagement.services.reports import LoggingReportGenerator, ReportGenerator
from engagement.services.scheduler import JobScheduler
from engagement.services.sms import Messenger
from engagement.services.state_machine import StateMachine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class EngineContext:
    """Collaborators shared by job handlers and conversation handlers."""

    repository: EngagementRepository
    state_machine: StateMachine
    scheduler: JobScheduler
    messenger: Messenger
    classifier: ClassificationPipeline
    reports: ReportGenerator = field(default_factory=LoggingReportGenerator)
    report_base_url: str = "https://headachevault.com/report"
    sprint_target_days: int = 30
    default_timezone: str = "America/New_York"
    clock: Callable[[], datetime] = _utcnow

    def now(self) -> datetime:
        return self.clock()
