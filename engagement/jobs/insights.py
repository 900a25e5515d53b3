from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Any

from engagement.core.errors import InvalidInputError
from engagement.core.models import DailyEntry, ScheduledJob, Subject
from engagement.services.context import EngineContext
from engagement.services.templates import INSIGHT_TEMPLATES


def compute_insight_data(entries: Sequence[DailyEntry]) -> dict[str, Any] | None:
    levels = [entry.level for entry in entries if not entry.is_missed and entry.level is not None]
    if not levels:
        return None
    counts = Counter(levels)
    top = max(counts.values())
    return {
        "totalDays": len(levels),
        "headacheDays": sum(1 for level in levels if level >= 2),
        "headacheFreeDays": sum(1 for level in levels if level == 1),
        "avgLevel": f"{sum(levels) / len(levels):.1f}",
        "mostCommonLevel": min(level for level, count in counts.items() if count == top),
    }


def build_insight_payload(
    subject: Subject,
    sprint_day: int,
    entries: Sequence[DailyEntry],
    *,
    report_url: str | None = None,
) -> dict[str, Any] | None:
    template_id = INSIGHT_TEMPLATES.get(sprint_day)
    if template_id is None:
        return None
    data = compute_insight_data(entries)
    if data is None:
        return None
    data["firstName"] = subject.first_name
    if report_url is not None:
        data["reportUrl"] = report_url
    return {"templateId": template_id, "templateData": data}


async def handle_insight(job: ScheduledJob, subject: Subject, context: EngineContext) -> None:
    template_id = job.payload.get("templateId")
    if not template_id:
        raise InvalidInputError("insight job missing templateId")
    template_data = job.payload.get("templateData") or {}
    await context.messenger.send_template(subject, template_id, **template_data)
