from __future__ import annotations

import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from engagement.core.models import (
    TRACKING_STATES,
    ClassificationAction,
    DailyEntryDraft,
    JobType,
    PendingQuestion,
    ResponseMethod,
    Subject,
    SubjectState,
    TriggerType,
)
from engagement.core.parsing import format_display_date, format_time_12, parse_fuzzy_date, parse_numeric_level, parse_time
from engagement.jobs.insights import build_insight_payload
from engagement.services.context import EngineContext
from engagement.services.reports import report_url
from engagement.services.scheduler import local_date, resolve_timezone
from engagement.services.templates import INSIGHT_TEMPLATES, next_ack

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({"STOP", "UNSUBSCRIBE", "QUIT", "CANCEL", "END", "STOPALL"})
HELP_WORDS = frozenset({"HELP", "INFO"})
PAUSE_WORDS = frozenset({"PAUSE", "BREAK"})
YES_WORDS = frozenset({"YES", "Y", "YEAH", "YEP", "YUP"})
NO_WORDS = frozenset({"NO", "N", "NOPE", "NONE", "NOT SURE", "UNSURE", "IDK"})
RESUME_WORDS = frozenset({"YES", "Y", "START", "RESUME"})

# delay so the end-of-sprint options arrive after the day-30 insight
TRANSITION_PROMPT_DELAY = timedelta(minutes=2)


@dataclass(slots=True)
class Reply:
    template_id: str
    data: dict[str, Any] = field(default_factory=dict)


StateHandler = Callable[["ConversationHandler", Subject, str], Awaitable[list[Reply]]]


class ConversationHandler:
    """Turns one inbound text into state changes, scheduled jobs and replies.

    Global commands are checked first and apply in every state; anything else
    is routed to the handler for the subject's current state. Replies are
    returned rather than sent so the caller owns delivery.
    """

    def __init__(self, context: EngineContext) -> None:
        self.context = context

    async def handle(self, subject: Subject, text: str) -> list[Reply]:
        body = text.strip()
        command = " ".join(body.upper().split())

        if command in STOP_WORDS:
            return await self._unsubscribe(subject, body)
        if subject.state == SubjectState.UNSUBSCRIBED:
            return [Reply("SYS-UNSUBSCRIBED")]
        if command in HELP_WORDS:
            return [Reply("SYS-HELP")]
        if command == "TIME" or command.startswith("TIME "):
            return await self._change_time(subject, body[4:].strip())
        if command == "REPORT":
            return await self._report_link(subject)
        if command in PAUSE_WORDS and subject.state in TRACKING_STATES:
            return await self._pause(subject, body)

        handler = STATE_HANDLERS[subject.state]
        return await handler(self, subject, body)

    # global commands

    async def _unsubscribe(self, subject: Subject, body: str) -> list[Reply]:
        ctx = self.context
        await ctx.state_machine.transition(
            subject.subject_id,
            SubjectState.UNSUBSCRIBED,
            TriggerType.PATIENT_RESPONSE,
            f'STOP command: "{body}"',
            {"pending_question": None},
            now=ctx.now(),
        )
        await ctx.scheduler.cancel_all(subject.subject_id)
        sprint = await ctx.repository.get_latest_reported_sprint(subject.subject_id)
        suffix = ""
        if sprint is not None and sprint.report_token:
            suffix = f" Your report is still available at {report_url(ctx.report_base_url, sprint.report_token)}"
        return [Reply("SYS-STOP", {"reportSuffix": suffix})]

    async def _change_time(self, subject: Subject, value: str) -> list[Reply]:
        if not value:
            return [Reply("SYS-TIME-ASK")]
        parsed = parse_time(value)
        if parsed is None:
            return [Reply("ERR-TIME")]

        ctx = self.context
        updated = await ctx.repository.update_subject_fields(subject.subject_id, {"preferred_time": parsed.time24})
        if updated.state in TRACKING_STATES:
            await ctx.scheduler.cancel_all(subject.subject_id)
            await ctx.scheduler.schedule_recurring(
                subject.subject_id,
                parsed.time24,
                updated.timezone,
                after=self._start_of_tomorrow(updated),
            )
        logger.info("preferred time changed subject_id=%s time=%s", subject.subject_id, parsed.time24)
        return [Reply("SYS-TIME-CONFIRM", {"time": parsed.display})]

    async def _report_link(self, subject: Subject) -> list[Reply]:
        sprint = await self.context.repository.get_latest_reported_sprint(subject.subject_id)
        if sprint is None or not sprint.report_token:
            return [Reply("SYS-REPORT-NONE")]
        url = report_url(self.context.report_base_url, sprint.report_token)
        completion = round(sprint.days_completed / sprint.target_days * 100) if sprint.target_days else 100
        if completion < 100:
            return [Reply("SYS-REPORT-PARTIAL", {"reportUrl": url, "completionPct": completion})]
        return [Reply("SYS-REPORT", {"reportUrl": url})]

    async def _pause(self, subject: Subject, body: str) -> list[Reply]:
        ctx = self.context
        await ctx.state_machine.transition(
            subject.subject_id,
            SubjectState.PAUSED,
            TriggerType.PATIENT_RESPONSE,
            f'PAUSE command: "{body}"',
            {"pending_question": None},
            now=ctx.now(),
        )
        await ctx.scheduler.cancel_all(subject.subject_id)
        return [Reply("SYS-PAUSE")]

    # per-state handlers

    async def on_enrolled(self, subject: Subject, body: str) -> list[Reply]:
        if body.upper() != "START":
            return [Reply("ERR-ONBOARDING")]
        await self.context.state_machine.transition(
            subject.subject_id,
            SubjectState.ONBOARDING,
            TriggerType.PATIENT_RESPONSE,
            "START",
            {"pending_question": PendingQuestion.ONBOARD_TIME},
            now=self.context.now(),
        )
        return [Reply("O-2")]

    async def on_onboarding(self, subject: Subject, body: str) -> list[Reply]:
        pending = subject.pending_question
        if pending in (PendingQuestion.MED_HISTORY_YN, PendingQuestion.MED_HISTORY_LIST):
            return await self._medication_history(subject, body)
        if pending == PendingQuestion.ONBOARD_APPT:
            return await self._appointment_answer(subject, body)
        if pending in (None, PendingQuestion.ONBOARD_TIME):
            return await self._onboarding_time(subject, body)
        return [Reply("ERR-ONBOARDING")]

    async def _onboarding_time(self, subject: Subject, body: str) -> list[Reply]:
        parsed = parse_time(body)
        if parsed is None:
            return [Reply("ERR-TIME")]

        if subject.appointment_date is not None:
            await self._activate(subject, parsed.time24, {}, detail=f"onboarding complete time={parsed.time24}")
            return [
                Reply(
                    "O-3-WITH-APPT",
                    {"time": parsed.display, "appointmentDate": format_display_date(subject.appointment_date)},
                )
            ]

        await self.context.repository.update_subject_fields(
            subject.subject_id,
            {"preferred_time": parsed.time24, "pending_question": PendingQuestion.ONBOARD_APPT},
        )
        return [Reply("O-3-ASK-APPT", {"time": parsed.display})]

    async def _appointment_answer(self, subject: Subject, body: str) -> list[Reply]:
        if not subject.preferred_time:
            await self.context.repository.update_subject_fields(
                subject.subject_id, {"pending_question": PendingQuestion.ONBOARD_TIME}
            )
            return [Reply("O-2")]

        extra: dict[str, Any] = {}
        if body.upper() not in NO_WORDS:
            appointment = parse_fuzzy_date(body, today=self._today(subject))
            if appointment is None:
                return [Reply("ERR-DATE")]
            extra["appointment_date"] = appointment

        await self._activate(subject, subject.preferred_time, extra, detail="onboarding complete")
        return [Reply("O-3-CONFIRMED", {"time": format_time_12(subject.preferred_time)})]

    async def _activate(self, subject: Subject, time24: str, extra: dict[str, Any], *, detail: str) -> None:
        """Open a sprint that starts tomorrow and move the subject into daily tracking."""
        ctx = self.context
        start_date = self._today(subject) + timedelta(days=1)
        await ctx.repository.create_sprint(
            subject.subject_id,
            start_date=start_date,
            target_days=ctx.sprint_target_days,
        )
        await ctx.state_machine.transition(
            subject.subject_id,
            SubjectState.DAILY_ACTIVE,
            TriggerType.PATIENT_RESPONSE,
            detail,
            {
                "preferred_time": time24,
                "pending_question": None,
                "sprint_start_date": start_date,
                "day_count": 0,
                "consecutive_missed": 0,
                **extra,
            },
            now=ctx.now(),
        )
        await ctx.scheduler.schedule_recurring(
            subject.subject_id,
            time24,
            subject.timezone,
            after=self._start_of_tomorrow(subject),
        )

    async def _medication_history(self, subject: Subject, body: str) -> list[Reply]:
        repository = self.context.repository
        if subject.pending_question == PendingQuestion.MED_HISTORY_LIST:
            await repository.add_medication_history(subject.subject_id, body)
            await repository.update_subject_fields(subject.subject_id, {"pending_question": None})
            return [Reply("O-4-DONE-LIST")]

        answer = body.upper().rstrip(".!")
        if answer in YES_WORDS:
            await repository.update_subject_fields(
                subject.subject_id, {"pending_question": PendingQuestion.MED_HISTORY_LIST}
            )
            return [Reply("O-4-LIST")]
        if answer in NO_WORDS:
            await repository.update_subject_fields(subject.subject_id, {"pending_question": None})
            return [Reply("O-4-DONE-NONE")]
        return [Reply("ERR-ONBOARDING")]

    async def on_tracking(self, subject: Subject, body: str) -> list[Reply]:
        pending = subject.pending_question
        repository = self.context.repository

        if pending == PendingQuestion.WEEKLY_RESPONSE:
            weekly = await repository.get_open_weekly_entry(subject.subject_id)
            if weekly is not None:
                await repository.answer_weekly_entry(
                    weekly.weekly_entry_id,
                    response_text=body,
                    responded_at=self.context.now(),
                )
                await repository.update_subject_fields(subject.subject_id, {"pending_question": None})
                return [Reply("W-ACK")]
            subject = await repository.update_subject_fields(subject.subject_id, {"pending_question": None})

        if pending == PendingQuestion.CLARIFY_LEVEL:
            level = parse_numeric_level(body)
            if level is None:
                return [Reply("ERR-DAILY")]
            return await self.record_level(subject, level, body, ResponseMethod.CLARIFIED, 1.0)

        if pending in (PendingQuestion.MED_HISTORY_YN, PendingQuestion.MED_HISTORY_LIST):
            level = parse_numeric_level(body)
            if level is None:
                return await self._medication_history(subject, body)
            # a level while the medication question is open abandons the question
            subject = await repository.update_subject_fields(subject.subject_id, {"pending_question": None})
            return await self.record_level(subject, level, body, ResponseMethod.NUMERIC, 1.0)

        result = await self.context.classifier.classify(body)
        if result is None or result.level is None:
            return [Reply("ERR-DAILY")]
        if result.action == ClassificationAction.ACCEPT:
            return await self.record_level(subject, result.level, body, result.method, result.confidence)
        if result.action == ClassificationAction.CLARIFY:
            await repository.update_subject_fields(
                subject.subject_id, {"pending_question": PendingQuestion.CLARIFY_LEVEL}
            )
            return [Reply("CLARIFY-LEVEL", {"parsedLevel": result.level})]
        return [Reply("ERR-DAILY")]

    async def record_level(
        self,
        subject: Subject,
        level: int,
        raw: str,
        method: ResponseMethod,
        confidence: float | None,
    ) -> list[Reply]:
        """Upsert today's entry and fire the day-count milestones it reaches."""
        ctx = self.context
        repository = ctx.repository
        sprint = await repository.get_active_sprint(subject.subject_id)
        if sprint is None:
            logger.error("level received without active sprint subject_id=%s", subject.subject_id)
            return [Reply("ERR-DAILY")]

        now = ctx.now()
        entry_date = self._today(subject)
        existing = await repository.get_entry_for_date(subject.subject_id, sprint.sprint_id, entry_date)
        latest = await repository.get_latest_entry(sprint.sprint_id)
        ack = next_ack(latest.acknowledgment_template if latest else None)
        prompt_sent_at = await repository.last_outbound_at(subject.subject_id, "D-1")
        if prompt_sent_at is None or prompt_sent_at > now:
            prompt_sent_at = now
        day_number = existing.day_number if existing else min(subject.day_count + 1, sprint.target_days)

        await repository.upsert_daily_entry(
            DailyEntryDraft(
                subject_id=subject.subject_id,
                sprint_id=sprint.sprint_id,
                entry_date=entry_date,
                level=level,
                response_method=method,
                confidence=confidence,
                response_raw=None if method == ResponseMethod.NUMERIC else raw,
                prompt_sent_at=prompt_sent_at,
                response_received_at=now,
                day_number=day_number,
                acknowledgment_template=ack,
            )
        )
        logger.info(
            "daily entry recorded subject_id=%s date=%s level=%s method=%s",
            subject.subject_id,
            entry_date,
            level,
            method.value,
        )

        replies = [Reply(ack)]
        if existing is not None and not existing.is_missed:
            await repository.update_subject_fields(subject.subject_id, {"pending_question": None})
            return replies

        updated = await repository.get_subject(subject.subject_id) or subject
        completed = updated.day_count

        if completed == 1:
            await repository.update_subject_fields(
                subject.subject_id, {"pending_question": PendingQuestion.MED_HISTORY_YN}
            )
            replies.append(Reply("O-4-ASK"))
        else:
            await repository.update_subject_fields(subject.subject_id, {"pending_question": None})

        if completed >= sprint.target_days:
            await self._complete_sprint(updated, sprint.sprint_id, completed)
        elif completed in INSIGHT_TEMPLATES:
            entries = await repository.list_sprint_entries(sprint.sprint_id)
            payload = build_insight_payload(updated, completed, entries)
            if payload is not None:
                await ctx.scheduler.schedule_one_shot(subject.subject_id, JobType.INSIGHT, now, payload)
        return replies

    async def _complete_sprint(self, subject: Subject, sprint_id: str, completed: int) -> None:
        ctx = self.context
        now = ctx.now()
        token = secrets.token_hex(32)
        sprint = await ctx.repository.complete_sprint(sprint_id, report_token=token, end_date=self._today(subject))
        await ctx.state_machine.transition(
            subject.subject_id,
            SubjectState.TRANSITION,
            TriggerType.SYSTEM_TIMER,
            f"sprint complete day_count={completed}",
            {"pending_question": PendingQuestion.TRANSITION_CHOICE},
            now=now,
        )
        await ctx.scheduler.cancel_all(subject.subject_id)

        entries = await ctx.repository.list_sprint_entries(sprint_id)
        url = report_url(ctx.report_base_url, token)
        payload = build_insight_payload(subject, 30, entries, report_url=url)
        if payload is not None:
            await ctx.scheduler.schedule_one_shot(subject.subject_id, JobType.INSIGHT, now, payload)
        await ctx.scheduler.schedule_one_shot(
            subject.subject_id,
            JobType.REPORT_GENERATION,
            now,
            {"reportToken": token, "sprintId": sprint.sprint_id},
        )
        await ctx.scheduler.schedule_one_shot(subject.subject_id, JobType.TRANSITION, now + TRANSITION_PROMPT_DELAY)
        logger.info("sprint completed subject_id=%s sprint_id=%s", subject.subject_id, sprint_id)

    async def on_paused(self, subject: Subject, body: str) -> list[Reply]:
        level = parse_numeric_level(body)
        if level is None and body.upper() not in RESUME_WORDS:
            return [Reply("SYS-PAUSED-INFO")]

        ctx = self.context
        outcome = await ctx.state_machine.transition(
            subject.subject_id,
            SubjectState.DAILY_ACTIVE,
            TriggerType.PATIENT_RESPONSE,
            f'resumed from PAUSED: "{body}"',
            {"consecutive_missed": 0, "pending_question": None},
            now=ctx.now(),
        )
        resumed = outcome.subject
        if resumed.preferred_time:
            await ctx.scheduler.schedule_recurring(subject.subject_id, resumed.preferred_time, resumed.timezone)

        if level is not None:
            return await self.record_level(resumed, level, body, ResponseMethod.NUMERIC, 1.0)
        return [Reply("SYS-RESUME", {"time": format_time_12(resumed.preferred_time)})]

    async def on_transition(self, subject: Subject, body: str) -> list[Reply]:
        ctx = self.context
        choice = body.strip().rstrip(".")
        if choice == "1":
            await ctx.state_machine.transition(
                subject.subject_id,
                SubjectState.WEEKLY,
                TriggerType.PATIENT_RESPONSE,
                "transition option 1",
                {"pending_question": None},
                now=ctx.now(),
            )
            await ctx.scheduler.cancel_all(subject.subject_id)
            return [Reply("T-1-WEEKLY")]
        if choice == "2":
            start_date = self._today(subject) + timedelta(days=1)
            await ctx.repository.create_sprint(
                subject.subject_id, start_date=start_date, target_days=ctx.sprint_target_days
            )
            await ctx.state_machine.transition(
                subject.subject_id,
                SubjectState.TREATMENT,
                TriggerType.PATIENT_RESPONSE,
                "transition option 2",
                {"pending_question": None, "sprint_start_date": start_date, "day_count": 0, "consecutive_missed": 0},
                now=ctx.now(),
            )
            if subject.preferred_time:
                await ctx.scheduler.schedule_recurring(subject.subject_id, subject.preferred_time, subject.timezone)
            return [Reply("T-1-TREATMENT", {"time": format_time_12(subject.preferred_time)})]
        if choice == "3":
            await ctx.state_machine.transition(
                subject.subject_id,
                SubjectState.DORMANT,
                TriggerType.PATIENT_RESPONSE,
                "transition option 3",
                {"pending_question": None},
                now=ctx.now(),
            )
            await ctx.scheduler.cancel_all(subject.subject_id)
            return [Reply("T-1-DORMANT")]
        return [Reply("T-1", {"firstName": subject.first_name})]

    async def on_inactive(self, subject: Subject, body: str) -> list[Reply]:
        if body.upper() != "START":
            return [Reply("SYS-DORMANT-INFO")]
        if not subject.preferred_time:
            return [Reply("SYS-TIME-ASK")]

        await self._activate(subject, subject.preferred_time, {}, detail=f"reactivated from {subject.state.value}")
        return [Reply("SYS-REACTIVATE", {"time": format_time_12(subject.preferred_time)})]

    async def on_unsubscribed(self, subject: Subject, body: str) -> list[Reply]:
        return [Reply("SYS-UNSUBSCRIBED")]

    # helpers

    def _today(self, subject: Subject) -> date:
        return local_date(self.context.now(), subject.timezone or self.context.default_timezone)

    def _start_of_tomorrow(self, subject: Subject) -> datetime:
        tz = resolve_timezone(subject.timezone or self.context.default_timezone)
        tomorrow = self._today(subject) + timedelta(days=1)
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=tz)


STATE_HANDLERS: dict[SubjectState, StateHandler] = {
    SubjectState.ENROLLED: ConversationHandler.on_enrolled,
    SubjectState.ONBOARDING: ConversationHandler.on_onboarding,
    SubjectState.DAILY_ACTIVE: ConversationHandler.on_tracking,
    SubjectState.TREATMENT: ConversationHandler.on_tracking,
    SubjectState.PAUSED: ConversationHandler.on_paused,
    SubjectState.TRANSITION: ConversationHandler.on_transition,
    SubjectState.WEEKLY: ConversationHandler.on_inactive,
    SubjectState.DORMANT: ConversationHandler.on_inactive,
    SubjectState.UNSUBSCRIBED: ConversationHandler.on_unsubscribed,
}

_unrouted = set(SubjectState) - set(STATE_HANDLERS)
if _unrouted:
    raise RuntimeError(f"states without conversation handlers: {sorted(state.value for state in _unrouted)}")
