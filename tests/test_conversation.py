import asyncio
from datetime import date, datetime, timezone

from engagement.core.models import (
    JobStatus,
    JobType,
    PendingQuestion,
    ResponseMethod,
    SprintStatus,
    SubjectState,
    WeeklyQuestionType,
)
from engagement.services.conversation import ConversationHandler
from engagement.services.text_classifier import ClassifierVerdict

from fakes import StubTextClassifier


async def say(harness, subject_id: str, text: str) -> list:
    subject = await harness.repository.get_subject(subject_id)
    return await ConversationHandler(harness.context).handle(subject, text)


def ids(replies: list) -> list[str]:
    return [reply.template_id for reply in replies]


async def pending_jobs(harness, subject_id: str, job_type: JobType | None = None) -> list:
    jobs = await harness.repository.list_jobs(subject_id, JobStatus.PENDING)
    return [job for job in jobs if job_type is None or job.job_type == job_type]


def test_onboarding_without_appointment(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject()
        sid = subject.subject_id

        assert ids(await say(harness, sid, "start")) == ["O-2"]
        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.ONBOARDING
        assert stored.pending_question == PendingQuestion.ONBOARD_TIME
        assert stored.opted_in_at == harness.clock()

        assert ids(await say(harness, sid, "purple")) == ["ERR-TIME"]

        replies = await say(harness, sid, "8am")
        assert ids(replies) == ["O-3-ASK-APPT"]
        assert replies[0].data == {"time": "8:00 AM"}
        stored = await harness.repository.get_subject(sid)
        assert stored.preferred_time == "08:00"
        assert stored.pending_question == PendingQuestion.ONBOARD_APPT

        assert ids(await say(harness, sid, "whenever")) == ["ERR-DATE"]
        assert ids(await say(harness, sid, "no")) == ["O-3-CONFIRMED"]

        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.DAILY_ACTIVE
        assert stored.pending_question is None
        assert stored.sprint_start_date == date(2026, 6, 11)
        sprint = await harness.repository.get_active_sprint(sid)
        assert sprint.start_date == date(2026, 6, 11)
        [daily] = await pending_jobs(harness, sid, JobType.DAILY_CHECKIN)
        assert daily.scheduled_for == datetime(2026, 6, 11, 12, 0, tzinfo=timezone.utc)

    asyncio.run(scenario())


def test_onboarding_with_known_appointment_activates_on_time(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject(appointment_date=date(2026, 7, 1))
        await say(harness, subject.subject_id, "START")

        replies = await say(harness, subject.subject_id, "9pm")

        assert ids(replies) == ["O-3-WITH-APPT"]
        assert replies[0].data == {"time": "9:00 PM", "appointmentDate": "July 1"}
        [daily] = await pending_jobs(harness, subject.subject_id, JobType.DAILY_CHECKIN)
        assert daily.scheduled_for == datetime(2026, 6, 12, 1, 0, tzinfo=timezone.utc)

    asyncio.run(scenario())


def test_onboarding_appointment_date_is_stored(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject()
        await say(harness, subject.subject_id, "START")
        await say(harness, subject.subject_id, "morning")

        assert ids(await say(harness, subject.subject_id, "July 20")) == ["O-3-CONFIRMED"]
        stored = await harness.repository.get_subject(subject.subject_id)
        assert stored.appointment_date == date(2026, 7, 20)

    asyncio.run(scenario())


def test_enrolled_subject_must_reply_start(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject()
        assert ids(await say(harness, subject.subject_id, "hello?")) == ["ERR-ONBOARDING"]
        assert ids(await say(harness, subject.subject_id, "pause")) == ["ERR-ONBOARDING"]
        stored = await harness.repository.get_subject(subject.subject_id)
        assert stored.state == SubjectState.ENROLLED

    asyncio.run(scenario())


def test_stop_unsubscribes_and_cancels_from_any_state(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        await harness.context.scheduler.schedule_recurring(sid, "08:00", subject.timezone)

        replies = await say(harness, sid, " stop ")

        assert ids(replies) == ["SYS-STOP"]
        assert replies[0].data == {"reportSuffix": ""}
        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.UNSUBSCRIBED
        assert stored.opted_out_at == harness.clock()
        assert await pending_jobs(harness, sid) == []

        assert ids(await say(harness, sid, "START")) == ["SYS-UNSUBSCRIBED"]
        assert ids(await say(harness, sid, "help")) == ["SYS-UNSUBSCRIBED"]

    asyncio.run(scenario())


def test_stop_mentions_existing_report(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sprint = await harness.repository.get_active_sprint(subject.subject_id)
        await harness.repository.complete_sprint(sprint.sprint_id, report_token="abc123", end_date=date(2026, 6, 10))

        [reply] = await say(harness, subject.subject_id, "UNSUBSCRIBE")

        assert reply.data["reportSuffix"] == " Your report is still available at https://headachevault.com/report/abc123"

    asyncio.run(scenario())


def test_help_leaves_state_alone(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject(state=SubjectState.ONBOARDING)
        assert ids(await say(harness, subject.subject_id, "HELP")) == ["SYS-HELP"]
        stored = await harness.repository.get_subject(subject.subject_id)
        assert stored.state == SubjectState.ONBOARDING
        assert harness.repository.transitions == []

    asyncio.run(scenario())


def test_time_command_reschedules_from_tomorrow(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        original = await harness.context.scheduler.schedule_recurring(sid, "08:00", subject.timezone)

        assert ids(await say(harness, sid, "TIME")) == ["SYS-TIME-ASK"]
        assert ids(await say(harness, sid, "time purple")) == ["ERR-TIME"]
        replies = await say(harness, sid, "Time 7pm")

        assert ids(replies) == ["SYS-TIME-CONFIRM"]
        assert replies[0].data == {"time": "7:00 PM"}
        assert harness.repository.jobs[original.job_id].status == JobStatus.CANCELLED
        [daily] = await pending_jobs(harness, sid, JobType.DAILY_CHECKIN)
        assert daily.scheduled_for == datetime(2026, 6, 11, 23, 0, tzinfo=timezone.utc)
        stored = await harness.repository.get_subject(sid)
        assert stored.preferred_time == "19:00"

    asyncio.run(scenario())


def test_time_command_outside_tracking_only_updates_preference(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject(state=SubjectState.DORMANT, preferred_time="08:00")
        await say(harness, subject.subject_id, "TIME 6:30am")
        stored = await harness.repository.get_subject(subject.subject_id)
        assert stored.preferred_time == "06:30"
        assert await pending_jobs(harness, subject.subject_id) == []

    asyncio.run(scenario())


def test_report_command_variants(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        assert ids(await say(harness, sid, "report")) == ["SYS-REPORT-NONE"]

        sprint = await harness.repository.get_active_sprint(sid)
        await harness.repository.complete_sprint(sprint.sprint_id, report_token="tok", end_date=date(2026, 6, 10))
        harness.repository.sprints[sprint.sprint_id].days_completed = 15

        [partial] = await say(harness, sid, "REPORT")
        assert partial.template_id == "SYS-REPORT-PARTIAL"
        assert partial.data == {"reportUrl": "https://headachevault.com/report/tok", "completionPct": 50}

        harness.repository.sprints[sprint.sprint_id].days_completed = 30
        assert ids(await say(harness, sid, "REPORT")) == ["SYS-REPORT"]

    asyncio.run(scenario())


def test_pause_from_tracking(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        await harness.context.scheduler.schedule_recurring(subject.subject_id, "08:00", subject.timezone)

        assert ids(await say(harness, subject.subject_id, "break")) == ["SYS-PAUSE"]

        stored = await harness.repository.get_subject(subject.subject_id)
        assert stored.state == SubjectState.PAUSED
        assert await pending_jobs(harness, subject.subject_id) == []

    asyncio.run(scenario())


def test_first_level_is_recorded_and_asks_medication_history(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id

        assert ids(await say(harness, sid, "3")) == ["D-ACK-1", "O-4-ASK"]

        sprint = await harness.repository.get_active_sprint(sid)
        entry = await harness.repository.get_entry_for_date(sid, sprint.sprint_id, date(2026, 6, 10))
        assert entry.level == 3
        assert entry.response_method == ResponseMethod.NUMERIC
        assert entry.response_raw is None
        assert entry.day_number == 1
        stored = await harness.repository.get_subject(sid)
        assert stored.day_count == 1
        assert stored.pending_question == PendingQuestion.MED_HISTORY_YN

        assert ids(await say(harness, sid, "Yes")) == ["O-4-LIST"]
        assert ids(await say(harness, sid, "topiramate and a beta blocker")) == ["O-4-DONE-LIST"]
        assert harness.repository.medication_history == [
            {"subject_id": sid, "medication_raw": "topiramate and a beta blocker", "status": "UNKNOWN"}
        ]
        stored = await harness.repository.get_subject(sid)
        assert stored.pending_question is None

    asyncio.run(scenario())


def test_medication_question_declined(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        await say(harness, subject.subject_id, "2")
        assert ids(await say(harness, subject.subject_id, "not sure")) == ["O-4-DONE-NONE"]
        assert harness.repository.medication_history == []

    asyncio.run(scenario())


def test_same_day_correction_overwrites_entry(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        await say(harness, sid, "3")

        assert ids(await say(harness, sid, "4")) == ["D-ACK-2"]

        sprint = await harness.repository.get_active_sprint(sid)
        entries = await harness.repository.list_sprint_entries(sprint.sprint_id)
        assert [entry.level for entry in entries] == [4]
        stored = await harness.repository.get_subject(sid)
        assert stored.day_count == 1
        assert stored.pending_question is None

    asyncio.run(scenario())


def test_ambiguous_reply_asks_for_clarification(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        replies = await say(harness, sid, "fine I guess")
        assert ids(replies) == ["CLARIFY-LEVEL"]
        assert replies[0].data == {"parsedLevel": 2}
        sprint = await harness.repository.get_active_sprint(sid)
        assert await harness.repository.list_sprint_entries(sprint.sprint_id) == []

        assert ids(await say(harness, sid, "no idea")) == ["ERR-DAILY"]
        assert ids(await say(harness, sid, "1")) == ["D-ACK-1", "O-4-ASK"]

        [entry] = await harness.repository.list_sprint_entries(sprint.sprint_id)
        assert entry.level == 1
        assert entry.response_method == ResponseMethod.CLARIFIED
        assert entry.confidence == 1.0

    asyncio.run(scenario())


def test_confident_classifier_verdict_is_recorded(make_harness) -> None:
    harness = make_harness(classifier=StubTextClassifier(verdict=ClassifierVerdict(level=4, confidence=0.9)))

    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        await say(harness, subject.subject_id, "rough day, skipped the gym")

        sprint = await harness.repository.get_active_sprint(subject.subject_id)
        [entry] = await harness.repository.list_sprint_entries(sprint.sprint_id)
        assert entry.level == 4
        assert entry.response_method == ResponseMethod.AI_PARSED
        assert entry.response_raw == "rough day, skipped the gym"

    asyncio.run(scenario())


def test_unreadable_reply_reprompts(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        assert ids(await say(harness, subject.subject_id, "call me back")) == ["ERR-DAILY"]

    asyncio.run(scenario())


def test_weekly_response_is_stored(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        sprint = await harness.repository.get_active_sprint(sid)
        weekly = await harness.repository.create_weekly_entry(
            subject_id=sid,
            sprint_id=sprint.sprint_id,
            question_type=WeeklyQuestionType.ACUTE_MEDS,
            week_number=1,
            asked_at=harness.clock(),
        )
        await harness.repository.update_subject_fields(sid, {"pending_question": PendingQuestion.WEEKLY_RESPONSE})

        assert ids(await say(harness, sid, "2 days")) == ["W-ACK"]

        answered = harness.repository.weekly_entries[weekly.weekly_entry_id]
        assert answered.response_text == "2 days"
        assert answered.responded_at == harness.clock()
        stored = await harness.repository.get_subject(sid)
        assert stored.pending_question is None

    asyncio.run(scenario())


def test_weekly_pending_without_open_question_falls_through(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        await harness.repository.update_subject_fields(
            subject.subject_id, {"pending_question": PendingQuestion.WEEKLY_RESPONSE}
        )
        assert ids(await say(harness, subject.subject_id, "2")) == ["D-ACK-1", "O-4-ASK"]

    asyncio.run(scenario())


def test_milestone_day_queues_insight(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        # four earlier answers put the subject one reply short of the day-5 milestone
        for offset in range(4, 0, -1):
            harness.clock.advance(days=-offset)
            await say(harness, sid, "2")
            await harness.repository.update_subject_fields(sid, {"pending_question": None})
            harness.clock.advance(days=offset)

        await say(harness, sid, "3")

        [insight] = await pending_jobs(harness, sid, JobType.INSIGHT)
        assert insight.payload["templateId"] == "I-5"
        assert insight.payload["templateData"]["totalDays"] == 5
        assert insight.payload["templateData"]["avgLevel"] == "2.2"

    asyncio.run(scenario())


def test_final_day_completes_the_sprint(make_harness) -> None:
    harness = make_harness(sprint_target_days=2)

    async def scenario() -> None:
        subject = await harness.add_tracking_subject()
        sid = subject.subject_id
        daily = await harness.context.scheduler.schedule_recurring(sid, "08:00", subject.timezone)
        sprint = await harness.repository.get_active_sprint(sid)

        assert ids(await say(harness, sid, "3")) == ["D-ACK-1", "O-4-ASK"]
        harness.clock.advance(days=1)
        assert ids(await say(harness, sid, "2")) == ["D-ACK-2"]

        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.TRANSITION
        assert stored.pending_question == PendingQuestion.TRANSITION_CHOICE
        completed = harness.repository.sprints[sprint.sprint_id]
        assert completed.status == SprintStatus.COMPLETED
        assert len(completed.report_token) == 64
        assert completed.end_date == date(2026, 6, 11)
        assert harness.repository.jobs[daily.job_id].status == JobStatus.CANCELLED

        now = harness.clock()
        [insight] = await pending_jobs(harness, sid, JobType.INSIGHT)
        assert insight.payload["templateId"] == "I-30"
        assert insight.payload["templateData"]["reportUrl"].endswith(completed.report_token)
        [report] = await pending_jobs(harness, sid, JobType.REPORT_GENERATION)
        assert report.payload == {"reportToken": completed.report_token, "sprintId": sprint.sprint_id}
        [prompt] = await pending_jobs(harness, sid, JobType.TRANSITION)
        assert (prompt.scheduled_for - now).total_seconds() == 120
        assert await pending_jobs(harness, sid, JobType.DAILY_CHECKIN) == []

    asyncio.run(scenario())


def test_paused_subject_resumes_with_yes(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject(state=SubjectState.PAUSED)
        sid = subject.subject_id
        await harness.repository.update_subject_fields(sid, {"consecutive_missed": 5})

        assert ids(await say(harness, sid, "what now")) == ["SYS-PAUSED-INFO"]
        replies = await say(harness, sid, "yes")

        assert ids(replies) == ["SYS-RESUME"]
        assert replies[0].data == {"time": "8:00 AM"}
        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.DAILY_ACTIVE
        assert stored.consecutive_missed == 0
        [daily] = await pending_jobs(harness, sid, JobType.DAILY_CHECKIN)
        assert daily.scheduled_for == datetime(2026, 6, 11, 12, 0, tzinfo=timezone.utc)

    asyncio.run(scenario())


def test_paused_subject_resumes_with_a_level(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_tracking_subject(state=SubjectState.PAUSED)

        assert ids(await say(harness, subject.subject_id, "4")) == ["D-ACK-1", "O-4-ASK"]

        stored = await harness.repository.get_subject(subject.subject_id)
        assert stored.state == SubjectState.DAILY_ACTIVE
        assert stored.day_count == 1

    asyncio.run(scenario())


async def _transition_subject(harness):
    subject = await harness.add_subject(state=SubjectState.TRANSITION, preferred_time="08:00")
    await harness.repository.update_subject_fields(
        subject.subject_id, {"pending_question": PendingQuestion.TRANSITION_CHOICE}
    )
    return subject


def test_transition_choices(make_harness) -> None:
    async def scenario() -> None:
        harness = make_harness()
        subject = await _transition_subject(harness)
        assert ids(await say(harness, subject.subject_id, "maybe later")) == ["T-1"]
        assert ids(await say(harness, subject.subject_id, "1")) == ["T-1-WEEKLY"]
        assert (await harness.repository.get_subject(subject.subject_id)).state == SubjectState.WEEKLY

        harness = make_harness()
        subject = await _transition_subject(harness)
        assert ids(await say(harness, subject.subject_id, "3.")) == ["T-1-DORMANT"]
        assert (await harness.repository.get_subject(subject.subject_id)).state == SubjectState.DORMANT

    asyncio.run(scenario())


def test_transition_to_treatment_starts_a_new_sprint(harness) -> None:
    async def scenario() -> None:
        subject = await _transition_subject(harness)
        sid = subject.subject_id

        replies = await say(harness, sid, "2")

        assert ids(replies) == ["T-1-TREATMENT"]
        assert replies[0].data == {"time": "8:00 AM"}
        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.TREATMENT
        assert stored.day_count == 0
        sprint = await harness.repository.get_active_sprint(sid)
        assert sprint.start_date == date(2026, 6, 11)
        assert len(await pending_jobs(harness, sid, JobType.DAILY_CHECKIN)) == 1

        assert ids(await say(harness, sid, "2")) == ["D-ACK-1", "O-4-ASK"]

    asyncio.run(scenario())


def test_dormant_subject_restarts_with_start(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject(state=SubjectState.DORMANT, preferred_time="20:00")
        sid = subject.subject_id

        assert ids(await say(harness, sid, "hi")) == ["SYS-DORMANT-INFO"]
        replies = await say(harness, sid, "start")

        assert ids(replies) == ["SYS-REACTIVATE"]
        assert replies[0].data == {"time": "8:00 PM"}
        stored = await harness.repository.get_subject(sid)
        assert stored.state == SubjectState.DAILY_ACTIVE
        assert (await harness.repository.get_active_sprint(sid)).start_date == date(2026, 6, 11)
        [daily] = await pending_jobs(harness, sid, JobType.DAILY_CHECKIN)
        assert daily.scheduled_for == datetime(2026, 6, 12, 0, 0, tzinfo=timezone.utc)

    asyncio.run(scenario())


def test_weekly_subject_without_time_is_asked_for_one(harness) -> None:
    async def scenario() -> None:
        subject = await harness.add_subject(state=SubjectState.WEEKLY)
        assert ids(await say(harness, subject.subject_id, "START")) == ["SYS-TIME-ASK"]
        assert (await harness.repository.get_subject(subject.subject_id)).state == SubjectState.WEEKLY

    asyncio.run(scenario())
