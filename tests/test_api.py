from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from engagement.core.config import Settings, get_settings
from engagement.core.models import JobStatus, JobType, SubjectState
from engagement.core.security import compute_provider_signature
from engagement.main import app
from engagement.services.container import build_services, get_services
from engagement.services.sms import SmsDeliveryError

from fakes import Harness

CRON_SECRET = "test-cron-secret"
ADMIN_KEY = "test-admin-key"
AUTH_TOKEN = "test-auth-token"
ADMIN_HEADERS = {"X-API-Key": ADMIN_KEY}
CRON_HEADERS = {"Authorization": f"Bearer {CRON_SECRET}"}


def _settings(**overrides) -> Settings:
    values = {
        "storage_backend": "memory",
        "cron_secret": CRON_SECRET,
        "admin_api_key": ADMIN_KEY,
        "twilio_validate_signatures": False,
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


@dataclass
class ApiHarness:
    client: TestClient
    harness: Harness
    settings: Settings

    def configure(self, **overrides) -> None:
        self.settings = _settings(**overrides)

    def post(self, *args, **kwargs):
        return self.client.post(*args, **kwargs)

    def get(self, *args, **kwargs):
        return self.client.get(*args, **kwargs)


@pytest.fixture
def api(harness: Harness):
    state = ApiHarness(client=TestClient(app), harness=harness, settings=_settings())
    app.dependency_overrides[get_settings] = lambda: state.settings
    app.dependency_overrides[get_services] = lambda: build_services(state.settings, harness.context)
    yield state
    app.dependency_overrides.clear()


def test_healthz(api: ApiHarness) -> None:
    response = api.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_dispatch_requires_scheduler_credentials(api: ApiHarness) -> None:
    assert api.post("/dispatch").status_code == 401
    assert api.post("/dispatch", headers={"Authorization": "Bearer wrong"}).status_code == 401

    api.configure(cron_secret=None)
    assert api.post("/dispatch", headers=CRON_HEADERS).status_code == 503


def test_dispatch_runs_due_jobs(api: ApiHarness) -> None:
    harness = api.harness
    subject = asyncio.run(harness.add_tracking_subject())
    asyncio.run(
        harness.context.scheduler.schedule_one_shot(
            subject.subject_id,
            JobType.INSIGHT,
            harness.clock() - timedelta(minutes=1),
            {"templateId": "I-5", "templateData": {"headacheDays": 2, "totalDays": 5}},
        )
    )

    response = api.post("/dispatch", headers=CRON_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["claimed"] == 1
    assert body["succeeded"] == 1
    assert "elapsedMs" in body
    assert harness.sent_templates() == ["I-5"]


def test_dispatch_accepts_admin_key(api: ApiHarness) -> None:
    response = api.post("/dispatch", headers=ADMIN_HEADERS)
    assert response.status_code == 200
    assert response.json()["claimed"] == 0


def test_maintenance_endpoint(api: ApiHarness) -> None:
    response = api.post("/dispatch/maintenance", headers=CRON_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"requeued": 0, "purged": 0}


def test_enroll_sends_welcome_and_schedules_reminder(api: ApiHarness) -> None:
    response = api.post(
        "/subjects",
        headers=ADMIN_HEADERS,
        json={"phone_number": "555-555-0100", "first_name": " Dana ", "enrollment_source": "PCP_INITIATED", "pcp_name": "Dr. Patel"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["welcome_template"] == "O-1-PCP"
    assert body["welcome_sent"] is True
    assert body["subject"]["phone_number"] == "+15555550100"
    assert body["subject"]["first_name"] == "Dana"
    assert body["subject"]["state"] == "ENROLLED"
    assert body["subject"]["timezone"] == "America/New_York"

    harness = api.harness
    [message] = harness.gateway.sent
    assert message["body"].startswith("Hi Dana, this is the Headache Vault. Dr. Patel's office")
    reminder = harness.repository.jobs[body["reminder_job_id"]]
    assert reminder.job_type == JobType.ONBOARD_REMINDER
    assert reminder.scheduled_for == harness.clock() + timedelta(hours=24)


def test_enroll_survives_welcome_send_failure(api: ApiHarness, monkeypatch) -> None:
    async def undeliverable(subject_id, address, body, template_tag):
        raise SmsDeliveryError("carrier rejected")

    monkeypatch.setattr(api.harness.gateway, "send", undeliverable)
    response = api.post("/subjects", headers=ADMIN_HEADERS, json={"phone_number": "+15555550100", "first_name": "Dana"})

    assert response.status_code == 201
    body = response.json()
    assert body["welcome_sent"] is False
    reminder = api.harness.repository.jobs[body["reminder_job_id"]]
    assert reminder.job_type == JobType.ONBOARD_REMINDER
    assert reminder.status == JobStatus.PENDING


def test_enroll_rejects_duplicates_and_bad_input(api: ApiHarness) -> None:
    payload = {"phone_number": "+15555550100", "first_name": "Dana"}
    assert api.post("/subjects", headers=ADMIN_HEADERS, json=payload).status_code == 201
    assert api.post("/subjects", headers=ADMIN_HEADERS, json=payload).status_code == 409

    bad_zone = {"phone_number": "+15555550101", "first_name": "Sam", "timezone": "Not/A_Zone"}
    assert api.post("/subjects", headers=ADMIN_HEADERS, json=bad_zone).status_code == 422
    bad_phone = {"phone_number": "1234567", "first_name": "Sam"}
    assert api.post("/subjects", headers=ADMIN_HEADERS, json=bad_phone).status_code == 422


def test_subject_routes_require_admin_key(api: ApiHarness) -> None:
    payload = {"phone_number": "+15555550100", "first_name": "Dana"}
    assert api.post("/subjects", json=payload).status_code == 401
    assert api.post("/subjects", headers={"X-API-Key": "nope"}, json=payload).status_code == 401
    assert api.post("/subjects", headers=CRON_HEADERS, json=payload).status_code == 401

    api.configure(admin_api_key=None)
    assert api.post("/subjects", headers=ADMIN_HEADERS, json=payload).status_code == 503


def test_get_subject(api: ApiHarness) -> None:
    assert api.get("/subjects/missing", headers=ADMIN_HEADERS).status_code == 404
    subject = asyncio.run(api.harness.add_subject())

    response = api.get(f"/subjects/{subject.subject_id}", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["subject_id"] == subject.subject_id


def test_admin_transition(api: ApiHarness) -> None:
    harness = api.harness
    subject = asyncio.run(harness.add_subject())
    reminder = asyncio.run(
        harness.context.scheduler.schedule_one_shot(
            subject.subject_id, JobType.ONBOARD_REMINDER, harness.clock() + timedelta(hours=24)
        )
    )
    path = f"/subjects/{subject.subject_id}/transitions"

    invalid = api.post(path, headers=ADMIN_HEADERS, json={"to_state": "DAILY_ACTIVE"})
    assert invalid.status_code == 409
    assert api.post("/subjects/missing/transitions", headers=ADMIN_HEADERS, json={"to_state": "DORMANT"}).status_code == 404

    moved = api.post(path, headers=ADMIN_HEADERS, json={"to_state": "DORMANT", "detail": "clinic request"})
    assert moved.status_code == 200
    assert moved.json()["state"] == "DORMANT"
    assert harness.repository.jobs[reminder.job_id].status == JobStatus.CANCELLED

    history = api.get(path, headers=ADMIN_HEADERS)
    assert history.status_code == 200
    [record] = history.json()
    assert record["from_state"] == "ENROLLED"
    assert record["to_state"] == "DORMANT"
    assert record["trigger_type"] == "ADMIN_ACTION"
    assert record["trigger_detail"] == "clinic request"


def test_sms_webhook_handles_reply(api: ApiHarness) -> None:
    harness = api.harness
    subject = asyncio.run(harness.add_subject())

    response = api.post("/webhooks/sms", data={"From": "+15555550100", "Body": "START", "MessageSid": "SM1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert response.text.endswith("<Response></Response>")
    assert harness.sent_templates() == ["O-2"]
    stored = asyncio.run(harness.repository.get_subject(subject.subject_id))
    assert stored.state == SubjectState.ONBOARDING


def test_sms_webhook_replies_inline_to_unknown_number(api: ApiHarness) -> None:
    response = api.post("/webhooks/sms", data={"From": "+15555559999", "Body": "hi"})
    assert response.status_code == 200
    assert "<Message>Hi! This is the Headache Vault." in response.text
    assert "We don't have your number on file." in response.text


def test_sms_webhook_requires_from_and_body(api: ApiHarness) -> None:
    assert api.post("/webhooks/sms", data={"From": "+15555550100"}).status_code == 400


def test_sms_webhook_swallows_handler_failures(api: ApiHarness) -> None:
    class ExplodingInbound:
        async def handle(self, message):
            raise RuntimeError("boom")

    def services():
        built = build_services(_settings(), api.harness.context)
        built.inbound = ExplodingInbound()
        return built

    app.dependency_overrides[get_services] = services
    response = api.post("/webhooks/sms", data={"From": "+15555550100", "Body": "3"})
    assert response.status_code == 200
    assert response.text.endswith("<Response></Response>")


def test_sms_webhook_signature_checks(api: ApiHarness) -> None:
    asyncio.run(api.harness.add_subject())
    params = {"From": "+15555550100", "Body": "START", "MessageSid": "SM2"}

    api.configure(twilio_validate_signatures=True, twilio_auth_token=None)
    assert api.post("/webhooks/sms", data=params).status_code == 503

    api.configure(
        twilio_validate_signatures=True,
        twilio_auth_token=AUTH_TOKEN,
        public_base_url="https://engage.example.com/",
    )
    forged = api.post("/webhooks/sms", data=params, headers={"X-Twilio-Signature": "forged"})
    assert forged.status_code == 403

    signature = compute_provider_signature("https://engage.example.com/webhooks/sms", params, AUTH_TOKEN)
    accepted = api.post("/webhooks/sms", data=params, headers={"X-Twilio-Signature": signature})
    assert accepted.status_code == 200
    assert api.harness.sent_templates() == ["O-2"]