from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from engagement.core.errors import TransientDependencyError
from engagement.core.models import MessageDirection, MessageRecord, Subject
from engagement.services.gateway import EngagementRepository
from engagement.services.templates import render

logger = logging.getLogger(__name__)


class SmsDeliveryError(TransientDependencyError):
    """Raised when the SMS provider rejects or cannot accept a message."""


class SmsGateway(Protocol):
    async def send(self, subject_id: str, address: str, body: str, template_tag: str | None) -> str: ...


class TwilioSmsGateway:
    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.account_sid = account_sid
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self._auth = (account_sid, auth_token)
        self._timeout = timeout_seconds
        self._transport = transport

    async def send(self, subject_id: str, address: str, body: str, template_tag: str | None) -> str:
        url = f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        data = {"To": address, "From": self.from_number, "Body": body}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, auth=self._auth, transport=self._transport) as client:
                response = await client.post(url, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SmsDeliveryError(
                f"sms provider returned status={exc.response.status_code} template={template_tag}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SmsDeliveryError(f"sms provider request failed: {exc}") from exc

        sid = payload.get("sid")
        if not sid:
            raise SmsDeliveryError("sms provider response missing sid")
        logger.info("sms sent subject_id=%s template=%s sid=%s", subject_id, template_tag, sid)
        return str(sid)


class LoggingSmsGateway:
    """Development gateway: records messages instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(self, subject_id: str, address: str, body: str, template_tag: str | None) -> str:
        sid = f"dev-{uuid.uuid4().hex}"
        self.sent.append(
            {"subject_id": subject_id, "address": address, "body": body, "template_id": template_tag, "sid": sid}
        )
        logger.info("sms suppressed subject_id=%s template=%s sid=%s", subject_id, template_tag, sid)
        return sid


class Messenger:
    """Renders, sends and logs outbound messages for a subject."""

    def __init__(
        self,
        repository: EngagementRepository,
        gateway: SmsGateway,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def send_template(self, subject: Subject, template_id: str, **data: Any) -> MessageRecord:
        return await self.send_text(subject, render(template_id, **data), template_id)

    async def send_text(self, subject: Subject, body: str, template_id: str | None) -> MessageRecord:
        sid = await self.gateway.send(subject.subject_id, subject.phone_number, body, template_id)
        return await self.repository.log_message(
            subject_id=subject.subject_id,
            direction=MessageDirection.OUTBOUND,
            body=body,
            template_id=template_id,
            provider_sid=sid,
            at=self._clock(),
        )

    async def log_inbound(self, subject: Subject, body: str, provider_sid: str | None) -> MessageRecord:
        return await self.repository.log_message(
            subject_id=subject.subject_id,
            direction=MessageDirection.INBOUND,
            body=body,
            template_id=None,
            provider_sid=provider_sid,
            at=self._clock(),
        )


def build_sms_gateway(
    provider: str,
    *,
    account_sid: str | None,
    auth_token: str | None,
    from_number: str | None,
    base_url: str,
    timeout_seconds: float,
) -> SmsGateway:
    if provider == "twilio" and account_sid and auth_token and from_number:
        return TwilioSmsGateway(
            account_sid=account_sid,
            auth_token=auth_token,
            from_number=from_number,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
    logger.warning("sms provider not fully configured provider=%s; outbound messages are logged only", provider)
    return LoggingSmsGateway()
