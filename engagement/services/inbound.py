from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from opentelemetry import trace

from engagement.core.errors import InvalidInputError
from engagement.core.parsing import normalize_phone
from engagement.core.telemetry import annotate_subject
from engagement.services.context import EngineContext
from engagement.services.conversation import ConversationHandler
from engagement.services.templates import render

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SLOW_INBOUND_MS = 2000


class InboundStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNKNOWN_NUMBER = "unknown_number"


@dataclass(slots=True)
class InboundMessage:
    from_address: str
    text: str
    provider_message_id: str | None = None


@dataclass(slots=True)
class InboundResult:
    status: InboundStatus
    subject_id: str | None = None
    replies: list[str] = field(default_factory=list)
    # answered inline in the webhook response instead of through the SMS gateway
    direct_reply: str | None = None


class InboundMessageService:
    def __init__(self, context: EngineContext, conversation: ConversationHandler | None = None) -> None:
        self.context = context
        self.conversation = conversation or ConversationHandler(context)

    async def handle(self, message: InboundMessage) -> InboundResult:
        started = time.perf_counter()
        phone = normalize_phone(message.from_address)
        text = (message.text or "").strip()
        if phone is None:
            raise InvalidInputError(f"unrecognised sender address: {message.from_address!r}")
        if not text:
            raise InvalidInputError("inbound message has no text")

        repository = self.context.repository
        with tracer.start_as_current_span("inbound.handle") as span:
            if message.provider_message_id:
                fresh = await repository.register_inbound(
                    message.provider_message_id,
                    from_address=phone,
                    at=self.context.now(),
                )
                if not fresh:
                    logger.info("duplicate inbound ignored provider_message_id=%s", message.provider_message_id)
                    return InboundResult(status=InboundStatus.DUPLICATE)

            try:
                subject = await repository.get_subject_by_phone(phone)
                if subject is None:
                    logger.warning("inbound from unknown number provider_message_id=%s", message.provider_message_id)
                    return InboundResult(
                        status=InboundStatus.UNKNOWN_NUMBER,
                        direct_reply=render("ERR-UNKNOWN-NUMBER"),
                    )

                annotate_subject(span, subject)
                await self.context.messenger.log_inbound(subject, text, message.provider_message_id)

                replies = await self.conversation.handle(subject, text)
                for reply in replies:
                    await self.context.messenger.send_template(subject, reply.template_id, **reply.data)
            except Exception:
                # a redelivery of the same message must be processed again
                if message.provider_message_id:
                    await repository.release_inbound(message.provider_message_id)
                raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if elapsed_ms > SLOW_INBOUND_MS:
            logger.warning("slow inbound handling subject_id=%s elapsed_ms=%s", subject.subject_id, elapsed_ms)
        logger.info(
            "inbound handled subject_id=%s state=%s replies=%s elapsed_ms=%s",
            subject.subject_id,
            subject.state.value,
            ",".join(reply.template_id for reply in replies),
            elapsed_ms,
        )
        return InboundResult(
            status=InboundStatus.PROCESSED,
            subject_id=subject.subject_id,
            replies=[reply.template_id for reply in replies],
        )
