from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from engagement.core.config import Settings, get_settings
from engagement.services.classification import ClassificationPipeline
from engagement.services.context import EngineContext
from engagement.services.conversation import ConversationHandler
from engagement.services.dispatcher import Dispatcher
from engagement.services.inbound import InboundMessageService
from engagement.services.repository import get_repository
from engagement.services.scheduler import JobScheduler
from engagement.services.sms import Messenger, build_sms_gateway
from engagement.services.state_machine import StateMachine
from engagement.services.text_classifier import build_text_classifier


@dataclass(slots=True)
class Services:
    settings: Settings
    context: EngineContext
    dispatcher: Dispatcher
    inbound: InboundMessageService


def build_services(settings: Settings, context: EngineContext) -> Services:
    dispatcher = Dispatcher(
        context,
        batch_size=settings.dispatch_batch_size,
        concurrency=settings.dispatch_concurrency,
        retry_backoff_seconds=settings.job_retry_backoff_seconds,
        slow_threshold_ms=settings.dispatch_slow_threshold_ms,
    )
    inbound = InboundMessageService(context, ConversationHandler(context))
    return Services(settings=settings, context=context, dispatcher=dispatcher, inbound=inbound)


@lru_cache
def get_services() -> Services:
    settings = get_settings()
    repository = get_repository()
    gateway = build_sms_gateway(
        settings.sms_provider,
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        base_url=settings.twilio_api_base_url,
        timeout_seconds=settings.twilio_timeout_seconds,
    )
    classifier = build_text_classifier(
        settings.classifier_api_key,
        model=settings.classifier_model,
        max_tokens=settings.classifier_max_tokens,
        timeout_seconds=settings.classifier_timeout_seconds,
    )
    context = EngineContext(
        repository=repository,
        state_machine=StateMachine(repository),
        scheduler=JobScheduler(
            repository,
            jitter_max_seconds=settings.scheduler_jitter_max_seconds,
            max_attempts=settings.job_max_attempts,
            default_timezone=settings.default_timezone,
        ),
        messenger=Messenger(repository, gateway),
        classifier=ClassificationPipeline(classifier, timeout_seconds=settings.classifier_timeout_seconds),
        report_base_url=settings.report_base_url,
        sprint_target_days=settings.sprint_target_days,
        default_timezone=settings.default_timezone,
    )
    return build_services(settings, context)
