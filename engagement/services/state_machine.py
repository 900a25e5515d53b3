from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from engagement.core.errors import InvalidTransitionError, NotFoundError
from engagement.core.models import Subject, SubjectState, TriggerType
from engagement.services.gateway import (
    STATE_OWNED_FIELDS,
    EngagementRepository,
    RepositoryValidationError,
    TransitionAudit,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[SubjectState, frozenset[SubjectState]] = {
    SubjectState.ENROLLED: frozenset({SubjectState.ONBOARDING, SubjectState.UNSUBSCRIBED, SubjectState.DORMANT}),
    SubjectState.ONBOARDING: frozenset({SubjectState.DAILY_ACTIVE, SubjectState.UNSUBSCRIBED}),
    SubjectState.DAILY_ACTIVE: frozenset(
        {SubjectState.DAILY_ACTIVE, SubjectState.PAUSED, SubjectState.TRANSITION, SubjectState.UNSUBSCRIBED}
    ),
    SubjectState.PAUSED: frozenset({SubjectState.DAILY_ACTIVE, SubjectState.DORMANT, SubjectState.UNSUBSCRIBED}),
    SubjectState.TRANSITION: frozenset(
        {SubjectState.WEEKLY, SubjectState.TREATMENT, SubjectState.DORMANT, SubjectState.UNSUBSCRIBED}
    ),
    SubjectState.WEEKLY: frozenset({SubjectState.DAILY_ACTIVE, SubjectState.DORMANT, SubjectState.UNSUBSCRIBED}),
    SubjectState.TREATMENT: frozenset({SubjectState.TRANSITION, SubjectState.PAUSED, SubjectState.UNSUBSCRIBED}),
    SubjectState.DORMANT: frozenset({SubjectState.DAILY_ACTIVE, SubjectState.UNSUBSCRIBED}),
    SubjectState.UNSUBSCRIBED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in VALID_TRANSITIONS.items() if not targets)
# Same-state writes that are a real transition rather than a no-op.
RECURRING_STATES = frozenset({SubjectState.DAILY_ACTIVE})

_MAX_WRITE_ATTEMPTS = 3


@dataclass(slots=True)
class TransitionOutcome:
    subject: Subject
    changed: bool
    audit_written: bool


def is_transition_allowed(from_state: SubjectState, to_state: SubjectState) -> bool:
    if to_state == SubjectState.UNSUBSCRIBED and from_state not in TERMINAL_STATES:
        return True
    return to_state in VALID_TRANSITIONS[from_state]


class StateMachine:
    """Single entry point for subject lifecycle changes.

    The current state is always re-read from the repository and written with a
    compare-and-set on that state, so a concurrent transition that lands first
    is observed instead of overwritten.
    """

    def __init__(self, repository: EngagementRepository) -> None:
        self.repository = repository

    async def get_subject(self, subject_id: str) -> Subject:
        subject = await self.repository.get_subject(subject_id)
        if subject is None:
            raise NotFoundError(f"subject not found: {subject_id}")
        return subject

    async def transition(
        self,
        subject_id: str,
        to_state: SubjectState,
        trigger_type: TriggerType,
        trigger_detail: str | None = None,
        extra_fields: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionOutcome:
        fields = dict(extra_fields or {})
        owned = STATE_OWNED_FIELDS.intersection(fields)
        if owned:
            raise RepositoryValidationError(f"fields are owned by the state machine: {sorted(owned)}")

        for _ in range(_MAX_WRITE_ATTEMPTS):
            subject = await self.get_subject(subject_id)
            from_state = subject.state

            if from_state == to_state and to_state not in RECURRING_STATES:
                return TransitionOutcome(subject=subject, changed=False, audit_written=False)

            if not is_transition_allowed(from_state, to_state):
                raise InvalidTransitionError(from_state.value, to_state.value)

            written_at = now or datetime.now(timezone.utc)
            write_fields = dict(fields)
            if to_state == SubjectState.ONBOARDING and subject.opted_in_at is None:
                write_fields["opted_in_at"] = written_at
            if to_state == SubjectState.UNSUBSCRIBED:
                write_fields["opted_out_at"] = written_at

            result = await self.repository.compare_and_set_state(
                subject_id,
                expected_state=from_state,
                new_state=to_state,
                fields=write_fields,
                audit=TransitionAudit(trigger_type=trigger_type, trigger_detail=trigger_detail),
                now=written_at,
            )
            if result is None:
                logger.info(
                    "state write lost race subject_id=%s expected=%s target=%s",
                    subject_id,
                    from_state.value,
                    to_state.value,
                )
                continue

            if result.audit_error is not None:
                logger.critical(
                    "state transition audit write failed subject_id=%s from=%s to=%s trigger=%s error=%s",
                    subject_id,
                    from_state.value,
                    to_state.value,
                    trigger_type.value,
                    result.audit_error,
                )
            else:
                logger.info(
                    "state transition subject_id=%s from=%s to=%s trigger=%s",
                    subject_id,
                    from_state.value,
                    to_state.value,
                    trigger_type.value,
                )
            return TransitionOutcome(
                subject=result.subject,
                changed=True,
                audit_written=result.audit_error is None,
            )

        # Every attempt observed a newer state; report against the latest one.
        subject = await self.get_subject(subject_id)
        if subject.state == to_state and to_state not in RECURRING_STATES:
            return TransitionOutcome(subject=subject, changed=False, audit_written=False)
        raise InvalidTransitionError(subject.state.value, to_state.value)
