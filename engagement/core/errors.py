class EngagementError(Exception):
    """Base error for the engagement engine."""


class InvalidInputError(EngagementError):
    """Raised when input is malformed at a boundary; nothing was mutated."""


class NotFoundError(EngagementError):
    """Raised when a referenced subject or job does not exist."""


class InvalidTransitionError(EngagementError):
    """Raised when a lifecycle transition is not allowed from the current state."""

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(f"invalid state transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class TransientDependencyError(EngagementError):
    """Raised when an external dependency times out or is unavailable."""


class AuditWriteError(EngagementError):
    """Raised when a state transition audit row could not be written."""
