"""
Exception hierarchy for the dispatch pipeline.

Routes translate these into HTTP responses; workers log them.
"""


class DispatchError(Exception):
    """Base class for all dispatch pipeline errors."""


class TemplateNotFoundError(DispatchError):
    """Template name did not resolve to an active template."""

    def __init__(self, template_name: str):
        self.template_name = template_name
        super().__init__(f"Template '{template_name}' not found")


class TemplateValidationError(DispatchError):
    """Required template variables are missing."""

    def __init__(self, template_name: str, missing_variables: list[str]):
        self.template_name = template_name
        self.missing_variables = missing_variables
        super().__init__(
            f"Missing required variables: {', '.join(missing_variables)}"
        )


class SendError(DispatchError):
    """
    A provider send failed.

    Carries the classifier's verdict. ``str(error)`` is the user-facing
    message only; raw provider text never leaves the adapter.
    """

    def __init__(self, classification, provider_message: str | None = None):
        self.classification = classification
        self.provider_message = provider_message
        super().__init__(classification.user_message)

    @property
    def code(self) -> int | None:
        return self.classification.code

    @property
    def retryable(self) -> bool:
        return self.classification.retryable


class InvalidTransitionError(DispatchError):
    """Job status change not allowed by the state machine."""

    def __init__(self, job_id: str, current, target):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")


class WebhookAuthenticationError(DispatchError):
    """Provider callback signature missing or invalid."""


class WebhookPayloadError(DispatchError):
    """Verified callback whose body could not be understood."""


class InvitationNotFoundError(DispatchError):
    """Invitation id is unknown."""


class InvitationNotRetryableError(DispatchError):
    """Invitation is not in a state that allows a manual retry."""

    def __init__(self, invitation_id: str, current_status: str | None):
        self.invitation_id = invitation_id
        self.current_status = current_status
        super().__init__("Only failed invitations can be retried")


class EventNotFoundError(DispatchError):
    """Event id is unknown."""


class GuestValidationError(DispatchError):
    """Bulk send guests are unknown or cannot be messaged."""


class InvitationConflictError(DispatchError):
    """Guests already have an invitation waiting to be sent."""

    def __init__(self, guest_ids: list[str]):
        self.guest_ids = guest_ids
        super().__init__(f"{len(guest_ids)} guest(s) already have pending invitations")


class StoreTimeoutError(DispatchError):
    """Key/value store call exceeded its timeout."""
