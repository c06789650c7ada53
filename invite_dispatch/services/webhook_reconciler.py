"""
Webhook reconciler: applies Twilio status callbacks to invitations.

The signature is checked before the body is parsed. Status only moves
forward; the rank check runs inside the UPDATE so out-of-order or
concurrent callbacks can't regress it.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import parse_qsl

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from twilio.request_validator import RequestValidator

from invite_dispatch.config import settings
from invite_dispatch.errors import WebhookAuthenticationError, WebhookPayloadError
from invite_dispatch.models.base import utcnow
from invite_dispatch.models.invitation import ProviderStatus
from invite_dispatch.routes import metrics
from invite_dispatch.services import error_classifier
from invite_dispatch.services.invitation_service import InvitationService

logger = structlog.get_logger()

# Twilio MessageStatus -> reconciled status
STATUS_MAPPING: dict[str, ProviderStatus] = {
    "accepted": ProviderStatus.PENDING,
    "queued": ProviderStatus.PENDING,
    "sending": ProviderStatus.PENDING,
    "sent": ProviderStatus.SENT,
    "receiving": ProviderStatus.SENT,
    "delivered": ProviderStatus.DELIVERED,
    "received": ProviderStatus.DELIVERED,
    "read": ProviderStatus.READ,
    "failed": ProviderStatus.FAILED,
    "undelivered": ProviderStatus.FAILED,
}

# Only the timestamp for the reported status is set
TIMESTAMP_FIELDS: dict[ProviderStatus, str] = {
    ProviderStatus.SENT: "sent_at",
    ProviderStatus.DELIVERED: "delivered_at",
    ProviderStatus.READ: "read_at",
    ProviderStatus.FAILED: "failed_at",
}


class StatusCallback(BaseModel):
    """The fields of a Twilio message status callback we act on."""
    model_config = ConfigDict(extra="ignore")

    message_sid: str = Field(alias="MessageSid", min_length=1)
    message_status: str = Field(alias="MessageStatus", min_length=1)
    error_code: str | None = Field(default=None, alias="ErrorCode")
    error_message: str | None = Field(default=None, alias="ErrorMessage")


@dataclass
class CallbackAck:
    """What happened to one callback: applied, stale or ignored."""
    outcome: str
    message_sid: str
    status: str | None = None
    invitation_id: str | None = None


class WebhookReconciler:
    """Verifies and applies provider status callbacks."""

    def __init__(
        self,
        invitations: InvitationService,
        auth_token: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.invitations = invitations
        self.auth_token = auth_token if auth_token is not None else settings.TWILIO_AUTH_TOKEN
        self.clock = clock

    def require_credentials(self, signature: str | None) -> None:
        """Reject before reading the body when nothing can be verified."""
        if not self.auth_token:
            # Never accept unsigned callbacks, even when unconfigured
            raise WebhookAuthenticationError("Twilio auth token not configured")
        if not signature:
            raise WebhookAuthenticationError("Missing X-Twilio-Signature header")

    def verify_signature(self, signature: str | None, url: str, params: dict[str, str]) -> None:
        """Raise WebhookAuthenticationError unless Twilio signed this request."""
        self.require_credentials(signature)

        validator = RequestValidator(self.auth_token)
        if not validator.validate(url, params, signature):
            raise WebhookAuthenticationError("Invalid Twilio signature")

    @staticmethod
    def parse_callback(params: dict[str, str]) -> StatusCallback:
        try:
            return StatusCallback.model_validate(params)
        except ValidationError as exc:
            raise WebhookPayloadError(f"Malformed status callback: {exc.error_count()} invalid fields") from exc

    async def handle_status_callback(self, signature: str | None, url: str, raw_body: bytes | str) -> CallbackAck:
        """
        Verify, parse and apply one form-encoded status callback.

        Raises WebhookAuthenticationError on a bad signature and
        WebhookPayloadError on a body that can't be understood.
        """
        self.require_credentials(signature)
        try:
            if isinstance(raw_body, bytes):
                raw_body = raw_body.decode("utf-8", errors="strict")
            params = dict(parse_qsl(raw_body, keep_blank_values=True, errors="strict"))
        except UnicodeDecodeError as exc:
            # An undecodable body can never match a signature
            raise WebhookAuthenticationError("Callback body is not valid UTF-8") from exc

        self.verify_signature(signature, url, params)
        callback = self.parse_callback(params)

        status = STATUS_MAPPING.get(callback.message_status.lower())
        if status is None:
            raise WebhookPayloadError(f"Unknown message status '{callback.message_status}'")

        log = logger.bind(message_sid=callback.message_sid, status=status.value)

        invitation = await self.invitations.get_by_provider_message_id(callback.message_sid)
        if invitation is None:
            log.info("webhook_unknown_message")
            metrics.track_webhook_callback(status.value, "ignored")
            return CallbackAck("ignored", callback.message_sid, status.value)

        values = self._update_values(invitation, status, callback)
        applied = await self.invitations.apply_status(invitation, status, values)

        if not applied:
            log.info("webhook_stale_status", invitation_id=invitation.id, current=invitation.provider_status)
            metrics.track_webhook_callback(status.value, "stale")
            return CallbackAck("stale", callback.message_sid, status.value, invitation.id)

        log.info(
            "webhook_status_applied",
            invitation_id=invitation.id,
            error_code=values.get("error_code"),
            next_retry_at=values["next_retry_at"].isoformat() if values.get("next_retry_at") else None,
        )
        metrics.track_webhook_callback(status.value, "applied")
        return CallbackAck("applied", callback.message_sid, status.value, invitation.id)

    def _update_values(self, invitation, status: ProviderStatus, callback: StatusCallback) -> dict:
        now = self.clock()
        values = {}
        timestamp_field = TIMESTAMP_FIELDS.get(status)
        if timestamp_field:
            values[timestamp_field] = now

        if status != ProviderStatus.FAILED:
            # Error fields only describe a failed status
            values.update(error_code=None, error_message=None, next_retry_at=None)
            return values

        code = error_classifier.parse_error_code(callback.error_code)
        classification = error_classifier.classify(code)
        values["error_code"] = str(code) if code is not None else None
        values["error_message"] = classification.user_message
        if callback.error_message:
            logger.warning(
                "provider_delivery_failed",
                invitation_id=invitation.id,
                **error_classifier.format_for_logging(classification, callback.error_message),
            )

        if classification.retryable and invitation.retry_count < invitation.max_retries:
            attempt = invitation.retry_count + 1
            delay_ms = classification.backoff.delay_ms(attempt, now=now)
            values["retry_count"] = attempt
            values["next_retry_at"] = now + timedelta(milliseconds=delay_ms)
        return values
