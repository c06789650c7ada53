"""
Provider error classifier.

Single source of truth for retry eligibility and backoff. The dispatcher
and webhook reconciler never look at raw provider error text.
Reference: https://www.twilio.com/docs/api/errors
"""
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


class ErrorCategory(str, enum.Enum):
    """Error taxonomy used for retry decisions and triage."""
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    RECIPIENT = "recipient"
    TEMPLATE = "template"
    RATE_LIMIT = "rate_limit"
    DAILY_QUOTA = "daily_quota"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class ProviderErrorCode(enum.IntEnum):
    """Twilio error codes the pipeline knows about."""
    AUTHENTICATION_ERROR = 20003
    INVALID_PHONE_NUMBER = 21211
    MESSAGE_RATE_LIMIT = 21408
    UNVERIFIED_PHONE_NUMBER = 21421
    PHONE_NUMBER_BLACKLISTED = 21610
    MESSAGE_TOO_LONG = 21617
    QUEUE_OVERFLOW = 30001
    INTERNAL_ERROR = 30003
    SERVICE_UNAVAILABLE = 30545
    WHATSAPP_TEMPLATE_NOT_APPROVED = 63001
    WHATSAPP_RECIPIENT_NOT_ON_WHATSAPP = 63003
    WHATSAPP_DAILY_LIMIT_REACHED = 63004
    WHATSAPP_TEMPLATE_PARAM_COUNT_MISMATCH = 63007
    WHATSAPP_RECIPIENT_NOT_IN_ALLOWED_LIST = 63008
    WHATSAPP_RATE_LIMIT_EXCEEDED = 63010
    WHATSAPP_MESSAGE_FAILED = 63016
    WHATSAPP_MEDIA_SIZE_TOO_LARGE = 63018


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff: ``base_ms * 2^(attempt-1)`` capped at ``cap_ms``.

    With ``until_next_utc_day`` set the delay instead runs to the next
    UTC midnight, whatever the attempt number.
    """
    base_ms: int
    cap_ms: int
    until_next_utc_day: bool = False

    def delay_ms(self, attempt: int, now: datetime | None = None) -> int:
        if self.until_next_utc_day:
            now = now or datetime.now(timezone.utc)
            tomorrow = (now + timedelta(days=1)).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            return int((tomorrow - now).total_seconds() * 1000)

        exponent = max(attempt, 1) - 1
        return min(self.base_ms * (2 ** exponent), self.cap_ms)


DEFAULT_BACKOFF = BackoffPolicy(base_ms=60_000, cap_ms=3_600_000)
RATE_LIMIT_BACKOFF = BackoffPolicy(base_ms=5_000, cap_ms=300_000)
TRANSIENT_BACKOFF = BackoffPolicy(base_ms=30_000, cap_ms=600_000)
DAILY_QUOTA_BACKOFF = BackoffPolicy(base_ms=0, cap_ms=0, until_next_utc_day=True)


@dataclass(frozen=True)
class ErrorClassification:
    """Verdict for one provider error code."""
    code: int | None
    category: ErrorCategory
    retryable: bool
    backoff: BackoffPolicy | None
    message: str
    user_message: str
    action: str | None = None


def _terminal(code, category, message, user_message, action):
    return ErrorClassification(int(code), category, False, None, message, user_message, action)


def _retryable(code, category, backoff, message, user_message, action):
    code = int(code) if code is not None else None
    return ErrorClassification(code, category, True, backoff, message, user_message, action)


_ERROR_TABLE: dict[int, ErrorClassification] = {
    c.code: c for c in [
        _terminal(
            ProviderErrorCode.AUTHENTICATION_ERROR, ErrorCategory.CONFIGURATION,
            "Authentication failed",
            "WhatsApp service configuration error. Please contact support.",
            "Check Twilio credentials",
        ),
        _terminal(
            ProviderErrorCode.INVALID_PHONE_NUMBER, ErrorCategory.RECIPIENT,
            "Invalid phone number",
            "The phone number provided is invalid. Please check and try again.",
            "Verify phone number format",
        ),
        _terminal(
            ProviderErrorCode.UNVERIFIED_PHONE_NUMBER, ErrorCategory.RECIPIENT,
            "Phone number not verified",
            "This phone number needs to be verified before sending messages.",
            "Verify phone number with Twilio",
        ),
        _terminal(
            ProviderErrorCode.PHONE_NUMBER_BLACKLISTED, ErrorCategory.RECIPIENT,
            "Phone number is blacklisted",
            "Unable to send message to this phone number.",
            "Contact recipient through alternative method",
        ),
        _terminal(
            ProviderErrorCode.WHATSAPP_RECIPIENT_NOT_ON_WHATSAPP, ErrorCategory.RECIPIENT,
            "Recipient not on WhatsApp",
            "This phone number is not registered on WhatsApp.",
            "Use alternative communication method",
        ),
        _terminal(
            ProviderErrorCode.WHATSAPP_RECIPIENT_NOT_IN_ALLOWED_LIST, ErrorCategory.RECIPIENT,
            "Recipient not in allowed list (sandbox mode)",
            "Recipient needs to opt-in to receive WhatsApp messages.",
            "Add recipient to sandbox or upgrade account",
        ),
        _terminal(
            ProviderErrorCode.WHATSAPP_TEMPLATE_NOT_APPROVED, ErrorCategory.TEMPLATE,
            "WhatsApp template not approved",
            "Message template pending approval. Please try again later.",
            "Submit template for WhatsApp approval",
        ),
        _terminal(
            ProviderErrorCode.WHATSAPP_TEMPLATE_PARAM_COUNT_MISMATCH, ErrorCategory.TEMPLATE,
            "Template parameter count mismatch",
            "Message template error. Please contact support.",
            "Fix template variable mapping",
        ),
        _terminal(
            ProviderErrorCode.MESSAGE_TOO_LONG, ErrorCategory.VALIDATION,
            "Message body too long",
            "Message exceeds maximum length.",
            "Shorten message content",
        ),
        _terminal(
            ProviderErrorCode.WHATSAPP_MEDIA_SIZE_TOO_LARGE, ErrorCategory.VALIDATION,
            "Media file too large",
            "Media file size exceeds WhatsApp limits.",
            "Reduce media file size",
        ),
        _retryable(
            ProviderErrorCode.MESSAGE_RATE_LIMIT, ErrorCategory.RATE_LIMIT, RATE_LIMIT_BACKOFF,
            "Message rate limit exceeded",
            "Sending messages too quickly. Please wait.",
            "Slow down sends",
        ),
        _retryable(
            ProviderErrorCode.WHATSAPP_RATE_LIMIT_EXCEEDED, ErrorCategory.RATE_LIMIT, RATE_LIMIT_BACKOFF,
            "WhatsApp rate limit exceeded",
            "Sending too many messages. Please wait a moment.",
            "Slow down sends",
        ),
        _retryable(
            ProviderErrorCode.WHATSAPP_DAILY_LIMIT_REACHED, ErrorCategory.DAILY_QUOTA, DAILY_QUOTA_BACKOFF,
            "Daily message limit reached",
            "Daily message limit reached. Messages will be sent tomorrow.",
            "Wait for the daily quota to reset",
        ),
        _retryable(
            ProviderErrorCode.QUEUE_OVERFLOW, ErrorCategory.TRANSIENT, TRANSIENT_BACKOFF,
            "Message queue overflow",
            "Service is busy. Your message will be sent shortly.",
            "Retry after delay",
        ),
        _retryable(
            ProviderErrorCode.INTERNAL_ERROR, ErrorCategory.TRANSIENT, TRANSIENT_BACKOFF,
            "Internal Twilio error",
            "Temporary service issue. Please try again.",
            "Retry request",
        ),
        _retryable(
            ProviderErrorCode.SERVICE_UNAVAILABLE, ErrorCategory.TRANSIENT, TRANSIENT_BACKOFF,
            "Service temporarily unavailable",
            "WhatsApp service is temporarily unavailable.",
            "Retry after service recovery",
        ),
        _retryable(
            ProviderErrorCode.WHATSAPP_MESSAGE_FAILED, ErrorCategory.TRANSIENT, TRANSIENT_BACKOFF,
            "WhatsApp message failed",
            "Failed to send WhatsApp message. Will retry.",
            "Retry message delivery",
        ),
    ]
}

NETWORK_ERROR = _retryable(
    None, ErrorCategory.TRANSIENT, TRANSIENT_BACKOFF,
    "Provider unreachable or timed out",
    "Temporary service issue. Your message will be retried.",
    "Retry after delay",
)

TEMPLATE_NOT_FOUND = ErrorClassification(
    None, ErrorCategory.TEMPLATE, False, None,
    "Template not found or inactive",
    "Message template not found. Please contact support.",
    "Create or activate the template",
)

UNKNOWN_USER_MESSAGE = "An error occurred sending the message. Please try again."


def parse_error_code(raw) -> int | None:
    """Coerce a provider error code (int, numeric string, empty) to int."""
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def classify(code) -> ErrorClassification:
    """
    Classify a provider error code.

    Unrecognized codes are retryable with the default policy so that a
    new provider code never silently drops a message.
    """
    parsed = parse_error_code(code)
    if parsed is not None and parsed in _ERROR_TABLE:
        return _ERROR_TABLE[parsed]
    return _retryable(
        parsed, ErrorCategory.UNKNOWN, DEFAULT_BACKOFF,
        "Unrecognized provider error",
        UNKNOWN_USER_MESSAGE,
        None,
    )


def backoff_delay_ms(code, attempt: int, now: datetime | None = None) -> int | None:
    """Delay before retry ``attempt`` for ``code``; None when not retryable."""
    classification = classify(code)
    if not classification.retryable:
        return None
    return classification.backoff.delay_ms(attempt, now=now)


def is_recipient_error(code) -> bool:
    return classify(code).category == ErrorCategory.RECIPIENT


def is_template_error(code) -> bool:
    return classify(code).category == ErrorCategory.TEMPLATE


def is_rate_limit_error(code) -> bool:
    return classify(code).category in (ErrorCategory.RATE_LIMIT, ErrorCategory.DAILY_QUOTA)


def format_for_logging(classification: ErrorClassification, provider_message: str | None = None) -> dict:
    """Structured fields describing a provider error, for log events."""
    return {
        "error_code": classification.code,
        "error_category": classification.category.value,
        "retryable": classification.retryable,
        "provider_message": provider_message or classification.message,
        "action": classification.action,
    }
