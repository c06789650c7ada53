"""
Error classifier tests: categories, retryability and backoff policies.
"""
from datetime import datetime, timezone

import pytest

from invite_dispatch.services import error_classifier
from invite_dispatch.services.error_classifier import ErrorCategory


@pytest.mark.parametrize("code", [21211, 21421, 21610, 63003, 63008])
def test_recipient_errors_are_terminal(code):
    classification = error_classifier.classify(code)
    assert classification.category == ErrorCategory.RECIPIENT
    assert classification.retryable is False
    assert error_classifier.is_recipient_error(code)
    assert error_classifier.backoff_delay_ms(code, 1) is None


@pytest.mark.parametrize("code", [63001, 63007])
def test_template_errors_are_terminal(code):
    assert error_classifier.is_template_error(code)
    assert error_classifier.classify(code).retryable is False


@pytest.mark.parametrize("code,category", [
    (20003, ErrorCategory.CONFIGURATION),
    (21617, ErrorCategory.VALIDATION),
    (63018, ErrorCategory.VALIDATION),
])
def test_validation_and_configuration_errors_are_terminal(code, category):
    classification = error_classifier.classify(code)
    assert classification.category == category
    assert classification.retryable is False


def test_string_codes_are_accepted():
    assert error_classifier.classify("63003").code == 63003
    assert error_classifier.classify("").category == ErrorCategory.UNKNOWN
    assert error_classifier.parse_error_code("abc") is None


def test_unknown_code_uses_default_backoff():
    assert error_classifier.classify(99999).retryable is True
    assert [error_classifier.backoff_delay_ms(99999, attempt) for attempt in (1, 2, 3)] == [
        60_000, 120_000, 240_000,
    ]
    assert error_classifier.backoff_delay_ms(99999, 20) == 3_600_000


def test_rate_limit_backoff_doubles_from_five_seconds():
    assert error_classifier.is_rate_limit_error(63010)
    assert error_classifier.backoff_delay_ms(63010, 1) == 5_000
    assert error_classifier.backoff_delay_ms(21408, 2) == 10_000
    assert error_classifier.backoff_delay_ms(21408, 10) == 300_000


@pytest.mark.parametrize("code", [30001, 30003, 30545, 63016])
def test_transient_backoff(code):
    classification = error_classifier.classify(code)
    assert classification.category == ErrorCategory.TRANSIENT
    assert error_classifier.backoff_delay_ms(code, 1) == 30_000
    assert error_classifier.backoff_delay_ms(code, 3) == 120_000
    assert error_classifier.backoff_delay_ms(code, 8) == 600_000


def test_network_error_is_transient():
    assert error_classifier.NETWORK_ERROR.retryable is True
    assert error_classifier.NETWORK_ERROR.category == ErrorCategory.TRANSIENT


def test_daily_quota_waits_for_next_utc_midnight():
    now = datetime(2026, 3, 14, 22, 30, tzinfo=timezone.utc)
    classification = error_classifier.classify(63004)

    assert classification.category == ErrorCategory.DAILY_QUOTA
    assert error_classifier.is_rate_limit_error(63004)
    assert error_classifier.backoff_delay_ms(63004, 1, now=now) == 90 * 60 * 1000
    assert error_classifier.backoff_delay_ms(63004, 3, now=now) == 90 * 60 * 1000


def test_format_for_logging_keeps_provider_text_out_of_user_message():
    classification = error_classifier.classify(21211)
    fields = error_classifier.format_for_logging(classification, "Invalid 'To' Phone Number: +1555")

    assert fields["error_code"] == 21211
    assert fields["error_category"] == "recipient"
    assert fields["retryable"] is False
    assert fields["provider_message"] == "Invalid 'To' Phone Number: +1555"
    assert "+1555" not in classification.user_message
