from __future__ import annotations

import allure
import pytest

from batch_control.engine.errors import TaskTimeoutError
from batch_control.engine.failure_classifier import FAILURE_CLASSIFIER_VERSION, classify_error
from batch_control.engine.models import ErrorKind

pytestmark = [
    allure.epic("Batch Engine"),
    allure.feature("Retry Policy & Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("message", "kind"),
    [
        ("NETWORK: connection reset by peer", ErrorKind.NETWORK),
        ("connect ECONNREFUSED 127.0.0.1:50325", ErrorKind.NETWORK),
        ("TIMEOUT", ErrorKind.TIMEOUT),
        ("Navigation timed out after 30000ms", ErrorKind.TIMEOUT),
        ("HTTP 429 Too Many Requests", ErrorKind.RATE_LIMIT),
        ("RATE_LIMIT exceeded", ErrorKind.RATE_LIMIT),
        ("RECAPTCHA challenge shown", ErrorKind.PERMANENT),
        ("ACCOUNT_LOCKED", ErrorKind.PERMANENT),
        ("Selector .pause-button not found", ErrorKind.DEFAULT),
    ],
)
def test_classifier_maps_messages_to_kinds(message: str, kind: ErrorKind) -> None:
    assert classify_error(message).kind is kind


def test_classifier_checks_permanent_before_timeout() -> None:
    classified = classify_error("captcha timeout while waiting for page")

    assert classified.kind is ErrorKind.PERMANENT
    assert classified.matched_rule == "permanent"
    assert classified.matched_pattern == "captcha"
    assert classified.retryable is False


def test_classifier_treats_timeout_exceptions_as_timeout() -> None:
    classified = classify_error(TaskTimeoutError("t-1", 300))

    assert classified.kind is ErrorKind.TIMEOUT
    assert classified.matched_rule == "timeout_exception"


def test_classifier_falls_back_to_default_for_empty_error() -> None:
    classified = classify_error(None)

    assert classified.kind is ErrorKind.DEFAULT
    assert classified.matched_rule == "fallback_default"
    assert classified.retryable is True
    assert classified.to_event_details()["error_kind"] == "default"
