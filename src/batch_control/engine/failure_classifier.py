"""Deterministic task failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from batch_control.engine.models import ErrorKind

FAILURE_CLASSIFIER_VERSION = 1

# Checked first so that e.g. "captcha timeout" fails fast instead of retrying.
_PERMANENT_PATTERNS: tuple[str, ...] = (
    "recaptcha",
    "captcha",
    "human verification",
    "account_locked",
    "account locked",
    "account disabled",
    "two-factor",
    "2-step verification",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate_limit",
    "rate limit",
    "too many requests",
    "429",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "econnrefused",
    "econnreset",
    "enotfound",
    "connection reset",
    "connection refused",
    "could not resolve host",
    "dns",
)

_RULES: tuple[tuple[str, ErrorKind, tuple[str, ...]], ...] = (
    ("permanent", ErrorKind.PERMANENT, _PERMANENT_PATTERNS),
    ("rate_limit", ErrorKind.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ("timeout", ErrorKind.TIMEOUT, _TIMEOUT_PATTERNS),
    ("network", ErrorKind.NETWORK, _NETWORK_PATTERNS),
)


@dataclass(slots=True, frozen=True)
class ErrorClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.kind is not ErrorKind.PERMANENT

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_kind": self.kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_error(message: str | BaseException | None) -> ErrorClassification:
    """Classify an error message into an ErrorKind; first matching rule wins."""

    if isinstance(message, TimeoutError):
        return ErrorClassification(
            kind=ErrorKind.TIMEOUT,
            matched_rule="timeout_exception",
            matched_pattern=None,
        )

    haystack = str(message or "").lower()
    for rule, kind, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(kind=kind, matched_rule=rule, matched_pattern=pattern)

    return ErrorClassification(
        kind=ErrorKind.DEFAULT,
        matched_rule="fallback_default",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
