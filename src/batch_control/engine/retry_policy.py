"""Retry policy lookup keyed by classified error kind."""

from __future__ import annotations

from collections.abc import Mapping

from batch_control.engine.failure_classifier import ErrorClassification, classify_error
from batch_control.engine.models import ErrorKind, RetryStrategy

DEFAULT_RETRY_STRATEGIES: Mapping[ErrorKind, RetryStrategy] = {
    ErrorKind.NETWORK: RetryStrategy(max_retries=3, delay_seconds=5.0, exponential_backoff=True),
    ErrorKind.TIMEOUT: RetryStrategy(max_retries=2, delay_seconds=10.0, exponential_backoff=False),
    ErrorKind.RATE_LIMIT: RetryStrategy(
        max_retries=5,
        delay_seconds=30.0,
        exponential_backoff=True,
    ),
    ErrorKind.PERMANENT: RetryStrategy(max_retries=0, delay_seconds=0.0, exponential_backoff=False),
    ErrorKind.DEFAULT: RetryStrategy(max_retries=1, delay_seconds=3.0, exponential_backoff=False),
}


class RetryPolicyRegistry:
    """Pure lookup from error (or error kind) to its retry strategy."""

    def __init__(self, overrides: Mapping[ErrorKind, RetryStrategy] | None = None) -> None:
        strategies = dict(DEFAULT_RETRY_STRATEGIES)
        if overrides:
            strategies.update(overrides)
        permanent = strategies[ErrorKind.PERMANENT]
        if permanent.max_retries != 0:
            raise ValueError("PERMANENT errors must map to max_retries=0.")
        self._strategies = strategies

    def strategy_for(self, kind: ErrorKind) -> RetryStrategy:
        return self._strategies.get(kind, self._strategies[ErrorKind.DEFAULT])

    def classify(self, error: str | BaseException | None) -> ErrorClassification:
        return classify_error(error)

    def lookup(self, error: str | BaseException | None) -> tuple[ErrorClassification, RetryStrategy]:
        """Classify an error and return it together with its strategy."""

        classification = self.classify(error)
        return classification, self.strategy_for(classification.kind)

    def as_dict(self) -> dict[str, dict[str, object]]:
        return {
            kind.value: {
                "max_retries": strategy.max_retries,
                "delay_seconds": strategy.delay_seconds,
                "exponential_backoff": strategy.exponential_backoff,
            }
            for kind, strategy in self._strategies.items()
        }
