"""
Rate-limit retry and request pacing.

This module wraps the operation executor so that rate-limit responses are
waited out and retried instead of surfacing to the batch driver, and paces
successive records to avoid tripping the provider's limits in the first place.
"""

import time
import logging
from typing import Callable, Dict, Any, Optional

from account_sync.models import Record, OperationKind, OperationOutcome, RateLimited, Fatal

logger = logging.getLogger(__name__)


class RetryController:
    """
    Retries rate-limited operations until they resolve.

    By default retries are unbounded with a fixed cooldown. Setting
    ``max_attempts`` bounds them; the final rate limit is then escalated to a
    Fatal outcome. ``backoff`` multiplies the cooldown after every retry, up
    to ``max_retry_delay``. A provider Retry-After hint longer than the
    cooldown is honoured, but never beyond ``max_retry_delay``.
    """

    def __init__(self, executor, retry_delay: float = 10.0, delay: float = 1.0,
                 max_attempts: Optional[int] = None, backoff: float = 1.0,
                 max_retry_delay: float = 300.0,
                 on_retry: Optional[Callable[[int, Record, float], None]] = None):
        """
        Args:
            executor: Object with ``execute(record, kind)``
            retry_delay: Seconds to wait after a rate-limit response
            delay: Seconds to wait between distinct records
            max_attempts: Attempt cap per record, None for unbounded
            backoff: Cooldown multiplier per retry (1.0 keeps it fixed)
            max_retry_delay: Upper bound on a single cooldown
            on_retry: Optional callback called before each cooldown
        """
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff < 1.0:
            raise ValueError("backoff must be >= 1.0")

        self.executor = executor
        self.retry_delay = retry_delay
        self.delay = delay
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_retry_delay = max(max_retry_delay, retry_delay)
        self.on_retry = on_retry

        # Whether the most recent record waited on a rate limit
        self.last_waited = False
        self.total_retries = 0

    def run(self, record: Record, kind: OperationKind) -> OperationOutcome:
        """
        Execute an operation, waiting out rate limits.

        Returns:
            Success, Conflict or Fatal; never RateLimited
        """
        self.last_waited = False
        current_delay = self.retry_delay
        attempt = 0

        while True:
            attempt += 1
            outcome = self.executor.execute(record, kind)

            if not isinstance(outcome, RateLimited):
                if attempt > 1:
                    logger.info(f"{kind.value} {record.user_id} resolved as {outcome.kind} on attempt {attempt}")
                return outcome

            if self.max_attempts is not None and attempt >= self.max_attempts:
                logger.error(f"{kind.value} {record.user_id} still rate limited after {attempt} attempts")
                return Fatal(error=f"Rate limited after {attempt} attempts", status_code=429)

            wait = current_delay
            if outcome.retry_after is not None and outcome.retry_after > wait:
                wait = min(outcome.retry_after, self.max_retry_delay)

            logger.warning(f"Rate limit reached on {kind.value} {record.user_id}, "
                           f"waiting {wait:.1f}s before attempt {attempt + 1}")

            if self.on_retry:
                try:
                    self.on_retry(attempt, record, wait)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(wait)
            self.last_waited = True
            self.total_retries += 1
            current_delay = min(current_delay * self.backoff, self.max_retry_delay)

    def pace(self) -> None:
        """
        Wait between two distinct records.

        Skipped when the previous record already waited on a rate limit.
        """
        if self.last_waited:
            logger.debug("Skipping inter-record cooldown after rate-limit wait")
            self.last_waited = False
            return
        if self.delay > 0:
            time.sleep(self.delay)


def retry_controller_from_config(executor, pacing: Dict[str, Any]) -> RetryController:
    """
    Create a RetryController from the ``pacing`` configuration section.

    Args:
        executor: Operation executor to wrap
        pacing: Dictionary containing:
            - delay_ms: Inter-record cooldown
            - retry_delay_ms: Rate-limit cooldown
            - max_attempts: Optional attempt cap (None for unbounded)
            - backoff: Optional cooldown multiplier
            - max_retry_delay_ms: Optional cooldown ceiling
    """
    return RetryController(
        executor,
        retry_delay=pacing.get('retry_delay_ms', 10000) / 1000.0,
        delay=pacing.get('delay_ms', 1000) / 1000.0,
        max_attempts=pacing.get('max_attempts'),
        backoff=float(pacing.get('backoff') or 1.0),
        max_retry_delay=pacing.get('max_retry_delay_ms', 300000) / 1000.0,
        on_retry=create_retry_callback("Provider operation"),
    )


def create_retry_callback(operation_name: str) -> Callable[[int, Record, float], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried
    """
    def on_retry(attempt: int, record: Record, wait: float):
        logger.debug(f"{operation_name} for {record.user_id} rate limited on attempt {attempt}, "
                     f"cooling down {wait:.1f}s")

    return on_retry
