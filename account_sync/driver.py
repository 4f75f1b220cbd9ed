"""
Batch driver for account synchronization runs.

The driver pulls records from a source one at a time, dispatches each through
the retry controller, tallies the outcome, and hands failures to the outcome
sink. Only one record is ever in flight.
"""

import enum
import time
import logging
from typing import Iterable, Optional

from account_sync.models import (
    Record, OperationKind, OperationOutcome, RunTally, RunSummary,
    Success, Conflict, Fatal, FailureLogEntry
)
from account_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)


class DriverError(Exception):
    """Raised when a driver is used outside its lifecycle."""
    pass


class DriverState(enum.Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    DISPATCHING = 'dispatching'
    DRAINING = 'draining'
    DONE = 'done'


class BatchDriver:
    """
    Runs one operation kind over one record source.

    A driver instance is good for exactly one run. Its tally is private to the
    run and is returned as an immutable RunSummary when the run finishes.
    """

    def __init__(self, controller, sink, kind: OperationKind, limit: Optional[int] = None,
                 progress_every: int = 10, keep_records: bool = False):
        """
        Args:
            controller: RetryController used for every dispatch
            sink: OutcomeSink receiving failures
            kind: Operation applied to every record
            limit: Stop after this many records have been dispatched
            progress_every: Log running counters every N records (0 disables)
            keep_records: Store the full record on failure entries for re-drive
        """
        if limit is not None and limit < 1:
            raise ValueError("limit must be >= 1")

        self.controller = controller
        self.sink = sink
        self.kind = kind
        self.limit = limit
        self.progress_every = progress_every
        self.keep_records = keep_records

        self.state = DriverState.IDLE
        self.summary: Optional[RunSummary] = None
        self._tally = RunTally()
        self._started = None

    @property
    def tally(self) -> RunTally:
        return self._tally

    def _transition(self, state: DriverState) -> None:
        logger.debug(f"Driver {self.kind.value}: {self.state.value} -> {state.value}")
        self.state = state

    def _start(self) -> None:
        if self.state is not DriverState.IDLE:
            raise DriverError(f"Driver already used (state={self.state.value})")
        self._started = time.monotonic()
        audit_logger.log_run_boundary('started', self.kind.value)
        self._transition(DriverState.FETCHING)

    def run(self, source: Iterable[Record]) -> RunSummary:
        """
        Process every record from ``source`` (or up to ``limit``).

        Returns:
            Final run summary

        If the source itself fails, the run is still drained and finalized
        with the partial tally before the error propagates.
        """
        self._start()
        iterator = iter(source)

        try:
            while True:
                if self.limit is not None and self._tally.processed >= self.limit:
                    logger.info(f"Reached limit of {self.limit} {self.kind.value} operations")
                    break

                try:
                    record = next(iterator)
                except StopIteration:
                    break

                self._transition(DriverState.DISPATCHING)
                if self._tally.processed > 0:
                    self.controller.pace()
                self._dispatch(record)
                self._transition(DriverState.FETCHING)
        except Exception as e:
            logger.error(f"{self.kind.value} run aborted after {self._tally.processed} records: {e}")
            self._log_progress()
            self._finish(getattr(source, 'pages_fetched', 0))
            raise

        return self._finish(getattr(source, 'pages_fetched', 0))

    def run_single(self, record: Record) -> RunSummary:
        """Dispatch exactly one record, bypassing any source."""
        self._start()
        self._transition(DriverState.DISPATCHING)
        self._dispatch(record)
        return self._finish(0)

    def _dispatch(self, record: Record) -> OperationOutcome:
        outcome = self.controller.run(record, self.kind)
        self._tally.count(outcome)

        if isinstance(outcome, Success):
            audit_logger.log_account_operation(self.kind.value, record.user_id, outcome.kind)
        elif isinstance(outcome, Conflict):
            logger.info(f"Account {record.user_id} already exists")
            audit_logger.log_account_operation(self.kind.value, record.user_id, outcome.kind, outcome.reason)
        else:
            self._record_failure(record, outcome)

        if self.progress_every and self._tally.processed % self.progress_every == 0:
            self._log_progress()

        return outcome

    def _record_failure(self, record: Record, outcome: OperationOutcome) -> None:
        if isinstance(outcome, Fatal):
            error, status_code, detail = outcome.error, outcome.status_code, outcome.detail
        else:
            error, status_code, detail = f"Unexpected outcome {outcome!r}", None, None

        logger.error(f"Failed to {self.kind.value} account {record.user_id}: {error}")
        audit_logger.log_account_operation(self.kind.value, record.user_id, 'fatal', error)

        self.sink.record_failure(FailureLogEntry(
            user_id=record.user_id,
            error=error,
            status_code=status_code,
            detail=detail,
            record=self._loggable_record(record) if self.keep_records else None,
        ))

    @staticmethod
    def _loggable_record(record: Record) -> dict:
        """Record fields for the failure log, without credential material."""
        data = record.to_dict()
        data.pop('password', None)
        data.pop('password_hasher', None)
        return data

    def _log_progress(self) -> None:
        tally = self._tally
        logger.info(f"{self.kind.value}: {tally.processed} processed, {tally.succeeded} succeeded, "
                    f"{tally.conflicted} already existed, {tally.failed} failed")

    def _finish(self, pages_fetched: int) -> RunSummary:
        self._transition(DriverState.DRAINING)
        elapsed = time.monotonic() - self._started
        self.summary = self.sink.finalize(
            self.kind.value, self._tally, elapsed_seconds=elapsed, pages_fetched=pages_fetched
        )
        self._transition(DriverState.DONE)
        audit_logger.log_run_boundary(
            'finished', self.kind.value,
            f"succeeded={self.summary.succeeded} conflicted={self.summary.conflicted} "
            f"failed={self.summary.failed}"
        )
        return self.summary
