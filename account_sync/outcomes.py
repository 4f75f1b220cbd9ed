"""
Run outcome persistence.

Failures are appended to a run-scoped log as they happen, so a run that dies
part way keeps every failure recorded up to that point. The same entries can
be read back to drive a corrective run.
"""

import os
import json
import logging
from datetime import datetime
from typing import Dict, List, Any, Optional

from account_sync.models import FailureLogEntry, RunTally, RunSummary

logger = logging.getLogger(__name__)


def run_log_path(log_dir: str, flow: str, started: Optional[datetime] = None) -> str:
    """Timestamp-named failure log path for one run, e.g. update-log-2024-05-01T10-00-00.jsonl."""
    started = started or datetime.now()
    stamp = started.strftime('%Y-%m-%dT%H-%M-%S')
    return os.path.join(log_dir, f"{flow}-log-{stamp}.jsonl")


class OutcomeSink:
    """
    Collects per-record failures for one run.

    Args:
        log_path: JSON-lines file appended to on every failure
        errors_path: Optional file that receives the full error list as a JSON
            array once, when the run is finalized
    """

    def __init__(self, log_path: str, errors_path: Optional[str] = None):
        self.log_path = log_path
        self.errors_path = errors_path
        self.entries: List[FailureLogEntry] = []
        self.summary: Optional[RunSummary] = None

        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    def record_failure(self, entry: FailureLogEntry) -> None:
        """Append one failure to the log and flush it to disk before returning."""
        if self.summary is not None:
            raise RuntimeError("Outcome sink already finalized")

        self.entries.append(entry)
        line = json.dumps(entry.to_dict(), default=str)
        with open(self.log_path, 'a', encoding='utf-8') as f:
            f.write(line + '\n')
            f.flush()
            os.fsync(f.fileno())
        logger.debug(f"Recorded failure for {entry.user_id} in {self.log_path}")

    def finalize(self, operation: str, tally: RunTally, elapsed_seconds: float = 0.0,
                 pages_fetched: int = 0) -> RunSummary:
        """
        Close out the run and return its immutable summary.

        Calling finalize twice returns the same summary.
        """
        if self.summary is not None:
            return self.summary

        if self.errors_path:
            with open(self.errors_path, 'w', encoding='utf-8') as f:
                json.dump([entry.to_dict() for entry in self.entries], f, indent=2, default=str)
            logger.info(f"Wrote {len(self.entries)} errors to {self.errors_path}")

        self.summary = RunSummary(
            operation=operation,
            processed=tally.processed,
            succeeded=tally.succeeded,
            conflicted=tally.conflicted,
            failed=tally.failed,
            elapsed_seconds=elapsed_seconds,
            pages_fetched=pages_fetched,
            failure_log=self.log_path if self.entries else None,
        )
        return self.summary


def load_failure_log(path: str) -> List[Dict[str, Any]]:
    """
    Read failure entries back from a log file.

    Accepts a JSON array (end-of-run errors file), JSON lines, or a run of
    concatenated JSON objects.

    Raises:
        ValueError: If the file holds something other than failure entries
    """
    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()

    stripped = content.strip()
    if not stripped:
        return []

    if stripped.startswith('['):
        entries = json.loads(stripped)
    else:
        decoder = json.JSONDecoder()
        entries = []
        position = 0
        while position < len(stripped):
            entry, position = decoder.raw_decode(stripped, position)
            entries.append(entry)
            while position < len(stripped) and stripped[position].isspace():
                position += 1

    for entry in entries:
        if not isinstance(entry, dict) or 'user_id' not in entry:
            raise ValueError(f"{path} does not contain failure log entries")
    return entries
