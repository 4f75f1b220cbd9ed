"""
Record sources for the batch driver.

A source is an iterator of Records; exhaustion is end-of-sequence. The finite
source replays a pre-validated dataset, the paginated source walks the
provider's account listing with a greater-than cursor.
"""

import os
import json
import time
import logging
from typing import Callable, Dict, Iterator, List, Any, Optional

from account_sync.models import Record
from account_sync.provider.base import ProviderAPIError

logger = logging.getLogger(__name__)


class FiniteRecordSource:
    """Yields a pre-loaded dataset in order, once."""

    def __init__(self, records: List[Record]):
        self._records = list(records)
        self._position = 0
        self.pages_fetched = 0

    def __len__(self):
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return self

    def __next__(self) -> Record:
        if self._position >= len(self._records):
            raise StopIteration
        record = self._records[self._position]
        self._position += 1
        return record


def account_to_record(account: Dict[str, Any]) -> Record:
    """Build a Record from a provider account listing entry."""
    emails = []
    for entry in account.get('email_addresses') or []:
        if isinstance(entry, dict) and entry.get('email_address'):
            emails.append(entry['email_address'])
        elif isinstance(entry, str):
            emails.append(entry)

    return Record(
        user_id=account['id'],
        email_addresses=emails or None,
        first_name=account.get('first_name'),
        last_name=account.get('last_name'),
        username=account.get('username'),
    )


class CursorCheckpoint:
    """Persists the pagination cursor to a small JSON file after each page."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[str]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                cursor = json.load(f).get('cursor')
        except FileNotFoundError:
            return None
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable cursor checkpoint {self.path}: {e}")
            return None
        if cursor:
            logger.info(f"Resuming from checkpointed cursor {cursor}")
        return cursor

    def save(self, cursor: str) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump({'cursor': cursor}, f)
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


class PaginatedRecordSource:
    """
    Streams accounts from the provider page by page.

    Each request asks for up to ``page_size`` accounts with ids after the
    cursor. The cursor moves to the last id of a page once that page has been
    handed out and never moves back. A short page does not end iteration; only
    an empty page does.
    """

    def __init__(self, client, page_size: int = 200,
                 record_factory: Callable[[Dict[str, Any]], Record] = account_to_record,
                 checkpoint: Optional[CursorCheckpoint] = None,
                 cursor: Optional[str] = None, rate_limit_delay: float = 10.0,
                 max_rate_limit_delay: float = 300.0):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        self.client = client
        self.page_size = page_size
        self.rate_limit_delay = rate_limit_delay
        self.max_rate_limit_delay = max(max_rate_limit_delay, rate_limit_delay)
        self.record_factory = record_factory
        self.checkpoint = checkpoint
        self.cursor = cursor
        if self.cursor is None and checkpoint is not None:
            self.cursor = checkpoint.load()

        self.pages_fetched = 0
        self.exhausted = False
        self._iterator = self._iterate()

    def fetch_page(self) -> List[Dict[str, Any]]:
        """
        Request the next page after the current cursor.

        Rate-limited listing requests are retried after ``rate_limit_delay``
        seconds, or the provider's hint capped at ``max_rate_limit_delay``;
        any other provider error propagates.
        """
        while True:
            try:
                accounts = self.client.list_accounts(self.page_size, self.cursor)
                break
            except ProviderAPIError as e:
                if e.status_code != 429:
                    raise
                wait = min(max(self.rate_limit_delay, e.retry_after or 0), self.max_rate_limit_delay)
                logger.warning(f"Rate limit reached while listing accounts, waiting {wait:.1f}s")
                time.sleep(wait)
        self.pages_fetched += 1
        logger.debug(f"Fetched page {self.pages_fetched} after cursor {self.cursor}: {len(accounts)} accounts")
        return accounts

    def _advance(self, cursor: str) -> None:
        self.cursor = cursor
        if self.checkpoint is not None:
            self.checkpoint.save(cursor)

    def _iterate(self) -> Iterator[Record]:
        while True:
            accounts = self.fetch_page()
            if not accounts:
                self.exhausted = True
                logger.info(f"Account listing exhausted after {self.pages_fetched} pages")
                if self.checkpoint is not None:
                    self.checkpoint.clear()
                return

            last_id = accounts[-1]['id']
            if self.cursor is not None and last_id <= self.cursor:
                raise ProviderAPIError(
                    f"Account listing went backwards: page ends at {last_id} after cursor {self.cursor}"
                )

            for account in accounts:
                yield self.record_factory(account)

            self._advance(last_id)

    def __iter__(self) -> Iterator[Record]:
        return self

    def __next__(self) -> Record:
        return next(self._iterator)
