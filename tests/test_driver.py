#!/usr/bin/env python3
"""
Unit tests for the batch driver.

Runs the full driver -> retry controller -> executor stack against the
in-memory provider with sleeps patched out.
"""

import os
import sys
import json
import shutil
import tempfile
import unittest
from unittest.mock import patch, call

# Add parent directory to path to import account_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from account_sync.driver import BatchDriver, DriverError, DriverState
from account_sync.executor import OperationExecutor
from account_sync.models import Record, OperationKind, RunSummary
from account_sync.outcomes import OutcomeSink
from account_sync.retry import RetryController
from account_sync.sources import FiniteRecordSource, PaginatedRecordSource
from account_sync.provider.base import ProviderAPIError
from fake_provider import FakeProvider, rate_limited, already_exists, server_error


def make_records(count):
    return [Record(user_id=f"ext_{i}", email_addresses=[f"user{i}@example.com"]) for i in range(1, count + 1)]


class DriverTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='account_sync_test_')
        self.log_path = os.path.join(self.temp_dir, 'create-log.jsonl')
        self.errors_path = os.path.join(self.temp_dir, 'errors.json')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_driver(self, provider, kind=OperationKind.CREATE, limit=None, delay=1.0, retry_delay=10.0):
        controller = RetryController(OperationExecutor(provider), retry_delay=retry_delay, delay=delay)
        self.sink = OutcomeSink(self.log_path, errors_path=self.errors_path)
        return BatchDriver(controller, self.sink, kind, limit=limit, progress_every=0)

    def read_log_lines(self):
        if not os.path.exists(self.log_path):
            return []
        with open(self.log_path) as f:
            return [json.loads(line) for line in f if line.strip()]


@patch('account_sync.retry.time.sleep')
class TestCreateRuns(DriverTestCase):

    def test_clean_dataset_all_succeed(self, mock_sleep):
        provider = FakeProvider()
        driver = self.make_driver(provider)

        summary = driver.run(FiniteRecordSource(make_records(5)))

        self.assertEqual(summary.succeeded, 5)
        self.assertEqual(summary.conflicted, 0)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(summary.processed, 5)
        self.assertEqual(len(provider.calls_of('create')), 5)

    def test_conflict_counted_without_failure_entry(self, mock_sleep):
        provider = FakeProvider()
        provider.script('ext_2', already_exists())
        driver = self.make_driver(provider)

        summary = driver.run(FiniteRecordSource(make_records(3)))

        self.assertEqual(summary.conflicted, 1)
        self.assertEqual(summary.succeeded, 2)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(self.read_log_lines(), [])
        with open(self.errors_path) as f:
            self.assertEqual(json.load(f), [])

    def test_rate_limits_retried_until_success(self, mock_sleep):
        provider = FakeProvider()
        provider.script('ext_1', rate_limited(), rate_limited(), rate_limited())
        driver = self.make_driver(provider, retry_delay=10.0)

        summary = driver.run(FiniteRecordSource(make_records(1)))

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(summary.failed, 0)
        self.assertEqual(len(provider.calls_of('create')), 4)
        self.assertEqual(mock_sleep.call_args_list, [call(10.0)] * 3)

    def test_fatal_error_logged_once_and_run_continues(self, mock_sleep):
        provider = FakeProvider()
        provider.script('ext_1', server_error("boom"))
        driver = self.make_driver(provider)

        summary = driver.run(FiniteRecordSource(make_records(3)))

        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.succeeded, 2)
        entries = self.read_log_lines()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0]['user_id'], 'ext_1')
        self.assertEqual(entries[0]['status_code'], 500)
        self.assertIn('boom', entries[0]['error'])
        self.assertEqual(summary.failure_log, self.log_path)

    def test_rerun_of_migrated_dataset_is_all_conflicts(self, mock_sleep):
        provider = FakeProvider()
        records = make_records(4)
        self.make_driver(provider).run(FiniteRecordSource(records))

        summary = self.make_driver(provider).run(FiniteRecordSource(records))

        self.assertEqual(summary.succeeded, 0)
        self.assertEqual(summary.conflicted, 4)
        self.assertEqual(summary.failed, 0)

    def test_three_record_example(self, mock_sleep):
        provider = FakeProvider()
        provider.script('ext_2', already_exists())
        provider.script('ext_3', rate_limited())
        driver = self.make_driver(provider, delay=1.0, retry_delay=10.0)

        summary = driver.run(FiniteRecordSource(make_records(3)))

        self.assertEqual((summary.succeeded, summary.conflicted, summary.failed), (2, 1, 0))
        self.assertEqual(self.read_log_lines(), [])
        slept = sum(c.args[0] for c in mock_sleep.call_args_list)
        self.assertGreaterEqual(slept, 10.0)
        # pacing before records 2 and 3, one cooldown for record 3
        self.assertEqual(mock_sleep.call_args_list, [call(1.0), call(1.0), call(10.0)])

    def test_pacing_skipped_after_rate_limit_wait(self, mock_sleep):
        provider = FakeProvider()
        provider.script('ext_1', rate_limited())
        driver = self.make_driver(provider, delay=1.0, retry_delay=10.0)

        driver.run(FiniteRecordSource(make_records(2)))

        self.assertEqual(mock_sleep.call_args_list, [call(10.0)])

    def test_failed_record_kept_for_redrive_without_credentials(self, mock_sleep):
        provider = FakeProvider()
        provider.script('ext_1', server_error())
        controller = RetryController(OperationExecutor(provider), retry_delay=1.0, delay=0)
        sink = OutcomeSink(self.log_path)
        driver = BatchDriver(controller, sink, OperationKind.CREATE, keep_records=True)
        record = Record(user_id='ext_1', email_addresses=['a@example.com'],
                        password='$2a$10$abc', password_hasher='bcrypt')

        driver.run(FiniteRecordSource([record]))

        entry = self.read_log_lines()[0]
        self.assertEqual(entry['record']['user_id'], 'ext_1')
        self.assertNotIn('password', entry['record'])
        self.assertNotIn('password_hasher', entry['record'])


@patch('account_sync.retry.time.sleep')
class TestPaginatedRuns(DriverTestCase):

    def test_delete_stops_at_limit(self, mock_sleep):
        provider = FakeProvider.with_accounts(12)
        driver = self.make_driver(provider, kind=OperationKind.DELETE, limit=10)
        source = PaginatedRecordSource(provider, page_size=5)

        summary = driver.run(source)

        self.assertEqual(len(provider.calls_of('delete')), 10)
        self.assertEqual(len(provider.list_calls), 2)
        self.assertEqual(summary.succeeded, 10)
        self.assertEqual(summary.pages_fetched, 2)
        self.assertEqual(provider.count_accounts(), 2)

    def test_delete_without_limit_drains_listing(self, mock_sleep):
        provider = FakeProvider.with_accounts(7)
        driver = self.make_driver(provider, kind=OperationKind.DELETE)

        summary = driver.run(PaginatedRecordSource(provider, page_size=5))

        self.assertEqual(summary.succeeded, 7)
        self.assertEqual(provider.count_accounts(), 0)

    def test_double_delete_is_fatal(self, mock_sleep):
        provider = FakeProvider.with_accounts(1)
        driver = self.make_driver(provider, kind=OperationKind.DELETE)
        driver.run_single(Record(user_id='user_0001'))

        second = self.make_driver(provider, kind=OperationKind.DELETE)
        summary = second.run_single(Record(user_id='user_0001'))

        self.assertEqual(summary.failed, 1)
        self.assertEqual(self.read_log_lines()[-1]['status_code'], 404)

    def test_listing_failure_still_finalizes_partial_run(self, mock_sleep):
        provider = FakeProvider.with_accounts(7)
        provider.script('user_0001', server_error())
        original_list = provider.list_accounts

        def list_then_fail(page_size, cursor=None):
            if cursor is not None:
                raise ProviderAPIError("Service Unavailable", status_code=503)
            return original_list(page_size, cursor)

        provider.list_accounts = list_then_fail
        driver = self.make_driver(provider, kind=OperationKind.DELETE)

        with self.assertRaises(ProviderAPIError):
            driver.run(PaginatedRecordSource(provider, page_size=5))

        self.assertEqual(driver.state, DriverState.DONE)
        self.assertEqual(driver.summary.processed, 5)
        self.assertEqual(driver.summary.succeeded, 4)
        self.assertEqual(driver.summary.failed, 1)
        self.assertEqual([entry['user_id'] for entry in self.read_log_lines()], ['user_0001'])

    def test_update_every_account(self, mock_sleep):
        provider = FakeProvider.with_accounts(3)
        driver = self.make_driver(provider, kind=OperationKind.UPDATE)

        source = PaginatedRecordSource(
            provider, page_size=2,
            record_factory=lambda account: Record(user_id=account['id'], first_name='Renamed'),
        )
        summary = driver.run(source)

        self.assertEqual(summary.succeeded, 3)
        for account in provider.accounts.values():
            self.assertEqual(account['first_name'], 'Renamed')
            self.assertTrue(account['username'].startswith('s'))


@patch('account_sync.retry.time.sleep')
class TestDriverLifecycle(DriverTestCase):

    def test_single_record_mode(self, mock_sleep):
        provider = FakeProvider()
        driver = self.make_driver(provider)

        summary = driver.run_single(make_records(1)[0])

        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(driver.state, DriverState.DONE)
        mock_sleep.assert_not_called()

    def test_driver_cannot_be_reused(self, mock_sleep):
        driver = self.make_driver(FakeProvider())
        driver.run(FiniteRecordSource([]))

        with self.assertRaises(DriverError):
            driver.run(FiniteRecordSource(make_records(1)))

    def test_summary_is_immutable(self, mock_sleep):
        driver = self.make_driver(FakeProvider())
        summary = driver.run(FiniteRecordSource(make_records(2)))

        self.assertIsInstance(summary, RunSummary)
        with self.assertRaises(AttributeError):
            summary.succeeded = 99

    def test_empty_source(self, mock_sleep):
        driver = self.make_driver(FakeProvider())
        summary = driver.run(FiniteRecordSource([]))

        self.assertEqual(summary.processed, 0)
        self.assertIsNone(summary.failure_log)

    def test_invalid_limit_rejected(self, mock_sleep):
        with self.assertRaises(ValueError):
            self.make_driver(FakeProvider(), limit=0)


if __name__ == '__main__':
    unittest.main()
