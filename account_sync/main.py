"""
Main entry point for Account Sync.

This module wires configuration, logging, the provider client and the batch
engine together into the three flows (create, update, delete) and exposes
them on the command line.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable

from account_sync.config import load_config, ConfigurationError
from account_sync.logging_setup import setup_logging, audit_logger
from account_sync.models import Record, OperationKind, RunSummary
from account_sync.schema import load_dataset, load_update_payload, RecordValidationError
from account_sync.provider import IdentityProviderClient, ProviderAPIError
from account_sync.executor import OperationExecutor
from account_sync.retry import retry_controller_from_config
from account_sync.sources import FiniteRecordSource, PaginatedRecordSource, CursorCheckpoint
from account_sync.outcomes import OutcomeSink, run_log_path, load_failure_log
from account_sync.driver import BatchDriver

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_VALIDATION_ERROR = 3
EXIT_PROVIDER_ERROR = 4
EXIT_UNEXPECTED_ERROR = 5


def build_update_factory(fields: Dict[str, Any], rewrites: List) -> Callable[[Dict[str, Any]], Record]:
    """
    Build the record factory used by update runs.

    Every listed account gets the shared partial update, plus any derived
    rewrites of its own current field values.
    """
    def factory(account: Dict[str, Any]) -> Record:
        values = dict(fields)
        for name, pattern, replacement in rewrites:
            current = account.get(name)
            if current is None:
                continue
            rewritten = pattern.sub(replacement, current, count=1)
            if rewritten != current:
                values[name] = rewritten
        return Record(user_id=account['id'], **values)

    return factory


def delete_record_factory(account: Dict[str, Any]) -> Record:
    return Record(user_id=account['id'])


class SyncRunner:
    """
    Runs one account synchronization flow.

    Loads configuration once, builds the provider client lazily, and maps
    failures to process exit codes.
    """

    def __init__(self, config_path: Optional[str] = None, client=None):
        """
        Initialize sync runner.

        Args:
            config_path: Path to configuration file
            client: Pre-built provider client (mostly for tests)
        """
        self.config_path = config_path
        self.config = None
        self.client = client
        self.started = datetime.now()

    def _load_configuration(self):
        self.config = load_config(self.config_path)
        setup_logging(self.config.get('logging', {}))
        audit_logger.log_configuration_access(self.config_path or 'environment')

    def _get_client(self):
        if self.client is None:
            self.client = IdentityProviderClient(self.config['provider'])
        return self.client

    def _build_driver(self, kind: OperationKind, errors_path: Optional[str] = None,
                      limit: Optional[int] = None, keep_records: bool = False) -> BatchDriver:
        executor = OperationExecutor(self._get_client())
        controller = retry_controller_from_config(executor, self.config['pacing'])
        log_path = run_log_path(self.config['paths']['failure_log_dir'], kind.value, self.started)
        sink = OutcomeSink(log_path, errors_path=errors_path)
        return BatchDriver(
            controller, sink, kind,
            limit=limit,
            progress_every=self.config['batch'].get('progress_every', 10),
            keep_records=keep_records,
        )

    def _listing_delays(self) -> dict:
        pacing = self.config['pacing']
        return {
            'rate_limit_delay': pacing['retry_delay_ms'] / 1000.0,
            'max_rate_limit_delay': pacing.get('max_retry_delay_ms', 300000) / 1000.0,
        }

    def _checkpoint(self) -> Optional[CursorCheckpoint]:
        path = self.config['paths'].get('cursor_checkpoint')
        return CursorCheckpoint(path) if path else None

    def create(self, dataset_path: Optional[str] = None, redrive_path: Optional[str] = None) -> RunSummary:
        """
        Create accounts from a dataset file.

        The whole dataset is validated before any account is created. With
        ``redrive_path`` only records named in that failure log are processed.
        """
        dataset_path = dataset_path or self.config['paths']['dataset']
        logger.info(f"Validating account data from {dataset_path}")
        records = load_dataset(dataset_path)

        if redrive_path:
            try:
                failed_ids = {entry['user_id'] for entry in load_failure_log(redrive_path)}
            except (OSError, ValueError) as e:
                raise RecordValidationError([f"Could not read failure log {redrive_path}: {e}"])
            records = [record for record in records if record.user_id in failed_ids]
            logger.info(f"Re-driving {len(records)} of {len(failed_ids)} failed records from {redrive_path}")

        logger.info(f"Creating {len(records)} accounts")
        driver = self._build_driver(
            OperationKind.CREATE,
            errors_path=self.config['paths']['errors_file'],
            keep_records=True,
        )
        return driver.run(FiniteRecordSource(records))

    def update(self, payload_path: Optional[str] = None, user_id: Optional[str] = None,
               batch_size: Optional[int] = None) -> RunSummary:
        """
        Apply a partial update to one account or to every account.
        """
        fields, rewrites = load_update_payload(payload_path)
        driver = self._build_driver(OperationKind.UPDATE)

        if user_id:
            logger.info(f"Updating account {user_id}")
            if rewrites:
                logger.warning("Derived rewrites need the listed account and are skipped for single-account updates")
            return driver.run_single(Record(user_id=user_id, **fields))

        page_size = batch_size or self.config['batch']['update_batch_size']
        logger.info(f"Updating all accounts, {page_size} per page")
        source = PaginatedRecordSource(
            self._get_client(), page_size=page_size,
            record_factory=build_update_factory(fields, rewrites),
            checkpoint=self._checkpoint(),
            **self._listing_delays(),
        )
        return driver.run(source)

    def delete(self, limit: Optional[int] = None, batch_size: Optional[int] = None) -> RunSummary:
        """
        Delete up to ``limit`` accounts, paging ``batch_size`` at a time.
        """
        limit = limit or self.config['batch']['delete_limit']
        batch_size = batch_size or self.config['batch']['delete_batch_size']
        logger.info(f"Starting account deletion. Limit: {limit}, Batch size: {batch_size}")

        total = self._get_client().count_accounts()
        logger.info(f"Total accounts: {total}")

        source = PaginatedRecordSource(
            self._get_client(), page_size=batch_size,
            record_factory=delete_record_factory,
            checkpoint=self._checkpoint(),
            **self._listing_delays(),
        )
        driver = self._build_driver(OperationKind.DELETE, limit=limit)
        return driver.run(source)

    def run(self, command: str, **kwargs) -> int:
        """
        Run a flow by name and return the process exit code.

        Per-record failures do not change the exit code; they are in the
        failure log.
        """
        try:
            self._load_configuration()
            flow = getattr(self, command)
            summary = flow(**kwargs)
            self._log_summary(summary)
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except RecordValidationError as e:
            logger.error(str(e))
            return EXIT_VALIDATION_ERROR
        except ProviderAPIError as e:
            logger.error(f"Provider error: {e}")
            return EXIT_PROVIDER_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _log_summary(self, summary: RunSummary):
        """Log final run statistics."""
        runtime_str = f"{summary.elapsed_seconds:.2f} seconds"
        if summary.elapsed_seconds > 60:
            minutes = int(summary.elapsed_seconds // 60)
            seconds = summary.elapsed_seconds % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Run Summary ===")
        logger.info(f"Operation: {summary.operation}")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Accounts processed: {summary.processed}")
        logger.info(f"Succeeded: {summary.succeeded}")
        logger.info(f"Already existed: {summary.conflicted}")
        logger.info(f"Failed: {summary.failed}")
        if summary.pages_fetched:
            logger.info(f"Pages fetched: {summary.pages_fetched}")
        if summary.failure_log:
            logger.info(f"Failures logged to {summary.failure_log}")

    def _cleanup(self):
        """Clean up resources."""
        if self.client is not None and hasattr(self.client, 'close_connection'):
            self.client.close_connection()


def _positive_int(value: str) -> int:
    import argparse

    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer")
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value!r} must be >= 1")
    return number


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description='Bulk account sync against an identity provider')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    create_parser = subparsers.add_parser('create', help='Create accounts from a dataset file')
    create_parser.add_argument('dataset', nargs='?', help='JSON dataset of accounts (default: paths.dataset)')
    create_parser.add_argument('--redrive', metavar='FAILURE_LOG',
                               help='Only process records that failed in a previous run')

    update_parser = subparsers.add_parser('update', help='Apply a partial update to accounts')
    update_parser.add_argument('payload', nargs='?', help='JSON or YAML file with the fields to update')
    update_parser.add_argument('--user-id', help='Update only this account')
    update_parser.add_argument('--batch-size', type=_positive_int, help='Accounts per page')

    delete_parser = subparsers.add_parser('delete', help='Delete accounts')
    delete_parser.add_argument('limit', nargs='?', type=_positive_int, help='Maximum accounts to delete (default 200)')
    delete_parser.add_argument('batch_size', nargs='?', type=_positive_int, help='Accounts per page (default 50)')

    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    runner = SyncRunner(config_path=args.config)

    if args.command == 'create':
        exit_code = runner.run('create', dataset_path=args.dataset, redrive_path=args.redrive)
    elif args.command == 'update':
        exit_code = runner.run('update', payload_path=args.payload, user_id=args.user_id,
                               batch_size=args.batch_size)
    else:
        exit_code = runner.run('delete', limit=args.limit, batch_size=args.batch_size)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
