"""
Operation executor: one remote mutation per call, mapped to an outcome.

The executor keeps no state between calls. Provider errors never escape it;
they are turned into Conflict, RateLimited or Fatal outcomes.
"""

import logging
from typing import Dict, Any

from account_sync.models import (
    Record, OperationKind, OperationOutcome, Success, Conflict, RateLimited, Fatal
)
from account_sync.provider.base import ProviderAPIError

logger = logging.getLogger(__name__)

CONFLICT_STATUS = 422
RATE_LIMIT_STATUS = 429


def build_create_body(record: Record) -> Dict[str, Any]:
    """
    Map a Record to the provider's account creation body.

    Credential material is passed through exactly as given. A pre-hashed
    digest travels with its hasher tag; a record without credentials asks the
    provider to waive the password requirement instead of generating one.
    """
    body = {'external_id': record.user_id}
    fields = record.present_fields()
    if 'email_addresses' in fields:
        body['email_address'] = fields.pop('email_addresses')
    body.update(fields)

    if not record.has_credential:
        body['skip_password_requirement'] = True
    elif record.is_prehashed:
        body['password_digest'] = record.password
        body['password_hasher'] = record.password_hasher
    else:
        body['password'] = record.password
        body['skip_password_checks'] = True

    return body


def build_update_body(record: Record) -> Dict[str, Any]:
    """Only fields present on the record; the provider leaves the rest untouched."""
    body = record.present_fields()
    if 'email_addresses' in body:
        body['email_address'] = body.pop('email_addresses')
    return body


def map_error(error: ProviderAPIError) -> OperationOutcome:
    """Map a provider error to an outcome by HTTP status."""
    if error.status_code == CONFLICT_STATUS:
        return Conflict(reason=str(error))
    if error.status_code == RATE_LIMIT_STATUS:
        return RateLimited(retry_after=error.retry_after)
    return Fatal(error=str(error), status_code=error.status_code, detail=error.body)


class OperationExecutor:
    """Applies exactly one create, update or delete per call."""

    def __init__(self, client):
        self.client = client

    def execute(self, record: Record, kind: OperationKind) -> OperationOutcome:
        """
        Invoke one remote mutation for ``record``.

        Args:
            record: The account to act on
            kind: Which mutation to apply

        Returns:
            Success, Conflict, RateLimited or Fatal
        """
        if not isinstance(kind, OperationKind):
            raise ValueError(f"Unsupported operation kind: {kind!r}")

        try:
            if kind is OperationKind.CREATE:
                response = self.client.create_account(build_create_body(record))
            elif kind is OperationKind.UPDATE:
                response = self.client.update_account(record.user_id, build_update_body(record))
            else:
                response = self.client.delete_account(record.user_id)
        except ProviderAPIError as e:
            outcome = map_error(e)
            logger.debug(f"{kind.value} {record.user_id} -> {outcome.kind} ({e})")
            return outcome
        except Exception as e:
            # Anything else is a malformed response or client bug; keep the batch going
            logger.error(f"Unexpected error during {kind.value} of {record.user_id}: {e}", exc_info=True)
            return Fatal(error=f"{type(e).__name__}: {e}")

        return Success(response=response if isinstance(response, dict) else None)
