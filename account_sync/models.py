"""
Core data types shared by the batch engine.

Records describe one account to synchronize, outcomes describe what a single
remote mutation attempt produced, and the tally/summary pair carries the
run-level counters.
"""

import enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional


PASSWORD_HASHERS = (
    'argon2i',
    'argon2id',
    'bcrypt',
    'md5',
    'pbkdf2_sha256',
    'pbkdf2_sha256_django',
    'pbkdf2_sha1',
    'scrypt_firebase',
)

# Fields that may be sent to the provider when present on a record
ACCOUNT_FIELDS = (
    'first_name',
    'last_name',
    'username',
    'phone_number',
    'public_metadata',
    'private_metadata',
    'unsafe_metadata',
)


class OperationKind(enum.Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DELETE = 'delete'


@dataclass
class Record:
    """
    One account to synchronize.

    ``user_id`` is the external id for create runs and the provider's account
    id for update and delete runs. Any optional field left as ``None`` is
    treated as absent and never sent to the provider.
    """

    user_id: str
    email_addresses: Optional[List[str]] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    phone_number: Optional[str] = None
    password: Optional[str] = None
    password_hasher: Optional[str] = None
    public_metadata: Optional[Dict[str, Any]] = None
    private_metadata: Optional[Dict[str, Any]] = None
    unsafe_metadata: Optional[Dict[str, Any]] = None

    @property
    def has_credential(self) -> bool:
        return bool(self.password)

    @property
    def is_prehashed(self) -> bool:
        return self.has_credential and self.password_hasher is not None

    def present_fields(self) -> Dict[str, Any]:
        """Account fields that are set on this record, excluding id and credentials."""
        fields = {}
        if self.email_addresses is not None:
            fields['email_addresses'] = list(self.email_addresses)
        for name in ACCOUNT_FIELDS:
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        return fields

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class OperationOutcome:
    """Base class for the result of one remote mutation attempt."""

    kind = 'outcome'

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class Success(OperationOutcome):
    kind = 'success'
    response: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Conflict(OperationOutcome):
    kind = 'conflict'
    reason: str = ''


@dataclass(frozen=True)
class RateLimited(OperationOutcome):
    kind = 'rate_limited'
    retry_after: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class Fatal(OperationOutcome):
    kind = 'fatal'
    error: str = ''
    status_code: Optional[int] = None
    detail: Optional[Any] = None


@dataclass
class RunTally:
    """Mutable counters for one run. Owned by a single BatchDriver."""

    processed: int = 0
    succeeded: int = 0
    conflicted: int = 0
    failed: int = 0

    def count(self, outcome: OperationOutcome) -> None:
        self.processed += 1
        if isinstance(outcome, Success):
            self.succeeded += 1
        elif isinstance(outcome, Conflict):
            self.conflicted += 1
        else:
            self.failed += 1


@dataclass(frozen=True)
class RunSummary:
    """Immutable end-of-run counters."""

    operation: str
    processed: int
    succeeded: int
    conflicted: int
    failed: int
    elapsed_seconds: float = 0.0
    pages_fetched: int = 0
    failure_log: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FailureLogEntry:
    """One failed record as persisted to the run's failure log."""

    user_id: str
    error: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    status_code: Optional[int] = None
    detail: Optional[Any] = None
    record: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}
