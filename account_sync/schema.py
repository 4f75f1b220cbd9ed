"""
Record validation and dataset loading.

Datasets are validated all-or-nothing: every problem in the file is collected
and reported at once, and no record is handed to the batch engine unless the
whole file is valid.
"""

import re
import json
import logging
from typing import Dict, List, Any, Optional, Tuple

import yaml

from account_sync.models import Record, PASSWORD_HASHERS

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Camel-case keys accepted from exported datasets
FIELD_ALIASES = {
    'userId': 'user_id',
    'externalId': 'user_id',
    'emailAddress': 'email_addresses',
    'emailAddresses': 'email_addresses',
    'firstName': 'first_name',
    'lastName': 'last_name',
    'phoneNumber': 'phone_number',
    'passwordHasher': 'password_hasher',
    'publicMetadata': 'public_metadata',
    'privateMetadata': 'private_metadata',
    'unsafeMetadata': 'unsafe_metadata',
}

STRING_FIELDS = ('first_name', 'last_name', 'username', 'phone_number', 'password')
METADATA_FIELDS = ('public_metadata', 'private_metadata', 'unsafe_metadata')
UPDATE_FIELDS = ('email_addresses',) + STRING_FIELDS[:-1] + METADATA_FIELDS


class RecordValidationError(Exception):
    """Raised when a dataset or update payload does not match the record schema."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Record validation failed:\n" + "\n".join(f"  - {error}" for error in errors))


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for key, value in data.items():
        normalized[FIELD_ALIASES.get(key, key)] = value
    if 'email' in normalized:
        email = normalized.pop('email')
        if 'email_addresses' not in normalized:
            normalized['email_addresses'] = [email] if isinstance(email, str) else email
    if isinstance(normalized.get('email_addresses'), str):
        normalized['email_addresses'] = [normalized['email_addresses']]
    return normalized


def _check_fields(data: Dict[str, Any], prefix: str, errors: List[str]) -> None:
    """Validate optional field types shared by records and update payloads."""
    emails = data.get('email_addresses')
    if emails is not None:
        if not isinstance(emails, list) or not emails:
            errors.append(f"{prefix}.email_addresses must be a non-empty list")
        else:
            for email in emails:
                if not isinstance(email, str) or not EMAIL_PATTERN.match(email):
                    errors.append(f"{prefix}.email_addresses contains an invalid address: {email!r}")

    for name in STRING_FIELDS:
        value = data.get(name)
        if value is not None and not isinstance(value, str):
            errors.append(f"{prefix}.{name} must be a string")

    for name in METADATA_FIELDS:
        value = data.get(name)
        if value is not None and not isinstance(value, dict):
            errors.append(f"{prefix}.{name} must be a mapping")


def validate_records(raw_records: Any) -> List[Record]:
    """
    Validate a list of raw record mappings and build Records.

    Args:
        raw_records: Decoded dataset content (must be a list of mappings)

    Returns:
        Records in dataset order

    Raises:
        RecordValidationError: If any record is invalid; no records are returned
    """
    if not isinstance(raw_records, list):
        raise RecordValidationError(["Dataset must be a list of records"])

    errors = []
    records = []
    seen_ids = set()

    for i, raw in enumerate(raw_records):
        prefix = f"records[{i}]"
        if not isinstance(raw, dict):
            errors.append(f"{prefix} must be a mapping")
            continue

        data = _normalize_keys(raw)

        user_id = data.get('user_id')
        if not isinstance(user_id, str) or not user_id:
            errors.append(f"{prefix}.user_id is required")
        elif user_id in seen_ids:
            errors.append(f"{prefix}.user_id {user_id!r} is duplicated")
        else:
            seen_ids.add(user_id)

        if data.get('email_addresses') is None:
            errors.append(f"{prefix}.email is required")
        _check_fields(data, prefix, errors)

        hasher = data.get('password_hasher')
        if hasher is not None:
            if hasher not in PASSWORD_HASHERS:
                errors.append(f"{prefix}.password_hasher must be one of {', '.join(PASSWORD_HASHERS)}")
            if not data.get('password'):
                errors.append(f"{prefix}.password_hasher given without a password digest")

        unknown = set(data) - set(Record.__dataclass_fields__)
        if unknown:
            logger.debug(f"{prefix}: ignoring unknown fields {sorted(unknown)}")

        records.append(data)

    if errors:
        raise RecordValidationError(errors)

    return [
        Record(**{key: value for key, value in data.items() if key in Record.__dataclass_fields__})
        for data in records
    ]


def validate_update_fields(raw_fields: Any) -> Dict[str, Any]:
    """
    Validate a partial update payload.

    Only fields that are present are returned. Credential material and ids
    cannot be changed through an update payload.

    Raises:
        RecordValidationError: If the payload is invalid
    """
    if raw_fields is None:
        return {}
    if not isinstance(raw_fields, dict):
        raise RecordValidationError(["Update payload must be a mapping"])

    data = _normalize_keys(raw_fields)
    errors = []

    for name in data:
        if name not in UPDATE_FIELDS:
            errors.append(f"update.{name} is not an updatable field")
    _check_fields(data, 'update', errors)

    if errors:
        raise RecordValidationError(errors)
    return data


def validate_rewrites(raw_rewrites: Any) -> List[Tuple[str, re.Pattern, str]]:
    """
    Validate derived field rewrites for update runs.

    Each rewrite is ``{field, pattern, replacement}`` and is applied to the
    account's current value of ``field`` as listed by the provider.
    """
    if not raw_rewrites:
        return []
    if not isinstance(raw_rewrites, list):
        raise RecordValidationError(["rewrites must be a list"])

    errors = []
    rewrites = []
    for i, rewrite in enumerate(raw_rewrites):
        prefix = f"rewrites[{i}]"
        if not isinstance(rewrite, dict):
            errors.append(f"{prefix} must be a mapping")
            continue
        name = FIELD_ALIASES.get(rewrite.get('field'), rewrite.get('field'))
        if name not in STRING_FIELDS[:-1]:
            errors.append(f"{prefix}.field must be one of {', '.join(STRING_FIELDS[:-1])}")
            continue
        try:
            pattern = re.compile(rewrite.get('pattern') or '')
        except re.error as e:
            errors.append(f"{prefix}.pattern is not a valid regular expression: {e}")
            continue
        rewrites.append((name, pattern, str(rewrite.get('replacement', ''))))

    if errors:
        raise RecordValidationError(errors)
    return rewrites


def _read_structured_file(path: str) -> Any:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.endswith(('.yaml', '.yml')):
                return yaml.safe_load(f)
            return json.load(f)
    except FileNotFoundError:
        raise RecordValidationError([f"File not found: {path}"])
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise RecordValidationError([f"Could not parse {path}: {e}"])


def load_dataset(path: str) -> List[Record]:
    """Load and validate a create dataset from a JSON (or YAML) file."""
    records = validate_records(_read_structured_file(path))
    logger.info(f"Validated {len(records)} records from {path}")
    return records


def load_update_payload(path: Optional[str]) -> Tuple[Dict[str, Any], List[Tuple[str, re.Pattern, str]]]:
    """
    Load an update payload file.

    The file is either a plain mapping of fields, or a mapping with ``fields``
    and ``rewrites`` keys.
    """
    if not path:
        return {}, []
    raw = _read_structured_file(path) or {}
    if isinstance(raw, dict) and ('fields' in raw or 'rewrites' in raw):
        return validate_update_fields(raw.get('fields')), validate_rewrites(raw.get('rewrites'))
    return validate_update_fields(raw), []
