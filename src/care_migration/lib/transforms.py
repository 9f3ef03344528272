"""
Source-to-target field transformations.

Small pure functions used as ``TransformationRule.transform`` callables, and
``transform_record`` which applies a table's rules to one source row.
"""

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from care_migration.contracts.migration_engine_service import RecordOutcome, TransformationRule
from care_migration.lib.validators import DATE_FORMATS, UK_POSTCODE_PATTERN

MIGRATION_SOURCE = 'monolith'


def identity(value: Any) -> Any:
    return value


def trim(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def strip_whitespace(value: Any) -> Any:
    """Remove every whitespace character, e.g. ``'943 476 5919'`` -> ``'9434765919'``"""
    return re.sub(r'\s', '', value) if isinstance(value, str) else value


def to_float(value: Any) -> float:
    return float(value)


def to_int(value: Any) -> int:
    return int(value)


def to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Cannot convert {value!r} to a decimal") from e


def to_date(value: Any) -> date:
    """Parse an ISO or UK (``DD/MM/YYYY``) date"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date {value!r}")


def uk_phone(value: Any) -> str:
    """Normalise a UK phone number to ``+44`` followed by 10 digits"""
    digits = re.sub(r'[\s\-()]', '', str(value))
    if digits.startswith('0'):
        digits = '+44' + digits[1:]
    elif digits.startswith('44'):
        digits = '+' + digits

    if not re.match(r'^\+44\d{10}$', digits):
        raise ValueError(f"Not a UK phone number: {value!r}")
    return digits


def uk_postcode(value: Any) -> str:
    """Upper-case a UK postcode with one space before the inward code"""
    compact = re.sub(r'\s', '', str(value)).upper()
    if not UK_POSTCODE_PATTERN.match(compact):
        raise ValueError(f"Not a UK postcode: {value!r}")
    return f"{compact[:-3]} {compact[-3:]}"


def to_number(value: Any) -> float:
    """Parse an amount, ignoring currency symbols and thousands separators"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return float(re.sub(r'[£$,\s]', '', str(value)))


_TRUTHY = {'true', '1', 'yes', 'y', 'on', 'enabled'}
_FALSY = {'false', '0', 'no', 'n', 'off', 'disabled'}


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ValueError(f"Cannot convert {value!r} to a boolean")


def transform_record(source_record: Dict[str, Any], rules: List[TransformationRule]) -> RecordOutcome:
    """
    Apply transformation rules in order to one source record

    A ``required`` rule whose source value is missing or null, or any transform
    that raises, fails the record. Optional rules with a null source value are
    skipped and the target column is left unset.

    Returns:
        RecordOutcome carrying either the transformed record or the failure
    """
    transformed: Dict[str, Any] = {}

    for rule in rules:
        source_value = source_record.get(rule.source_column)

        if source_value is None:
            if rule.required:
                return RecordOutcome.failed(
                    f"Required field {rule.source_column} is missing or null"
                )
            continue

        try:
            transformed[rule.target_column] = rule.transform(source_value)
        except Exception as e:
            return RecordOutcome.failed(
                f"Transformation of {rule.source_column} -> {rule.target_column} failed: {e}"
            )

    return RecordOutcome(record=transformed)


def add_migration_metadata(record: Dict[str, Any], migrated_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Stamp a transformed record with migration bookkeeping columns"""
    now = migrated_at or datetime.now(timezone.utc)
    stamped = dict(record)
    stamped.setdefault('created_at', now)
    stamped.setdefault('updated_at', now)
    stamped['migrated_at'] = now
    stamped['migration_source'] = MIGRATION_SOURCE
    return stamped
