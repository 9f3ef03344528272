"""
Field validation rules.

Each ``ValidationKind`` maps to exactly one check function, so a rule's
behaviour is known from its kind alone. Checks return booleans; callers
collect failure messages instead of raising.
"""

import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from care_migration.contracts.migration_engine_service import ValidationKind, ValidationRule

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
UK_PHONE_PATTERN = re.compile(r'^(\+44|0)[1-9]\d{8,9}$')
NHS_NUMBER_PATTERN = re.compile(r'^\d{10}$')
UK_POSTCODE_PATTERN = re.compile(r'^[A-Z]{1,2}[0-9][A-Z0-9]?[0-9][A-Z]{2}$')

DATE_FORMATS = ('%Y-%m-%d', '%d/%m/%Y', '%Y/%m/%d', '%d-%m-%Y')


def validate_nhs_number(value: Any) -> bool:
    """
    Validate a 10-digit NHS number using its modulus 11 check digit

    Digits 1-9 are weighted 10 down to 2. The check digit is
    ``11 - (sum % 11)``, where 11 means 0 and 10 means the number is invalid.
    """
    nhs_number = str(value)
    if not NHS_NUMBER_PATTERN.match(nhs_number):
        return False

    digits = [int(d) for d in nhs_number]
    total = sum(digit * (10 - i) for i, digit in enumerate(digits[:9]))
    calculated = 11 - (total % 11)

    if calculated == 11:
        return digits[9] == 0
    if calculated == 10:
        return False
    return calculated == digits[9]


def validate_email(value: Any) -> bool:
    return bool(EMAIL_PATTERN.match(str(value)))


def validate_phone_number(value: Any) -> bool:
    """UK phone number: +44 or 0 prefix, then 9-10 digits not starting with 0"""
    return bool(UK_PHONE_PATTERN.match(re.sub(r'\s', '', str(value))))


def validate_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True

    text = str(value).strip()
    try:
        datetime.fromisoformat(text)
        return True
    except ValueError:
        pass

    for fmt in DATE_FORMATS:
        try:
            datetime.strptime(text, fmt)
            return True
        except ValueError:
            continue
    return False


def _is_blank(value: Any) -> bool:
    return value is None or value == ''


_CHECKS: Dict[ValidationKind, Callable[[Any], bool]] = {
    ValidationKind.NHS_NUMBER: validate_nhs_number,
    ValidationKind.DATE: validate_date,
    ValidationKind.EMAIL: validate_email,
    ValidationKind.PHONE: validate_phone_number,
}


def check_rule(rule: ValidationRule, value: Any) -> bool:
    """
    Evaluate one rule against one value

    Only ``required`` fails on a blank value; every other kind treats a blank
    value as nothing to check.
    """
    if rule.kind is ValidationKind.REQUIRED:
        return not _is_blank(value)

    if _is_blank(value):
        return True

    if rule.kind is ValidationKind.CUSTOM:
        return bool(rule.validator(value))

    return _CHECKS[rule.kind](value)


def validate_record(record: Dict[str, Any], rules: List[ValidationRule]) -> List[str]:
    """
    Run every rule against a transformed record

    Returns:
        ``"<column>: <error message>"`` for each failed rule, in rule order
    """
    errors = []
    for rule in rules:
        try:
            passed = check_rule(rule, record.get(rule.column))
        except (TypeError, ValueError) as e:
            errors.append(f"{rule.column}: {rule.error_message} ({e})")
            continue

        if not passed:
            errors.append(f"{rule.column}: {rule.error_message}")
    return errors


def required(column: str, error_message: Optional[str] = None) -> ValidationRule:
    return ValidationRule(column, ValidationKind.REQUIRED, error_message or f"{column} is required")


def nhs_number(column: str, error_message: str = 'Invalid NHS number format') -> ValidationRule:
    return ValidationRule(column, ValidationKind.NHS_NUMBER, error_message)


def date_value(column: str, error_message: str = 'Invalid date') -> ValidationRule:
    return ValidationRule(column, ValidationKind.DATE, error_message)


def email(column: str, error_message: str = 'Invalid email address format') -> ValidationRule:
    return ValidationRule(column, ValidationKind.EMAIL, error_message)


def phone(column: str, error_message: str = 'Invalid phone number format') -> ValidationRule:
    return ValidationRule(column, ValidationKind.PHONE, error_message)


def custom(column: str, validator: Callable[[Any], bool], error_message: str) -> ValidationRule:
    return ValidationRule(column, ValidationKind.CUSTOM, error_message, validator=validator)
