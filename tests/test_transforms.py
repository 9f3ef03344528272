from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from care_migration.contracts.migration_engine_service import TransformationRule
from care_migration.lib import transforms
from care_migration.lib.transforms import add_migration_metadata, transform_record


RULES = [
    TransformationRule('id', 'resident_id', required=True),
    TransformationRule('first_name', 'first_name', transforms.trim),
    TransformationRule('nhs_number', 'nhs_number', transforms.strip_whitespace),
]


def test_renames_and_transforms_columns():
    outcome = transform_record({'id': 7, 'first_name': '  Ada ', 'nhs_number': '943 476 5919', 'extra': 1}, RULES)

    assert outcome.ok
    assert outcome.record == {'resident_id': 7, 'first_name': 'Ada', 'nhs_number': '9434765919'}


def test_missing_required_field_fails_record():
    outcome = transform_record({'first_name': 'Ada'}, RULES)

    assert not outcome.ok
    assert outcome.errors == ['Required field id is missing or null']


def test_null_optional_field_is_left_unset():
    outcome = transform_record({'id': 7, 'first_name': None}, RULES)

    assert outcome.record == {'resident_id': 7}


def test_transform_error_fails_record():
    rules = [TransformationRule('dosage', 'dosage', transforms.to_float)]

    outcome = transform_record({'dosage': 'two tablets'}, rules)

    assert not outcome.ok
    assert outcome.errors[0].startswith('Transformation of dosage -> dosage failed: ')


class TestValueTransforms:

    def test_non_strings_pass_through(self):
        assert transforms.trim(5) == 5
        assert transforms.lower(None) is None
        assert transforms.strip_whitespace(12) == 12

    def test_lower(self):
        assert transforms.lower('Daily') == 'daily'

    def test_numbers(self):
        assert transforms.to_float('2.5') == 2.5
        assert transforms.to_int('12') == 12
        assert transforms.to_decimal('10.10') == Decimal('10.10')

    def test_bad_decimal(self):
        with pytest.raises(ValueError):
            transforms.to_decimal('ten pounds')

    def test_dates(self):
        assert transforms.to_date('02/01/1940') == date(1940, 1, 2)
        assert transforms.to_date('1940-01-02') == date(1940, 1, 2)
        assert transforms.to_date(datetime(1940, 1, 2, 9, 30)) == date(1940, 1, 2)
        with pytest.raises(ValueError):
            transforms.to_date('next Tuesday')

    def test_uk_phone(self):
        assert transforms.uk_phone('07700 900123') == '+447700900123'
        assert transforms.uk_phone('(0161) 496-0000') == '+441614960000'
        assert transforms.uk_phone('447700900123') == '+447700900123'
        with pytest.raises(ValueError):
            transforms.uk_phone('123')

    def test_uk_postcode(self):
        assert transforms.uk_postcode('sw1a1aa') == 'SW1A 1AA'
        assert transforms.uk_postcode(' m1  1ae ') == 'M1 1AE'
        with pytest.raises(ValueError):
            transforms.uk_postcode('not a postcode')

    def test_amounts(self):
        assert transforms.to_number('£1,250.50') == 1250.5
        assert transforms.to_number(3) == 3.0
        with pytest.raises(ValueError):
            transforms.to_number('free')

    def test_booleans(self):
        assert transforms.to_bool('Yes') is True
        assert transforms.to_bool('enabled') is True
        assert transforms.to_bool('n') is False
        assert transforms.to_bool(False) is False
        with pytest.raises(ValueError):
            transforms.to_bool('sometimes')


class TestMigrationMetadata:

    def test_stamps_record(self):
        migrated_at = datetime(2026, 3, 1, tzinfo=timezone.utc)

        record = add_migration_metadata({'resident_id': 1}, migrated_at)

        assert record == {
            'resident_id': 1,
            'created_at': migrated_at,
            'updated_at': migrated_at,
            'migrated_at': migrated_at,
            'migration_source': 'monolith',
        }

    def test_keeps_existing_timestamps(self):
        created = datetime(2020, 1, 1, tzinfo=timezone.utc)

        record = add_migration_metadata({'created_at': created})

        assert record['created_at'] == created
        assert record['migrated_at'].tzinfo is not None

    def test_does_not_mutate_input(self):
        original = {'resident_id': 1}
        add_migration_metadata(original)
        assert original == {'resident_id': 1}
