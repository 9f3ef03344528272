"""
Tests for TableMigrator

Batched read/transform/validate/write of one table, strict and lenient
validation, PII encryption and batch atomicity.
"""

from typing import List

import pytest
from sqlalchemy import MetaData, insert

from care_migration.contracts.migration_engine_service import (
    MigrationOptions,
    MigrationStatus,
    MigrationTableConfig,
    TransformationRule,
)
from care_migration.lib import transforms, validators
from care_migration.lib.cancellation import CancellationToken
from care_migration.lib.exceptions import (
    BatchWriteException,
    MigrationCancelledException,
    MissingConfigurationException,
    TableMigrationException,
)
from care_migration.services.progress import ProgressTracker
from care_migration.services.table_migrator import TableMigrator

from conftest import INVALID_NHS_NUMBER, VALID_NHS_NUMBER, patients_source_table, patients_target_table


def seed_patients(source_db, rows: List[dict]) -> None:
    metadata = MetaData()
    table = patients_source_table(metadata)
    metadata.create_all(source_db.engine)
    if rows:
        with source_db.transaction() as session:
            session.execute(insert(table), rows)


def create_target(target_db, name_limit=None) -> None:
    metadata = MetaData()
    patients_target_table(metadata, name_limit)
    metadata.create_all(target_db.engine)


def patients_config(contains_pii: bool = False) -> MigrationTableConfig:
    return MigrationTableConfig(
        source_table='patients',
        target_table='patients',
        contains_pii=contains_pii,
        healthcare_context='resident-management',
        transformation_rules=(
            TransformationRule('id', 'patient_id', required=True),
            TransformationRule('nhs_number', 'nhs_number', transforms.strip_whitespace, required=True),
            TransformationRule('name', 'name', transforms.trim),
        ),
        validation_rules=(validators.nhs_number('nhs_number'),),
    )


TWO_PATIENTS = [
    {'id': 1, 'nhs_number': VALID_NHS_NUMBER, 'name': 'Ada'},
    {'id': 2, 'nhs_number': INVALID_NHS_NUMBER, 'name': 'Bob'},
]


class TestValidationModes:

    def test_strict_validation_skips_invalid_record(self, source_db, target_db, events, audit):
        seed_patients(source_db, TWO_PATIENTS)
        create_target(target_db)
        migrator = TableMigrator(source_db, MigrationOptions(strict_validation=True), events=events, audit=audit)

        result = migrator.migrate_table(patients_config(), target_db, 'resident-service')

        assert result.total_records == 2
        assert result.migrated_records == 1
        assert result.failed_records == 1
        assert result.status is MigrationStatus.PARTIAL
        assert result.validation_errors == ('nhs_number: Invalid NHS number format',)

        rows = target_db.fetch_all('patients')
        assert [row['patient_id'] for row in rows] == [1]
        assert rows[0]['migration_source'] == 'monolith'
        assert rows[0]['migrated_at'] is not None

    def test_lenient_validation_writes_invalid_record(self, source_db, target_db):
        seed_patients(source_db, TWO_PATIENTS)
        create_target(target_db)
        migrator = TableMigrator(source_db, MigrationOptions(strict_validation=False))

        result = migrator.migrate_table(patients_config(), target_db, 'resident-service')

        assert result.migrated_records == 2
        assert result.failed_records == 0
        assert result.status is MigrationStatus.COMPLETED
        assert len(result.validation_errors) == 1
        assert target_db.count_rows('patients') == 2

    def test_table_with_every_record_rejected_is_partial(self, source_db, target_db):
        seed_patients(source_db, [
            {'id': 1, 'nhs_number': INVALID_NHS_NUMBER, 'name': 'Ada'},
            {'id': 2, 'nhs_number': INVALID_NHS_NUMBER, 'name': 'Bob'},
        ])
        create_target(target_db)
        migrator = TableMigrator(source_db, MigrationOptions(strict_validation=True))

        result = migrator.migrate_table(patients_config(), target_db)

        assert result.migrated_records == 0
        assert result.failed_records == 2
        assert result.status is MigrationStatus.PARTIAL
        assert target_db.count_rows('patients') == 0

    def test_missing_required_field_counts_as_failure(self, source_db, target_db):
        seed_patients(source_db, [
            {'id': 1, 'nhs_number': VALID_NHS_NUMBER, 'name': 'Ada'},
            {'id': 2, 'nhs_number': None, 'name': 'Bob'},
        ])
        create_target(target_db)
        migrator = TableMigrator(source_db, MigrationOptions(strict_validation=False))

        result = migrator.migrate_table(patients_config(), target_db)

        assert result.failed_records == 1
        assert 'Required field nhs_number is missing or null' in result.validation_errors


class TestBatching:

    def test_counts_add_up_across_batches(self, source_db, target_db):
        seed_patients(source_db, [
            {'id': i, 'nhs_number': VALID_NHS_NUMBER if i % 3 else INVALID_NHS_NUMBER, 'name': f"P{i}"}
            for i in range(1, 26)
        ])
        create_target(target_db)
        tracker = ProgressTracker()
        tracker.start(total_phases=1, total_tables=1)
        migrator = TableMigrator(source_db, MigrationOptions(batch_size=7), tracker=tracker)

        result = migrator.migrate_table(patients_config(), target_db)

        assert result.total_records == 25
        assert result.migrated_records + result.failed_records == 25
        assert result.failed_records == 8
        assert target_db.count_rows('patients') == 17
        assert tracker.snapshot().migrated_records == 17
        assert tracker.snapshot().total_records == 25

    def test_rerun_does_not_duplicate_rows(self, source_db, target_db):
        seed_patients(source_db, TWO_PATIENTS)
        create_target(target_db)
        migrator = TableMigrator(source_db, MigrationOptions(strict_validation=False))

        migrator.migrate_table(patients_config(), target_db)
        second = migrator.migrate_table(patients_config(), target_db)

        assert second.status is MigrationStatus.COMPLETED
        assert target_db.count_rows('patients') == 2

    def test_failed_batch_write_is_rolled_back(self, source_db, target_db):
        seed_patients(source_db, [
            {'id': 1, 'nhs_number': VALID_NHS_NUMBER, 'name': 'Ada'},
            {'id': 2, 'nhs_number': VALID_NHS_NUMBER, 'name': 'A name far too long for the target'},
            {'id': 3, 'nhs_number': VALID_NHS_NUMBER, 'name': 'Cy'},
        ])
        create_target(target_db, name_limit=10)
        migrator = TableMigrator(source_db, MigrationOptions(batch_size=10))

        with pytest.raises(TableMigrationException) as exc_info:
            migrator.migrate_table(patients_config(), target_db, 'resident-service')

        assert isinstance(exc_info.value.__cause__, BatchWriteException)
        assert exc_info.value.result.status is MigrationStatus.FAILED
        assert exc_info.value.result.migrated_records == 0
        assert target_db.count_rows('patients') == 0

    def test_earlier_batches_stay_committed_after_a_later_failure(self, source_db, target_db):
        seed_patients(source_db, [
            {'id': 1, 'nhs_number': VALID_NHS_NUMBER, 'name': 'Ada'},
            {'id': 2, 'nhs_number': VALID_NHS_NUMBER, 'name': 'Bo'},
            {'id': 3, 'nhs_number': VALID_NHS_NUMBER, 'name': 'A name far too long for the target'},
        ])
        create_target(target_db, name_limit=10)
        migrator = TableMigrator(source_db, MigrationOptions(batch_size=2))

        with pytest.raises(TableMigrationException) as exc_info:
            migrator.migrate_table(patients_config(), target_db)

        assert exc_info.value.result.migrated_records == 2
        assert target_db.count_rows('patients') == 2

    def test_empty_source_table_completes(self, source_db, target_db):
        seed_patients(source_db, [])
        create_target(target_db)

        result = TableMigrator(source_db).migrate_table(patients_config(), target_db)

        assert result.total_records == 0
        assert result.status is MigrationStatus.COMPLETED


class TestPii:

    def test_pii_table_without_encryption_fails(self, source_db, target_db):
        seed_patients(source_db, TWO_PATIENTS)
        create_target(target_db)
        migrator = TableMigrator(source_db)

        with pytest.raises(TableMigrationException) as exc_info:
            migrator.migrate_table(patients_config(contains_pii=True), target_db)

        assert isinstance(exc_info.value.__cause__, MissingConfigurationException)
        assert target_db.count_rows('patients') == 0

    def test_pii_fields_are_encrypted(self, source_db, target_db, encryption):
        seed_patients(source_db, TWO_PATIENTS[:1])
        create_target(target_db)
        migrator = TableMigrator(source_db, encryption=encryption)

        migrator.migrate_table(patients_config(contains_pii=True), target_db)

        row = target_db.fetch_all('patients')[0]
        assert row['nhs_number'] != VALID_NHS_NUMBER
        assert encryption.decrypt_field(row['nhs_number']) == VALID_NHS_NUMBER
        assert row['nhs_number_encrypted'] is True
        assert row['name'] == 'Ada'


class TestDryRunAndCancellation:

    def test_dry_run_writes_nothing(self, source_db, target_db):
        seed_patients(source_db, TWO_PATIENTS)
        create_target(target_db)
        migrator = TableMigrator(source_db, MigrationOptions(dry_run=True))

        result = migrator.migrate_table(patients_config(contains_pii=True), None, 'resident-service')

        assert result.migrated_records == 1
        assert result.failed_records == 1
        assert target_db.count_rows('patients') == 0

    def test_cancelled_token_stops_migration(self, source_db, target_db):
        seed_patients(source_db, TWO_PATIENTS)
        create_target(target_db)
        token = CancellationToken()
        token.cancel("maintenance window closed")

        with pytest.raises(MigrationCancelledException, match="maintenance window closed"):
            TableMigrator(source_db, cancellation=token).migrate_table(patients_config(), target_db)

        assert target_db.count_rows('patients') == 0


def test_completion_is_published(source_db, target_db, events, audit):
    seed_patients(source_db, TWO_PATIENTS)
    create_target(target_db)
    migrator = TableMigrator(source_db, events=events, audit=audit)

    migrator.migrate_table(patients_config(), target_db, 'resident-service')

    payload = events.payloads('table_migration_completed')[0]
    assert payload['service_name'] == 'resident-service'
    assert payload['migrated_records'] == 1
    assert audit.events[0]['action'] == 'TABLE_MIGRATION_COMPLETED'
    assert audit.events[0]['entity_id'] == 'migration-resident-service-patients'


def test_unknown_record_keys_are_dropped(source_db, target_db):
    seed_patients(source_db, TWO_PATIENTS[:1])
    create_target(target_db)

    TableMigrator(source_db).migrate_table(patients_config(), target_db)

    # created_at/updated_at metadata has no target column here
    assert target_db.count_rows('patients') == 1
    assert 'created_at' not in target_db.fetch_all('patients')[0]
