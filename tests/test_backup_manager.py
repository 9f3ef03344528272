"""
Tests for BackupManager

Staged backup creation, failure handling, incremental and differential
chains, statistics and schedules.
"""

import gzip
import re

import pytest
from sqlalchemy import delete, insert, update

from care_migration.contracts.backup_service import (
    BackupOptions,
    BackupSchedule,
    BackupSettings,
    BackupStatus,
    BackupType,
    VerificationStatus,
)
from care_migration.lib.exceptions import (
    BackupNotFoundException,
    BackupStageException,
    MissingConfigurationException,
)
from care_migration.services.backup_manager import BackupManager


def mutate_care_data(care_db):
    """One update, one insert and one delete against the seeded data"""
    residents = care_db.get_table('residents')
    contacts = care_db.get_table('emergency_contacts')
    with care_db.transaction() as session:
        session.execute(update(residents).where(residents.c.resident_id == 1).values(first_name='Renamed'))
        session.execute(insert(residents), [{'resident_id': 101, 'first_name': 'Newcomer'}])
        session.execute(delete(contacts).where(contacts.c.contact_id == 10))


class TestFullBackup:

    def test_backup_of_seeded_pipeline(self, backup_manager, storage, events, audit):
        configuration = backup_manager.create_backup('resident-service')

        metadata = backup_manager.get_backup(configuration.backup_id)
        assert metadata.status is BackupStatus.COMPLETED
        assert metadata.verification_status is VerificationStatus.VERIFIED
        assert metadata.is_restorable
        assert metadata.record_count == 110
        assert metadata.table_count == 2
        assert metadata.backup_size > 0
        assert re.fullmatch(r'[0-9a-f]{64}', metadata.checksum_sha256)
        assert re.fullmatch(r'[0-9a-f]{32}', metadata.checksum_md5)
        assert metadata.encryption_algorithm == 'AES-256-GCM'
        assert metadata.compression_ratio is not None

        artifact = storage.artifact_path_for(metadata)
        assert artifact.name == f"{configuration.backup_id}.backup.gz.enc"
        assert artifact.stat().st_size == metadata.backup_size
        assert list((storage.root / 'temp').iterdir()) == []

        stages = [payload['stage'] for payload in events.payloads('backup_progress')]
        assert stages == ['dump', 'compress', 'encrypt', 'checksum', 'verify']
        assert events.names()[0] == 'backup_started'
        assert events.names()[-1] == 'backup_completed'
        assert audit.actions() == ['BACKUP_CREATED']

    def test_configuration_reflects_options(self, backup_manager):
        configuration = backup_manager.create_backup('resident-service', BackupOptions(
            compression_enabled=False,
            encryption_enabled=False,
            retention_days=90,
            tags=['manual'],
        ))

        assert not configuration.compression_enabled
        assert not configuration.encryption_enabled
        assert configuration.retention_policy == 90
        assert configuration.backup_type is BackupType.FULL

        metadata = backup_manager.get_backup(configuration.backup_id)
        assert metadata.tags == ['manual']
        assert metadata.retention_days == 90
        assert metadata.encryption_algorithm is None
        assert metadata.compression_ratio is None

    def test_compressed_artifact_is_gzip(self, backup_manager, storage):
        configuration = backup_manager.create_backup('resident-service', BackupOptions(encryption_enabled=False))

        metadata = backup_manager.get_backup(configuration.backup_id)
        document = gzip.decompress(storage.artifact_path_for(metadata).read_bytes())

        assert b'"kind": "full"' in document
        assert metadata.compression_ratio < 1

    def test_encryption_without_key(self, storage, data_store):
        manager = BackupManager(storage, data_store, settings=BackupSettings(storage_path=str(storage.root)))

        with pytest.raises(MissingConfigurationException):
            manager.create_backup('resident-service')

        assert manager.list_backups('resident-service') == []

    def test_unverified_backup_is_not_restorable(self, backup_manager):
        configuration = backup_manager.create_backup(
            'resident-service', BackupOptions(verification_enabled=False)
        )

        metadata = backup_manager.get_backup(configuration.backup_id)
        assert metadata.status is BackupStatus.COMPLETED
        assert metadata.verification_status is VerificationStatus.PENDING
        assert not metadata.is_restorable


class TestFailedBackup:

    def test_unknown_pipeline(self, backup_manager, storage, events, audit):
        with pytest.raises(BackupStageException) as exc_info:
            backup_manager.create_backup('nope-service')

        assert exc_info.value.details['stage'] == 'dump'
        backup_id = exc_info.value.details['backup_id']
        metadata = backup_manager.get_backup(backup_id)
        assert metadata.status is BackupStatus.FAILED
        assert metadata.backup_size == 0
        assert storage.existing_artifacts(backup_id) == []
        assert 'backup_failed' in events.names()
        assert audit.actions() == ['BACKUP_FAILED']

    def test_failure_during_encryption_removes_partial_artifact(self, backup_manager, storage, monkeypatch):
        def broken_encrypt(payload, associated_data=None):
            raise RuntimeError("hardware security module offline")

        monkeypatch.setattr(backup_manager.encryption, 'encrypt', broken_encrypt)

        with pytest.raises(BackupStageException, match="during encrypt") as exc_info:
            backup_manager.create_backup('resident-service')

        backup_id = exc_info.value.details['backup_id']
        assert storage.existing_artifacts(backup_id) == []
        assert backup_manager.get_backup(backup_id).status is BackupStatus.FAILED


class TestChains:

    def test_incremental_records_only_changes(self, backup_manager, storage, encryption, care_db):
        full = backup_manager.create_backup('resident-service')
        mutate_care_data(care_db)

        configuration = backup_manager.create_incremental_backup('resident-service')

        metadata = backup_manager.get_backup(configuration.backup_id)
        assert metadata.backup_type is BackupType.INCREMENTAL
        assert metadata.base_backup_id == full.backup_id
        assert metadata.record_count == 3
        assert 'incremental' in metadata.tags
        assert metadata.is_restorable

        dataset = storage.read_dataset(metadata, encryption)
        residents = {row['resident_id']: row for row in dataset.table('residents').rows}
        assert len(residents) == 101
        assert residents[1]['first_name'] == 'Renamed'
        assert len(dataset.table('emergency_contacts').rows) == 9

    def test_incremental_chain_builds_on_latest(self, backup_manager, storage, encryption, care_db):
        backup_manager.create_backup('resident-service')
        first = backup_manager.create_incremental_backup('resident-service')
        mutate_care_data(care_db)

        second = backup_manager.create_incremental_backup('resident-service')

        metadata = backup_manager.get_backup(second.backup_id)
        assert metadata.base_backup_id == first.backup_id
        assert storage.read_dataset(metadata, encryption).record_count == 110

    def test_incremental_since_specific_backup(self, backup_manager):
        full = backup_manager.create_backup('resident-service')
        backup_manager.create_incremental_backup('resident-service')

        configuration = backup_manager.create_incremental_backup('resident-service', since_backup_id=full.backup_id)

        assert backup_manager.get_backup(configuration.backup_id).base_backup_id == full.backup_id

    def test_incremental_needs_a_verified_base(self, backup_manager):
        backup_manager.create_backup('resident-service', BackupOptions(verification_enabled=False))

        with pytest.raises(BackupNotFoundException):
            backup_manager.create_incremental_backup('resident-service')

    def test_differential_is_based_on_full_backup(self, backup_manager, storage, encryption, care_db):
        full = backup_manager.create_backup('resident-service')
        backup_manager.create_incremental_backup('resident-service')
        mutate_care_data(care_db)

        configuration = backup_manager.create_differential_backup('resident-service')

        metadata = backup_manager.get_backup(configuration.backup_id)
        assert metadata.backup_type is BackupType.DIFFERENTIAL
        assert metadata.base_backup_id == full.backup_id
        assert metadata.record_count == 3
        assert storage.artifact_path_for(metadata).parent.name == 'differential'

    def test_differential_without_full_backup(self, backup_manager):
        with pytest.raises(BackupNotFoundException):
            backup_manager.create_differential_backup('resident-service')


class TestQueries:

    def test_list_backups_newest_first(self, backup_manager):
        first = backup_manager.create_backup('resident-service')
        second = backup_manager.create_backup('resident-service')

        backups = backup_manager.list_backups('resident-service')

        assert [b.backup_id for b in backups] == [second.backup_id, first.backup_id]
        assert backup_manager.list_backups('other-service') == []

    def test_statistics(self, backup_manager):
        backup_manager.create_backup('resident-service')
        backup_manager.create_incremental_backup('resident-service')
        with pytest.raises(BackupStageException):
            backup_manager.create_backup('nope-service')

        stats = backup_manager.get_backup_statistics()

        assert stats['total_backups'] == 3
        assert stats['backups_by_type'] == {'full': 2, 'incremental': 1}
        assert stats['backups_by_status'] == {'completed': 2, 'failed': 1}
        assert stats['newest_backup'] >= stats['oldest_backup']
        assert stats['storage_usage']['backup_bytes'] == stats['total_size']
        assert stats['health_status'] in ('healthy', 'warning', 'critical')

    def test_statistics_when_empty(self, backup_manager):
        stats = backup_manager.get_backup_statistics()

        assert stats['total_backups'] == 0
        assert stats['oldest_backup'] is None
        assert stats['storage_usage']['backup_bytes'] == 0


class TestSchedules:

    def test_schedule_is_persisted(self, backup_manager, audit, notifications):
        schedule_id = backup_manager.schedule_automated_backups(BackupSchedule(
            pipeline_id='resident-service', frequency='daily', retention_days=30,
        ))

        schedules = backup_manager.list_schedules()
        assert schedules[schedule_id]['frequency'] == 'daily'
        assert audit.actions() == ['SCHEDULE_CREATED']
        assert len(notifications.sent) == 1

        exported = backup_manager.export_backup_configuration()
        assert schedule_id in exported['schedules']
        assert exported['encryption_settings']['algorithm'] == 'AES-256-GCM'

    def test_unknown_frequency(self, backup_manager):
        with pytest.raises(ValueError, match="Unsupported backup frequency"):
            backup_manager.schedule_automated_backups(BackupSchedule(
                pipeline_id='resident-service', frequency='fortnightly', retention_days=30,
            ))
