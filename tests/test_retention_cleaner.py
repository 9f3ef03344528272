import time
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from care_migration.contracts.backup_service import BackupMetadata, BackupStatus, BackupType, RestoreStatus
from care_migration.services.retention_cleaner import RetentionCleaner


def stored_backup(storage, backup_id, created_at, status=BackupStatus.COMPLETED, retention_days=30,
                  size=1024, backup_type=BackupType.FULL, base_backup_id=None):
    """Persist metadata plus a dummy artifact of ``size`` bytes"""
    storage.write_new(storage.artifact_path(backup_id, backup_type), b'x' * size)
    metadata = BackupMetadata(
        backup_id=backup_id,
        pipeline_id='resident-service',
        created_at=created_at,
        status=status,
        backup_size=size,
        retention_days=retention_days,
        backup_type=backup_type,
        base_backup_id=base_backup_id,
    )
    storage.save_metadata(metadata)
    return metadata


@pytest.fixture
def cleaner(storage, events, audit):
    return RetentionCleaner(storage, events=events, audit=audit)


def test_deletes_only_expired_backups(cleaner, storage, utc_now, events, audit):
    stored_backup(storage, 'backup_old', utc_now - timedelta(days=31))
    stored_backup(storage, 'backup_recent', utc_now - timedelta(days=29))
    stored_backup(storage, 'backup_in_progress', utc_now - timedelta(days=40), status=BackupStatus.CREATING)
    stored_backup(storage, 'backup_marked', utc_now - timedelta(days=1), status=BackupStatus.EXPIRED, size=512)

    result = cleaner.run_once(utc_now)

    assert sorted(result.deleted_ids) == ['backup_marked', 'backup_old']
    assert result.deleted_backups == 2
    assert result.space_reclaimed == 1024 + 512
    assert result.errors == []

    remaining = {m.backup_id for m in storage.list_metadata()}
    assert remaining == {'backup_recent', 'backup_in_progress'}
    assert storage.existing_artifacts('backup_old') == []

    assert audit.actions() == ['BACKUP_EXPIRED_DELETED', 'BACKUP_EXPIRED_DELETED']
    assert events.payloads('cleanup_completed') == [{'deleted_backups': 2, 'space_reclaimed': 1536}]


class TestBackupChains:

    def test_expired_base_is_kept_while_a_delta_needs_it(self, cleaner, storage, utc_now):
        stored_backup(storage, 'backup_full', utc_now - timedelta(days=31))
        stored_backup(storage, 'backup_incr_1', utc_now - timedelta(days=8), retention_days=7,
                      backup_type=BackupType.INCREMENTAL, base_backup_id='backup_full')
        stored_backup(storage, 'backup_incr_2', utc_now - timedelta(days=2), retention_days=7,
                      backup_type=BackupType.INCREMENTAL, base_backup_id='backup_incr_1')

        result = cleaner.run_once(utc_now)

        assert result.deleted_ids == []
        remaining = {m.backup_id for m in storage.list_metadata()}
        assert remaining == {'backup_full', 'backup_incr_1', 'backup_incr_2'}

    def test_chain_goes_once_every_member_has_expired(self, cleaner, storage, utc_now):
        stored_backup(storage, 'backup_full', utc_now - timedelta(days=40))
        stored_backup(storage, 'backup_incr', utc_now - timedelta(days=9), retention_days=7,
                      backup_type=BackupType.INCREMENTAL, base_backup_id='backup_full')

        result = cleaner.run_once(utc_now)

        assert sorted(result.deleted_ids) == ['backup_full', 'backup_incr']
        assert storage.list_metadata() == []

    def test_failed_delta_does_not_hold_its_base(self, cleaner, storage, utc_now):
        stored_backup(storage, 'backup_full', utc_now - timedelta(days=31))
        stored_backup(storage, 'backup_incr', utc_now - timedelta(days=1), status=BackupStatus.FAILED,
                      backup_type=BackupType.INCREMENTAL, base_backup_id='backup_full')

        assert cleaner.run_once(utc_now).deleted_ids == ['backup_full']

    def test_latest_delta_stays_restorable_after_a_sweep(self, backup_manager, restore_manager, storage,
                                                          care_db, cleaner):
        full = backup_manager.create_backup('resident-service')
        residents = care_db.get_table('residents')
        with care_db.transaction() as session:
            session.execute(update(residents).where(residents.c.resident_id == 1).values(first_name='Renamed'))
        incremental = backup_manager.create_incremental_backup('resident-service')

        now = datetime.now(timezone.utc)
        for backup_id, age in ((full.backup_id, 31), (incremental.backup_id, 2)):
            metadata = storage.load_metadata(backup_id)
            metadata.created_at = now - timedelta(days=age)
            storage.save_metadata(metadata)

        assert cleaner.run_once(now).deleted_ids == []

        with care_db.transaction() as session:
            session.execute(update(residents).values(first_name='Overwritten'))
        result = restore_manager.restore('resident-service')

        assert result.status is RestoreStatus.COMPLETED, result.errors
        assert result.backup_id == incremental.backup_id
        assert {row['first_name'] for row in care_db.fetch_all('residents')} >= {'Renamed'}
        assert 'Overwritten' not in {row['first_name'] for row in care_db.fetch_all('residents')}


def test_per_backup_retention(cleaner, storage, utc_now):
    stored_backup(storage, 'backup_incremental', utc_now - timedelta(days=8), retention_days=7)

    assert cleaner.run_once(utc_now).deleted_ids == ['backup_incremental']


def test_nothing_to_delete(cleaner, storage, utc_now, events):
    stored_backup(storage, 'backup_recent', utc_now - timedelta(days=2))

    result = cleaner.run_once(utc_now)

    assert result.deleted_backups == 0
    assert events.names() == ['cleanup_completed']


def test_failed_deletion_is_reported(cleaner, storage, utc_now, events, monkeypatch):
    stored_backup(storage, 'backup_old', utc_now - timedelta(days=31))

    def refuse(backup_id):
        raise PermissionError("read-only volume")

    monkeypatch.setattr(storage, 'delete_artifacts', refuse)

    result = cleaner.run_once(utc_now)

    assert result.deleted_backups == 0
    assert result.errors == ['backup_old: read-only volume']
    assert events.names() == ['cleanup_failed']
    # marked, so the next sweep retries it
    assert storage.load_metadata('backup_old').status is BackupStatus.EXPIRED


def test_background_sweep(storage):
    stored_backup(storage, 'backup_old', datetime.now(timezone.utc) - timedelta(days=31))
    cleaner = RetentionCleaner(storage, interval_hours=0.01 / 3600)

    cleaner.start()
    try:
        assert cleaner.running
        deadline = time.time() + 5
        while storage.list_metadata() and time.time() < deadline:
            time.sleep(0.01)
    finally:
        cleaner.stop(timeout=5)

    assert not cleaner.running
    assert storage.list_metadata() == []
