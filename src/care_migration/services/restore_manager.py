"""
Restore Manager

One-click rollback: finds the latest verified backup of a pipeline, checks
the artifact's checksums before touching live data, optionally snapshots the
current state, replays the backup, and runs post-restore integrity checks.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from care_migration.contracts.backup_service import (
    BackupMetadata,
    BackupOptions,
    BackupPriority,
    IntegrityCheckResult,
    IntegrityCheckType,
    IntegrityStatus,
    RestoreOptions,
    RestoreResult,
    RestoreService,
    RestoreStatus,
)
from care_migration.contracts.collaborators import (
    AuditService,
    EventPublisher,
    NotificationService,
    PipelineDataStore,
)
from care_migration.lib.cancellation import CancellationToken
from care_migration.lib.checksum import checksums_match, file_checksums
from care_migration.lib.crypto import EncryptionService
from care_migration.lib.exceptions import BackupNotFoundException, IntegrityCheckException
from care_migration.lib.performance_monitor import BYTES_PER_MB, PerformanceMonitor
from care_migration.services.backup_manager import BackupManager
from care_migration.services.backup_storage import BackupStorage

logger = logging.getLogger(__name__)

PRE_ROLLBACK_SUFFIX = '_pre_rollback'


class RestoreManager(RestoreService):
    """Implementation of RestoreService"""

    def __init__(
        self,
        storage: BackupStorage,
        data_store: PipelineDataStore,
        backup_manager: BackupManager,
        encryption: Optional[EncryptionService] = None,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditService] = None,
        notifications: Optional[NotificationService] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.storage = storage
        self.data_store = data_store
        self.backup_manager = backup_manager
        self.encryption = encryption
        self.events = events
        self.audit = audit
        self.notifications = notifications
        self.cancellation = cancellation or CancellationToken()

    def find_latest_verified_backup(self, pipeline_id: str) -> BackupMetadata:
        """
        Most recent completed, verified backup of a pipeline

        Raises:
            BackupNotFoundException: If there is none
        """
        for metadata in self.storage.list_metadata(pipeline_id):
            if metadata.is_restorable:
                return metadata

        raise BackupNotFoundException(
            f"No verified backup found for pipeline {pipeline_id}",
            {'pipeline_id': pipeline_id}
        )

    def _select_backup(self, pipeline_id: str, options: RestoreOptions) -> BackupMetadata:
        if not options.backup_id:
            return self.find_latest_verified_backup(pipeline_id)

        metadata = self.storage.load_metadata(options.backup_id)
        if metadata.pipeline_id != pipeline_id or not metadata.is_restorable:
            raise BackupNotFoundException(
                f"Backup {options.backup_id} is not a completed, verified backup of pipeline {pipeline_id}",
                {'pipeline_id': pipeline_id, 'backup_id': options.backup_id}
            )
        return metadata

    def restore(self, pipeline_id: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        options = options or RestoreOptions()
        restore_id = str(uuid.uuid4())
        monitor = PerformanceMonitor()
        start_time = time.time()

        logger.info(f"Starting restore {restore_id} for pipeline {pipeline_id}")
        self._emit('rollback_started', {'restore_id': restore_id, 'pipeline_id': pipeline_id})

        try:
            backup = self._select_backup(pipeline_id, options)
        except BackupNotFoundException as e:
            logger.error(f"Restore {restore_id} aborted: {e}")
            self._emit('rollback_failed', {'restore_id': restore_id, 'pipeline_id': pipeline_id, 'error': str(e)})
            raise

        # pre-rollback snapshots are replayed into the pipeline they were taken of
        target_pipeline = backup.snapshot_of or pipeline_id
        result = RestoreResult(restore_id=restore_id, backup_id=backup.backup_id,
                               started_at=datetime.now(timezone.utc))
        pre_restore_backup_id: Optional[str] = None
        stage = 'verify'

        try:
            if options.verify_integrity:
                self._progress(restore_id, stage, 10)
                checksum_check = self._verify_checksums(backup)
                result.add_check(checksum_check)
                if checksum_check.status is IntegrityStatus.FAILED:
                    raise IntegrityCheckException(
                        f"Backup {backup.backup_id} failed checksum verification",
                        {'backup_id': backup.backup_id}
                    )
            monitor.sample()

            if options.preserve_current_data and not options.create_test_restore:
                stage = 'preserve'
                self.cancellation.raise_if_cancelled(f"restore {restore_id} {stage}")
                self._progress(restore_id, stage, 20)
                pre_restore_backup_id = self._snapshot_current(target_pipeline, restore_id)
                monitor.sample()

            stage = 'decode'
            self.cancellation.raise_if_cancelled(f"restore {restore_id} {stage}")
            self._progress(restore_id, stage, 40)
            dataset = self.storage.read_dataset(backup, self.encryption)
            monitor.sample()

            if options.create_test_restore:
                result.warnings.append('Test restore: artifact decoded and checked, live data untouched')
                result.add_check(self._dataset_count_check(backup, dataset.record_count))
            else:
                stage = 'replay'
                self.cancellation.raise_if_cancelled(f"restore {restore_id} {stage}")
                self._progress(restore_id, stage, 60)
                self.data_store.replay(target_pipeline, dataset)
                monitor.sample()

                stage = 'integrity'
                self._progress(restore_id, stage, 80)
                for check in self.data_store.integrity_checks(target_pipeline, dataset):
                    result.add_check(check)

            for check in result.integrity_check_results:
                if check.status is IntegrityStatus.WARNING:
                    result.warnings.append(f"{check.check_type.value}: {check.details}")

            failed = result.failed_checks()
            if failed:
                raise IntegrityCheckException(
                    f"Post-restore integrity checks failed: {', '.join(c.check_type.value for c in failed)}",
                    {'backup_id': backup.backup_id}
                )

            result.status = RestoreStatus.COMPLETED
            result.records_restored = dataset.record_count
            result.tables_restored = dataset.table_count

        except Exception as e:
            result.status = RestoreStatus.FAILED
            result.errors.append(str(e))
            logger.error(f"Restore {restore_id} failed during {stage}: {e}")

            if options.rollback_on_failure and pre_restore_backup_id:
                self._rollback_to_snapshot(result, pre_restore_backup_id, pipeline_id)

        result.completed_at = datetime.now(timezone.utc)
        result.performance_metrics = self._metrics(monitor, start_time, backup, result)
        self._finish(pipeline_id, result, options)
        return result

    def _verify_checksums(self, backup: BackupMetadata) -> IntegrityCheckResult:
        path = self.storage.artifact_path_for(backup)
        expected = {'md5': backup.checksum_md5, 'sha256': backup.checksum_sha256}

        if not path.exists():
            return IntegrityCheckResult(
                check_type=IntegrityCheckType.CHECKSUM,
                status=IntegrityStatus.FAILED,
                details=f"Backup artifact missing: {path.name}",
                expected_value=expected,
            )

        actual = file_checksums(path)
        passed = checksums_match(expected, actual)
        return IntegrityCheckResult(
            check_type=IntegrityCheckType.CHECKSUM,
            status=IntegrityStatus.PASSED if passed else IntegrityStatus.FAILED,
            details='Checksum verification passed' if passed else 'Checksum mismatch detected',
            expected_value=expected,
            actual_value=actual,
        )

    def _dataset_count_check(self, backup: BackupMetadata, decoded_records: int) -> IntegrityCheckResult:
        # delta artifacts record the change count, not the materialized size
        if backup.base_backup_id:
            return IntegrityCheckResult(
                check_type=IntegrityCheckType.RECORD_COUNT,
                status=IntegrityStatus.PASSED,
                details=f"Backup chain materialized to {decoded_records} records",
                actual_value=decoded_records,
            )

        passed = decoded_records == backup.record_count
        return IntegrityCheckResult(
            check_type=IntegrityCheckType.RECORD_COUNT,
            status=IntegrityStatus.PASSED if passed else IntegrityStatus.FAILED,
            details='Decoded record count matches metadata' if passed else 'Decoded record count differs from metadata',
            expected_value=backup.record_count,
            actual_value=decoded_records,
        )

    def _snapshot_current(self, pipeline_id: str, restore_id: str) -> str:
        configuration = self.backup_manager.create_backup(
            f"{pipeline_id}{PRE_ROLLBACK_SUFFIX}",
            BackupOptions(
                priority=BackupPriority.CRITICAL,
                description=f"Pre-rollback snapshot for restore {restore_id}",
                tags=['pre_rollback', 'automated'],
                snapshot_of=pipeline_id,
                verification_enabled=True,
            )
        )
        logger.info(f"Pre-restore snapshot {configuration.backup_id} created for pipeline {pipeline_id}")
        return configuration.backup_id

    def _rollback_to_snapshot(self, result: RestoreResult, snapshot_id: str, pipeline_id: str) -> None:
        """Return the pipeline to its pre-restore state after a failed restore"""
        logger.warning(f"Restore {result.restore_id} failed; restoring pre-restore snapshot {snapshot_id}")

        try:
            snapshot = self.storage.load_metadata(snapshot_id)
            dataset = self.storage.read_dataset(snapshot, self.encryption)
            self.data_store.replay(snapshot.snapshot_of or pipeline_id, dataset)
        except Exception as rollback_error:
            result.errors.append(f"Rollback to pre-restore snapshot failed: {rollback_error}")
            logger.error(f"Rollback of restore {result.restore_id} failed: {rollback_error}")
            return

        result.status = RestoreStatus.ROLLED_BACK
        result.warnings.append(f"Pipeline returned to pre-restore snapshot {snapshot_id}")

    def _metrics(self, monitor: PerformanceMonitor, start_time: float, backup: BackupMetadata,
                 result: RestoreResult):
        duration = time.time() - start_time
        size_mb = backup.backup_size / BYTES_PER_MB
        metrics = result.performance_metrics
        metrics.total_duration = duration * 1000
        metrics.data_transfer_rate = size_mb / duration if duration > 0 else 0.0
        metrics.records_per_second = result.records_restored / duration if duration > 0 else 0.0
        metrics.peak_memory_usage = monitor.get_peak_memory_mb()
        metrics.disk_space_used = size_mb
        return metrics

    def _finish(self, pipeline_id: str, result: RestoreResult, options: RestoreOptions) -> None:
        succeeded = result.status is RestoreStatus.COMPLETED
        payload = {
            'restore_id': result.restore_id,
            'pipeline_id': pipeline_id,
            'backup_id': result.backup_id,
            'status': result.status.value,
            'records_restored': result.records_restored,
            'errors': list(result.errors),
        }

        if succeeded:
            logger.info(
                f"Restore {result.restore_id} completed: {result.records_restored} records "
                f"in {result.tables_restored} tables"
            )
            self._emit('rollback_completed', payload)
        else:
            self._emit('rollback_failed', payload)

        if self.audit:
            self.audit.log_event(
                'RESTORE_COMPLETED' if succeeded else 'RESTORE_FAILED',
                'MigrationRestore',
                result.restore_id,
                payload,
                user_id='backup_system'
            )

        if options.notify_on_completion and self.notifications:
            self.notifications.send_notification(
                'Restore completed' if succeeded else 'Restore failed',
                (f"Pipeline {pipeline_id} restored from backup {result.backup_id}" if succeeded
                 else f"Restore of pipeline {pipeline_id} ended {result.status.value}: {'; '.join(result.errors)}"),
                {'restore_result': payload},
                priority='medium' if succeeded else 'critical'
            )

    def run_restore_drill(self, pipeline_id: str) -> Dict[str, Any]:
        """
        Exercise the backup and restore path without touching live data

        Creates a throwaway backup, restores it in test mode and reports
        how each part went.
        """
        report = {
            'backup_test': {'success': False, 'duration': 0.0, 'size': 0},
            'restore_test': {'success': False, 'duration': 0.0, 'records_restored': 0},
            'integrity_test': {'success': False, 'checksum_match': False, 'data_integrity': False},
        }

        backup_start = time.time()
        configuration = self.backup_manager.create_backup(pipeline_id, BackupOptions(
            priority=BackupPriority.LOW,
            description='Test backup procedure',
            tags=['test', 'verification'],
            verification_enabled=True,
        ))
        backup = self.storage.load_metadata(configuration.backup_id)
        report['backup_test'] = {
            'success': backup.is_restorable,
            'duration': time.time() - backup_start,
            'size': backup.backup_size,
        }

        restore_start = time.time()
        result = self.restore(pipeline_id, RestoreOptions(
            verify_integrity=True,
            create_test_restore=True,
            notify_on_completion=False,
            rollback_on_failure=False,
            preserve_current_data=False,
            backup_id=configuration.backup_id,
        ))
        report['restore_test'] = {
            'success': result.status is RestoreStatus.COMPLETED,
            'duration': time.time() - restore_start,
            'records_restored': result.records_restored,
        }
        report['integrity_test'] = {
            'success': all(c.status is IntegrityStatus.PASSED for c in result.integrity_check_results),
            'checksum_match': any(
                c.check_type is IntegrityCheckType.CHECKSUM and c.status is IntegrityStatus.PASSED
                for c in result.integrity_check_results
            ),
            'data_integrity': not result.errors,
        }

        logger.info(f"Restore drill for {pipeline_id}: {report}")
        return report

    def _progress(self, restore_id: str, stage: str, percent: int) -> None:
        self._emit('rollback_progress', {'restore_id': restore_id, 'stage': stage, 'progress': percent})

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.events:
            self.events.emit(event_name, payload)
