"""
Backup Manager

Creates point-in-time backups of a pipeline's data in five stages: dump,
compress, encrypt, checksum and verify. Metadata is persisted after every
stage, so an interrupted backup is always visible with an honest status.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil

from care_migration.contracts.backup_service import (
    BackupConfiguration,
    BackupMetadata,
    BackupOptions,
    BackupPriority,
    BackupSchedule,
    BackupService,
    BackupSettings,
    BackupStatus,
    BackupType,
    VerificationStatus,
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
from care_migration.lib.exceptions import (
    BackupNotFoundException,
    BackupStageException,
    MigrationCancelledException,
    MissingConfigurationException,
)
from care_migration.lib.json_codec import json_dumps
from care_migration.services.backup_storage import (
    BackupStorage,
    compute_delta,
    delta_change_count,
    encode_full,
)

logger = logging.getLogger(__name__)

# Storage health thresholds, as a fraction of the volume in use
STORAGE_WARNING_RATIO = 0.7
STORAGE_CRITICAL_RATIO = 0.9

SCHEDULE_FREQUENCIES = ('hourly', 'daily', 'weekly')

# (payload bytes, record count, table count, base backup id)
PayloadBuilder = Callable[[], Tuple[bytes, int, int, Optional[str]]]


def new_backup_id(prefix: str = 'backup') -> str:
    stamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
    return f"{prefix}_{stamp}_{uuid.uuid4().hex[:8]}"


class BackupManager(BackupService):
    """Implementation of BackupService over a BackupStorage directory"""

    def __init__(
        self,
        storage: BackupStorage,
        data_store: PipelineDataStore,
        settings: Optional[BackupSettings] = None,
        encryption: Optional[EncryptionService] = None,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditService] = None,
        notifications: Optional[NotificationService] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.storage = storage
        self.data_store = data_store
        self.settings = settings or BackupSettings(storage_path=str(storage.root))
        self.encryption = encryption
        self.events = events
        self.audit = audit
        self.notifications = notifications
        self.cancellation = cancellation or CancellationToken()

    # Creation

    def create_backup(self, pipeline_id: str, options: Optional[BackupOptions] = None) -> BackupConfiguration:
        options = options or BackupOptions()
        source_pipeline = options.snapshot_of or pipeline_id

        def build_payload():
            dataset = self.data_store.dump(source_pipeline)
            return encode_full(dataset), dataset.record_count, dataset.table_count, None

        return self._create(pipeline_id, BackupType.FULL, options, build_payload)

    def create_incremental_backup(self, pipeline_id: str,
                                  since_backup_id: Optional[str] = None) -> BackupConfiguration:
        base = self._find_base(pipeline_id, since_backup_id)
        options = BackupOptions(
            priority=BackupPriority.MEDIUM,
            description=f"Incremental backup since {base.backup_id}",
            tags=['incremental'],
        )
        return self._create(pipeline_id, BackupType.INCREMENTAL, options, self._delta_builder(pipeline_id, base))

    def create_differential_backup(self, pipeline_id: str) -> BackupConfiguration:
        """Back up every change since the most recent verified full backup"""
        bases = [m for m in self.storage.list_metadata(pipeline_id)
                 if m.is_restorable and m.backup_type is BackupType.FULL]
        if not bases:
            raise BackupNotFoundException(
                f"No verified full backup to base a differential backup on for pipeline {pipeline_id}",
                {'pipeline_id': pipeline_id}
            )

        base = bases[0]
        options = BackupOptions(
            priority=BackupPriority.MEDIUM,
            description=f"Differential backup since {base.backup_id}",
            tags=['differential'],
        )
        return self._create(pipeline_id, BackupType.DIFFERENTIAL, options, self._delta_builder(pipeline_id, base))

    def _find_base(self, pipeline_id: str, since_backup_id: Optional[str]) -> BackupMetadata:
        if since_backup_id:
            base = self.storage.load_metadata(since_backup_id)
            if base.pipeline_id != pipeline_id or not base.is_restorable:
                raise BackupNotFoundException(
                    f"Backup {since_backup_id} is not a completed, verified backup of pipeline {pipeline_id}",
                    {'pipeline_id': pipeline_id, 'backup_id': since_backup_id}
                )
            return base

        candidates = [m for m in self.storage.list_metadata(pipeline_id) if m.is_restorable]
        if not candidates:
            raise BackupNotFoundException(
                f"No completed, verified backup to base an incremental backup on for pipeline {pipeline_id}",
                {'pipeline_id': pipeline_id}
            )
        return candidates[0]

    def _delta_builder(self, pipeline_id: str, base: BackupMetadata) -> PayloadBuilder:
        def build_payload():
            base_dataset = self.storage.read_dataset(base, self.encryption)
            current = self.data_store.dump(pipeline_id)
            delta = compute_delta(base_dataset, current, base.backup_id)
            changed_tables = sum(
                1 for table in delta['tables'] if table['inserted'] or table['updated'] or table['deleted']
            )
            return json_dumps(delta).encode('utf-8'), delta_change_count(delta), changed_tables, base.backup_id

        return build_payload

    def _create(self, pipeline_id: str, backup_type: BackupType, options: BackupOptions,
                build_payload: PayloadBuilder) -> BackupConfiguration:
        compression = self._choose(options.compression_enabled, self.settings.compression_enabled)
        encryption = self._choose(options.encryption_enabled, self.settings.encryption_enabled)
        verification = self._choose(options.verification_enabled, self.settings.verification_enabled)
        retention_days = options.retention_days or self.settings.retention_for(backup_type)

        if encryption and self.encryption is None:
            raise MissingConfigurationException(
                "Backup encryption is enabled but BACKUP_ENCRYPTION_KEY is not configured"
            )

        created_at = datetime.now(timezone.utc)
        configuration = BackupConfiguration(
            backup_id=new_backup_id(),
            pipeline_id=pipeline_id,
            created_at=created_at,
            backup_type=backup_type,
            compression_enabled=compression,
            encryption_enabled=encryption,
            retention_policy=retention_days,
            verification_enabled=verification,
            backup_location=str(self.storage.type_dir(backup_type)),
            priority=options.priority,
        )

        tags = list(options.tags or [])
        if backup_type is not BackupType.FULL and backup_type.value not in tags:
            tags.append(backup_type.value)

        metadata = BackupMetadata(
            backup_id=configuration.backup_id,
            pipeline_id=pipeline_id,
            created_at=created_at,
            tags=tags,
            description=options.description or f"{backup_type.value.capitalize()} backup of {pipeline_id}",
            backup_type=backup_type,
            retention_days=retention_days,
            snapshot_of=options.snapshot_of,
        )
        self.storage.save_metadata(metadata)

        logger.info(f"Starting {backup_type.value} backup {metadata.backup_id} for pipeline {pipeline_id}")
        self._emit('backup_started', {
            'backup_id': metadata.backup_id,
            'pipeline_id': pipeline_id,
            'backup_type': backup_type.value,
        })

        self._run_stages(configuration, metadata, build_payload)
        return configuration

    @staticmethod
    def _choose(override: Optional[bool], default: bool) -> bool:
        return default if override is None else override

    def _run_stages(self, configuration: BackupConfiguration, metadata: BackupMetadata,
                    build_payload: PayloadBuilder) -> None:
        stage = 'dump'
        start_time = time.time()

        try:
            self.cancellation.raise_if_cancelled(f"backup {metadata.backup_id} {stage}")
            payload, record_count, table_count, base_backup_id = build_payload()
            path = self.storage.write_new(
                self.storage.artifact_path(metadata.backup_id, metadata.backup_type),
                payload
            )
            metadata.record_count = record_count
            metadata.table_count = table_count
            metadata.base_backup_id = base_backup_id
            metadata.backup_size = path.stat().st_size
            self._stage_done(metadata, stage, 20)

            if configuration.compression_enabled:
                stage = 'compress'
                self.cancellation.raise_if_cancelled(f"backup {metadata.backup_id} {stage}")
                original_size = path.stat().st_size
                path = self.storage.compress_artifact(path, self.settings.compression_level)
                metadata.compression_ratio = (path.stat().st_size / original_size) if original_size else 1.0
                metadata.backup_size = path.stat().st_size
                self._stage_done(metadata, stage, 40)

            if configuration.encryption_enabled:
                stage = 'encrypt'
                self.cancellation.raise_if_cancelled(f"backup {metadata.backup_id} {stage}")
                ciphertext = self.encryption.encrypt(path.read_bytes())
                destination = path.with_name(path.name + '.enc')
                path = self.storage.replace_artifact(path, destination, ciphertext)
                metadata.encryption_algorithm = self.encryption.algorithm
                metadata.backup_size = path.stat().st_size
                self._stage_done(metadata, stage, 60)

            stage = 'checksum'
            self.cancellation.raise_if_cancelled(f"backup {metadata.backup_id} {stage}")
            checksums = file_checksums(path)
            metadata.checksum_md5 = checksums['md5']
            metadata.checksum_sha256 = checksums['sha256']
            metadata.backup_size = path.stat().st_size
            metadata.status = BackupStatus.COMPLETED
            metadata.completed_at = datetime.now(timezone.utc)
            self._stage_done(metadata, stage, 80)

            if configuration.verification_enabled:
                stage = 'verify'
                self.cancellation.raise_if_cancelled(f"backup {metadata.backup_id} {stage}")
                metadata.verification_status = self._verify(metadata)
                self._stage_done(metadata, stage, 100)

        except Exception as e:
            self._fail(metadata, stage, e)
            if isinstance(e, MigrationCancelledException):
                raise
            raise BackupStageException(
                f"Backup {metadata.backup_id} failed during {stage}: {e}",
                {'backup_id': metadata.backup_id, 'stage': stage, 'pipeline_id': metadata.pipeline_id}
            ) from e

        duration = time.time() - start_time
        logger.info(
            f"Backup {metadata.backup_id} completed in {duration:.2f}s: "
            f"{metadata.record_count} records, {metadata.backup_size} bytes, "
            f"verification {metadata.verification_status.value}"
        )
        self._emit('backup_completed', {
            'backup_id': metadata.backup_id,
            'pipeline_id': metadata.pipeline_id,
            'duration': duration,
            'size': metadata.backup_size,
            'verification_status': metadata.verification_status.value,
        })
        if self.audit:
            self.audit.log_event('BACKUP_CREATED', 'MigrationBackup', metadata.backup_id, {
                'pipeline_id': metadata.pipeline_id,
                'backup_type': metadata.backup_type.value,
                'record_count': metadata.record_count,
                'backup_size': metadata.backup_size,
                'verification_status': metadata.verification_status.value,
            }, user_id='backup_system')

    def _stage_done(self, metadata: BackupMetadata, stage: str, percent: int) -> None:
        self.storage.save_metadata(metadata)
        logger.debug(f"Backup {metadata.backup_id}: {stage} done ({percent}%)")
        self._emit('backup_progress', {
            'backup_id': metadata.backup_id,
            'stage': stage,
            'progress': percent,
        })

    def _verify(self, metadata: BackupMetadata) -> VerificationStatus:
        """Re-read the final artifact and compare its checksums with the recorded ones"""
        path = self.storage.artifact_path_for(metadata)
        if not path.exists():
            logger.error(f"Backup {metadata.backup_id} verification failed: artifact missing")
            return VerificationStatus.FAILED

        actual = file_checksums(path)
        expected = {'md5': metadata.checksum_md5, 'sha256': metadata.checksum_sha256}
        if checksums_match(expected, actual):
            return VerificationStatus.VERIFIED

        logger.error(f"Backup {metadata.backup_id} verification failed: checksum mismatch")
        return VerificationStatus.FAILED

    def _fail(self, metadata: BackupMetadata, stage: str, error: Exception) -> None:
        logger.error(f"Backup {metadata.backup_id} failed during {stage}: {error}")
        metadata.status = BackupStatus.FAILED
        metadata.completed_at = datetime.now(timezone.utc)
        try:
            self.storage.delete_artifacts(metadata.backup_id)
        except OSError as cleanup_error:
            logger.error(f"Could not remove partial artifacts of {metadata.backup_id}: {cleanup_error}")
        metadata.backup_size = 0
        self.storage.save_metadata(metadata)

        self._emit('backup_failed', {
            'backup_id': metadata.backup_id,
            'pipeline_id': metadata.pipeline_id,
            'stage': stage,
            'error': str(error),
        })
        if self.audit:
            self.audit.log_event('BACKUP_FAILED', 'MigrationBackup', metadata.backup_id, {
                'pipeline_id': metadata.pipeline_id,
                'stage': stage,
                'error': str(error),
            }, user_id='backup_system')

    # Queries

    def list_backups(self, pipeline_id: str) -> List[BackupMetadata]:
        return self.storage.list_metadata(pipeline_id)

    def get_backup(self, backup_id: str) -> BackupMetadata:
        return self.storage.load_metadata(backup_id)

    def get_backup_statistics(self) -> Dict[str, Any]:
        """
        Summarize every persisted backup and the health of the backup volume

        Returns:
            Dictionary with counts, sizes, date range, per-type counts,
            storage usage and a healthy/warning/critical status
        """
        backups = self.storage.list_metadata()
        by_type: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        for metadata in backups:
            by_type[metadata.backup_type.value] = by_type.get(metadata.backup_type.value, 0) + 1
            by_status[metadata.status.value] = by_status.get(metadata.status.value, 0) + 1

        disk = psutil.disk_usage(str(self.storage.root))
        used_ratio = disk.used / disk.total if disk.total else 0.0
        if used_ratio > STORAGE_CRITICAL_RATIO:
            health_status = 'critical'
        elif used_ratio > STORAGE_WARNING_RATIO:
            health_status = 'warning'
        else:
            health_status = 'healthy'

        return {
            'total_backups': len(backups),
            'total_size': sum(m.backup_size for m in backups),
            'oldest_backup': backups[-1].created_at if backups else None,
            'newest_backup': backups[0].created_at if backups else None,
            'backups_by_type': by_type,
            'backups_by_status': by_status,
            'storage_usage': {
                'backup_bytes': self.storage.used_bytes(),
                'used': disk.used,
                'available': disk.free,
                'total': disk.total,
            },
            'health_status': health_status,
        }

    # Schedules and configuration

    def schedule_automated_backups(self, schedule: BackupSchedule) -> str:
        """
        Record a recurring backup schedule

        Returns:
            The new schedule id
        """
        if schedule.frequency not in SCHEDULE_FREQUENCIES:
            raise ValueError(f"Unsupported backup frequency: {schedule.frequency}")

        schedule_id = str(uuid.uuid4())
        details = {
            'pipeline_id': schedule.pipeline_id,
            'frequency': schedule.frequency,
            'retention_days': schedule.retention_days,
            'compression_enabled': schedule.compression_enabled,
            'encryption_enabled': schedule.encryption_enabled,
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

        schedules = self.storage.load_schedules()
        schedules[schedule_id] = details
        self.storage.save_schedules(schedules)

        logger.info(f"Scheduled {schedule.frequency} automated backups for pipeline {schedule.pipeline_id}")
        if self.audit:
            self.audit.log_event('SCHEDULE_CREATED', 'BackupSchedule', schedule_id, details,
                                 user_id='backup_system')
        if self.notifications:
            self.notifications.send_notification(
                'Automated backups scheduled',
                f"{schedule.frequency.capitalize()} backups scheduled for pipeline {schedule.pipeline_id}",
                dict(details, schedule_id=schedule_id),
                priority='low'
            )
        return schedule_id

    def list_schedules(self) -> Dict[str, Dict[str, Any]]:
        return self.storage.load_schedules()

    def export_backup_configuration(self) -> Dict[str, Any]:
        """Backup settings and schedules, for disaster-recovery documentation"""
        return {
            'version': '1.0',
            'exported_at': datetime.now(timezone.utc).isoformat(),
            'backup_storage': str(Path(self.settings.storage_path).resolve()),
            'retention_policies': dict(self.settings.retention_days),
            'compression_settings': {
                'enabled': self.settings.compression_enabled,
                'level': self.settings.compression_level,
                'algorithm': 'gzip',
            },
            'encryption_settings': {
                'enabled': self.settings.encryption_enabled,
                'algorithm': self.encryption.algorithm if self.encryption else None,
            },
            'verification_settings': {
                'enabled': self.settings.verification_enabled,
                'checksum_algorithms': ['MD5', 'SHA256'],
                'integrity_checks': ['record_count', 'foreign_keys', 'constraints', 'data_types'],
            },
            'schedules': self.storage.load_schedules(),
        }

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.events:
            self.events.emit(event_name, payload)
