"""
Retention Cleaner

Periodic sweep that expires and deletes completed backups older than their
retention period. Backups still being created are never touched, and an
expired backup survives while a live incremental or differential backup
still builds on it.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from care_migration.contracts.backup_service import BackupMetadata, BackupStatus
from care_migration.contracts.collaborators import AuditService, EventPublisher
from care_migration.services.backup_storage import BackupStorage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class CleanupResult:
    deleted_backups: int = 0
    space_reclaimed: int = 0  # bytes
    deleted_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class RetentionCleaner:
    """Deletes expired backups on demand or on a fixed interval"""

    def __init__(
        self,
        storage: BackupStorage,
        interval_hours: float = 24,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditService] = None,
    ):
        self.storage = storage
        self.interval_seconds = interval_hours * 60 * 60
        self.events = events
        self.audit = audit
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @staticmethod
    def age_in_days(metadata: BackupMetadata, now: datetime) -> float:
        return (now - metadata.created_at).total_seconds() / SECONDS_PER_DAY

    def is_expired(self, metadata: BackupMetadata, now: datetime) -> bool:
        if metadata.status is BackupStatus.EXPIRED:
            return True
        if metadata.status is not BackupStatus.COMPLETED:
            return False
        return self.age_in_days(metadata, now) > metadata.retention_days

    def expired_backups(self, backups: List[BackupMetadata], now: datetime) -> List[BackupMetadata]:
        """
        Expired backups that no surviving backup still builds on

        A delta backup can only be decoded on top of its base, so an expired
        base stays until every backup in its chain has expired too.
        """
        by_id = {m.backup_id: m for m in backups}
        expired = {m.backup_id for m in backups if self.is_expired(m, now)}

        held = set()
        for metadata in backups:
            if metadata.backup_id in expired or metadata.status is BackupStatus.FAILED:
                continue
            base_id = metadata.base_backup_id
            while base_id and base_id not in held and base_id in by_id:
                held.add(base_id)
                base_id = by_id[base_id].base_backup_id

        for backup_id in sorted(expired & held):
            logger.info(f"Keeping expired backup {backup_id}: a newer backup still builds on it")

        return [m for m in backups if m.backup_id in expired and m.backup_id not in held]

    def run_once(self, now: Optional[datetime] = None) -> CleanupResult:
        """
        Sweep every persisted backup once

        Args:
            now: Reference time; defaults to the current UTC time

        Returns:
            CleanupResult with the deleted backup ids and bytes reclaimed
        """
        now = now or datetime.now(timezone.utc)
        result = CleanupResult()

        try:
            backups = self.storage.list_metadata()
            candidates = self.expired_backups(backups, now)

            for metadata in candidates:
                try:
                    result.space_reclaimed += self._delete(metadata, now)
                except OSError as e:
                    logger.error(f"Failed to delete expired backup {metadata.backup_id}: {e}")
                    result.errors.append(f"{metadata.backup_id}: {e}")
                    continue

                result.deleted_backups += 1
                result.deleted_ids.append(metadata.backup_id)

        except OSError as e:
            logger.error(f"Backup cleanup failed: {e}")
            self._emit('cleanup_failed', {'error': str(e)})
            raise

        if result.errors:
            self._emit('cleanup_failed', {
                'error': '; '.join(result.errors),
                'deleted_backups': result.deleted_backups,
            })
        else:
            self._emit('cleanup_completed', {
                'deleted_backups': result.deleted_backups,
                'space_reclaimed': result.space_reclaimed,
            })

        if result.deleted_backups:
            logger.info(
                f"Backup cleanup: deleted {result.deleted_backups} expired backups, "
                f"reclaimed {result.space_reclaimed / 1024 / 1024:.2f}MB"
            )
        return result

    def _delete(self, metadata: BackupMetadata, now: datetime) -> int:
        age_days = self.age_in_days(metadata, now)

        # marked first, so an interrupted sweep is finished by the next one
        if metadata.status is not BackupStatus.EXPIRED:
            metadata.status = BackupStatus.EXPIRED
            self.storage.save_metadata(metadata)

        reclaimed = self.storage.delete_artifacts(metadata.backup_id)
        self.storage.delete_metadata(metadata.backup_id)

        if self.audit:
            self.audit.log_event('BACKUP_EXPIRED_DELETED', 'MigrationBackup', metadata.backup_id, {
                'pipeline_id': metadata.pipeline_id,
                'age_days': round(age_days, 2),
                'retention_days': metadata.retention_days,
                'backup_size': metadata.backup_size,
            }, user_id='backup_system')

        logger.debug(f"Deleted expired backup {metadata.backup_id} ({age_days:.1f} days old)")
        return reclaimed

    # Background scheduling

    def start(self) -> None:
        """Run ``run_once`` every interval on a daemon thread until ``stop()``"""
        if self._thread and self._thread.is_alive():
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='retention-cleaner', daemon=True)
        self._thread.start()
        logger.info(f"Retention cleaner started, interval {self.interval_seconds / 3600:.1f}h")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except OSError as e:
                logger.error(f"Scheduled backup cleanup failed: {e}")

    def _emit(self, event_name: str, payload: dict) -> None:
        if self.events:
            self.events.emit(event_name, payload)
