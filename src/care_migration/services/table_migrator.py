"""
Table Migrator

Moves one logical table from the legacy source store into a service's target
store: paginated reads, per-record transformation and validation, PII field
encryption, and one transaction per batch write.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from care_migration.contracts.collaborators import AuditService, EventPublisher
from care_migration.contracts.migration_engine_service import (
    BatchOutcome,
    MigrationOptions,
    MigrationResult,
    MigrationStatus,
    MigrationTableConfig,
)
from care_migration.lib.cancellation import CancellationToken
from care_migration.lib.crypto import EncryptionService
from care_migration.lib.db_manager import DatabaseManager
from care_migration.lib.exceptions import (
    BatchWriteException,
    MigrationCancelledException,
    MissingConfigurationException,
    TableMigrationException,
)
from care_migration.lib.transforms import add_migration_metadata, transform_record
from care_migration.lib.validators import validate_record
from care_migration.services.progress import ProgressTracker

logger = logging.getLogger(__name__)

ENCRYPTED_FLAG_SUFFIX = '_encrypted'


class TableMigrator:
    """
    Migrates single tables with a fixed set of options

    One instance may serve every table of a run; it holds no per-table state.
    """

    def __init__(
        self,
        source_db: DatabaseManager,
        options: Optional[MigrationOptions] = None,
        encryption: Optional[EncryptionService] = None,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditService] = None,
        tracker: Optional[ProgressTracker] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.source_db = source_db
        self.options = options or MigrationOptions()
        self.encryption = encryption
        self.events = events
        self.audit = audit
        self.tracker = tracker
        self.cancellation = cancellation or CancellationToken()

    def migrate_table(
        self,
        config: MigrationTableConfig,
        target_db: Optional[DatabaseManager],
        service_name: str = ""
    ) -> MigrationResult:
        """
        Migrate one table

        Args:
            config: Table to migrate
            target_db: Target store; may be None for a dry run
            service_name: Owning service, recorded on the result

        Returns:
            MigrationResult with status completed or partial

        Raises:
            TableMigrationException: On any read, write or configuration error;
                carries the failed result
            MigrationCancelledException: If cancelled between batches
        """
        start_time = time.time()
        total_records = 0
        migrated_records = 0
        failed_records = 0
        validation_errors: List[str] = []

        logger.info(f"Migrating table: {config.source_table} -> {config.target_table}")

        try:
            if config.contains_pii and self.encryption is None and not self.options.dry_run:
                raise MissingConfigurationException(
                    f"Table '{config.source_table}' contains PII but no encryption key is configured"
                )

            total_records = self.source_db.count_rows(config.source_table)
            if self.tracker:
                self.tracker.add_total(total_records)

            logger.info(f"Found {total_records} records to migrate from {config.source_table}")

            target_columns = None
            if not self.options.dry_run and total_records > 0:
                target_columns = set(target_db.column_names(config.target_table))

            dropped_columns: Set[str] = set()
            offset = 0
            batch_size = self.options.batch_size

            while offset < total_records:
                self.cancellation.raise_if_cancelled(f"{config.source_table} offset {offset}")

                batch = self._process_batch(config, target_db, offset, target_columns, dropped_columns)

                migrated_records += batch.successful
                failed_records += batch.failed
                validation_errors.extend(batch.validation_errors)
                if self.tracker:
                    self.tracker.add_migrated(batch.successful)

                offset += batch_size

                progress_percent = round(min(offset, total_records) / total_records * 100)
                logger.info(f"Migration progress for {config.source_table}: {progress_percent}%")

                if batch.fetched < batch_size:
                    break

        except MigrationCancelledException:
            logger.warning(
                f"Table migration cancelled for {config.source_table} after "
                f"{migrated_records}/{total_records} records"
            )
            raise

        except Exception as e:
            logger.error(f"Table migration failed for {config.source_table}: {e}")
            result = MigrationResult(
                service_name=service_name,
                table_name=config.target_table,
                total_records=total_records,
                migrated_records=migrated_records,
                failed_records=failed_records,
                validation_errors=tuple(validation_errors),
                duration=time.time() - start_time,
                status=MigrationStatus.FAILED,
                error=str(e),
            )
            raise TableMigrationException(
                f"Migration of table '{config.source_table}' failed: {e}",
                {'service': service_name, 'table': config.source_table},
                result=result
            ) from e

        result = MigrationResult(
            service_name=service_name,
            table_name=config.target_table,
            total_records=total_records,
            migrated_records=migrated_records,
            failed_records=failed_records,
            validation_errors=tuple(validation_errors),
            duration=time.time() - start_time,
            status=MigrationStatus.COMPLETED if failed_records == 0 else MigrationStatus.PARTIAL,
        )

        logger.info(
            f"Table migration completed: {config.source_table} "
            f"({migrated_records}/{total_records} records)"
        )
        self._publish_completion(config, result)
        return result

    def _process_batch(
        self,
        config: MigrationTableConfig,
        target_db: Optional[DatabaseManager],
        offset: int,
        target_columns: Optional[Set[str]],
        dropped_columns: Set[str]
    ) -> BatchOutcome:
        """Read, transform, validate and write one batch"""
        rows = self.source_db.fetch_batch(config.source_table, self.options.batch_size, offset)
        outcome = BatchOutcome(fetched=len(rows))
        migrated_at = datetime.now(timezone.utc)
        survivors: List[Dict[str, Any]] = []

        for source_row in rows:
            transformed = transform_record(source_row, list(config.transformation_rules))
            if not transformed.ok:
                outcome.failed += 1
                outcome.validation_errors.extend(transformed.errors)
                continue

            errors = validate_record(transformed.record, list(config.validation_rules))
            if errors:
                outcome.validation_errors.extend(errors)
                if self.options.strict_validation:
                    outcome.failed += 1
                    continue
                logger.debug(f"Writing record from {config.source_table} with warnings: {errors}")

            record = add_migration_metadata(transformed.record, migrated_at)
            if config.contains_pii and self.encryption is not None:
                record = self._encrypt_pii_fields(record)
            survivors.append(record)

        if survivors and not self.options.dry_run:
            self._write_batch(config, target_db, survivors, target_columns, dropped_columns)

        outcome.successful = len(survivors)
        return outcome

    def _write_batch(
        self,
        config: MigrationTableConfig,
        target_db: DatabaseManager,
        records: List[Dict[str, Any]],
        target_columns: Set[str],
        dropped_columns: Set[str]
    ) -> None:
        """Insert every record in one transaction; any failure rolls back the whole batch"""
        rows = [self._fit_to_target(config, record, target_columns, dropped_columns) for record in records]

        try:
            with target_db.transaction() as session:
                target_db.insert_ignore(session, config.target_table, rows)
                # a cancellation observed here rolls the batch back instead of committing it
                self.cancellation.raise_if_cancelled(f"{config.target_table} batch write")
        except SQLAlchemyError as e:
            raise BatchWriteException(
                f"Batch write to '{config.target_table}' failed and was rolled back",
                {'table': config.target_table, 'records': len(rows), 'error': str(e)}
            ) from e

    def _fit_to_target(
        self,
        config: MigrationTableConfig,
        record: Dict[str, Any],
        target_columns: Set[str],
        dropped_columns: Set[str]
    ) -> Dict[str, Any]:
        """Drop keys the target table has no column for, warning once per column"""
        fitted = {}
        for key, value in record.items():
            if key in target_columns:
                fitted[key] = value
            elif key not in dropped_columns:
                dropped_columns.add(key)
                logger.warning(f"Target table {config.target_table} has no column '{key}'; value dropped")
        return fitted

    def _encrypt_pii_fields(self, record: Dict[str, Any]) -> Dict[str, Any]:
        encrypted = dict(record)
        for field_name in self.options.pii_fields:
            value = encrypted.get(field_name)
            if value is None or value == '':
                continue
            encrypted[field_name] = self.encryption.encrypt_field(value)
            encrypted[f"{field_name}{ENCRYPTED_FLAG_SUFFIX}"] = True
        return encrypted

    def _publish_completion(self, config: MigrationTableConfig, result: MigrationResult) -> None:
        payload = {
            'service_name': result.service_name,
            'source_table': config.source_table,
            'target_table': config.target_table,
            'total_records': result.total_records,
            'migrated_records': result.migrated_records,
            'failed_records': result.failed_records,
            'duration': result.duration,
            'healthcare_context': config.healthcare_context,
            'contains_pii': config.contains_pii,
            'dry_run': self.options.dry_run,
        }

        if self.events:
            self.events.emit('table_migration_completed', payload)
        if self.audit:
            self.audit.log_event(
                'TABLE_MIGRATION_COMPLETED',
                'MigrationTable',
                f"migration-{result.service_name}-{config.target_table}",
                payload
            )
