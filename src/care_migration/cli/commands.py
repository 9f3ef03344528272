"""
CLI Command Handlers

Wiring of configuration into services, and the logic behind each command.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

import click
from tqdm import tqdm

from care_migration.cli.config import Config
from care_migration.cli.error_handler import BackupError, ConfigurationError, MigrationError, RollbackError
from care_migration.contracts.backup_service import (
    BackupMetadata,
    BackupOptions,
    BackupSchedule,
    BackupType,
    RestoreOptions,
    RestoreResult,
    RestoreStatus,
)
from care_migration.contracts.collaborators import AuditService
from care_migration.contracts.file_import_service import FileImportOptions
from care_migration.contracts.migration_engine_service import MigrationPlan, RunStatus
from care_migration.lib.cancellation import CancellationToken
from care_migration.lib.crypto import EncryptionService
from care_migration.lib.db_manager import DatabaseManager
from care_migration.lib.exceptions import MigrationRunException
from care_migration.lib.logging_config import log_context
from care_migration.services.audit import (
    DatabaseAuditTrail,
    EventBus,
    LoggingAuditTrail,
    LoggingNotificationService,
)
from care_migration.services.backup_manager import BackupManager
from care_migration.services.backup_storage import BackupStorage
from care_migration.services.file_import import FileImportService
from care_migration.services.migration_orchestrator import MigrationOrchestrator
from care_migration.services.pipeline_store import SqlPipelineDataStore
from care_migration.services.plans import default_migration_plans
from care_migration.services.reporter import MigrationReporter
from care_migration.services.restore_manager import RestoreManager
from care_migration.services.retention_cleaner import RetentionCleaner

logger = logging.getLogger(__name__)

PROGRESS_POLL_SECONDS = 0.5


class Application:
    """
    Builds the services a command needs from configuration

    Components are created on first use, so a command only opens the
    databases it touches. Each configured service target is registered as a
    backup pipeline named after the service.
    """

    def __init__(self, config: Config, plans: Optional[List[MigrationPlan]] = None):
        self.config = config
        self.plans = plans if plans is not None else default_migration_plans()
        self.events = EventBus()
        self.notifications = LoggingNotificationService()
        self.cancellation = CancellationToken()
        self._databases: Dict[str, DatabaseManager] = {}
        self._audit: Optional[AuditService] = None
        self._data_store: Optional[SqlPipelineDataStore] = None
        self._storage: Optional[BackupStorage] = None
        self._backup_manager: Optional[BackupManager] = None
        self._restore_manager: Optional[RestoreManager] = None

    def _database(self, name: str, url: str) -> DatabaseManager:
        if name not in self._databases:
            self._databases[name] = DatabaseManager(url, name=name)
        return self._databases[name]

    @property
    def source_db(self) -> DatabaseManager:
        return self._database('source', self.config.source_database_url)

    def target_dbs(self) -> Dict[str, DatabaseManager]:
        targets = {}
        for plan in self.plans:
            url = self.config.target_database_url(plan.service_name)
            if url:
                targets[plan.service_name] = self._database(plan.service_name, url)
        return targets

    @property
    def audit(self) -> AuditService:
        if self._audit is None:
            url = self.config.audit_database_url
            if url:
                self._audit = DatabaseAuditTrail(self._database('audit', url))
            else:
                self._audit = LoggingAuditTrail()
        return self._audit

    def pii_encryption(self) -> Optional[EncryptionService]:
        key = self.config.pii_encryption_key
        return EncryptionService(secret=key) if key else None

    def backup_encryption(self) -> Optional[EncryptionService]:
        key = self.config.backup_encryption_key
        return EncryptionService(secret=key) if key else None

    @property
    def data_store(self) -> SqlPipelineDataStore:
        if self._data_store is None:
            self._data_store = SqlPipelineDataStore()
            targets = self.target_dbs()
            for plan in self.plans:
                if plan.service_name in targets:
                    self._data_store.register_pipeline(
                        plan.service_name,
                        targets[plan.service_name],
                        [table.target_table for table in plan.tables],
                    )
        return self._data_store

    @property
    def storage(self) -> BackupStorage:
        if self._storage is None:
            self._storage = BackupStorage(self.config.backup_storage_path)
        return self._storage

    @property
    def backup_manager(self) -> BackupManager:
        if self._backup_manager is None:
            self._backup_manager = BackupManager(
                self.storage,
                self.data_store,
                settings=self.config.backup_settings(),
                encryption=self.backup_encryption(),
                events=self.events,
                audit=self.audit,
                notifications=self.notifications,
                cancellation=self.cancellation,
            )
        return self._backup_manager

    @property
    def restore_manager(self) -> RestoreManager:
        if self._restore_manager is None:
            self._restore_manager = RestoreManager(
                self.storage,
                self.data_store,
                self.backup_manager,
                encryption=self.backup_encryption(),
                events=self.events,
                audit=self.audit,
                notifications=self.notifications,
                cancellation=self.cancellation,
            )
        return self._restore_manager

    def retention_cleaner(self) -> RetentionCleaner:
        return RetentionCleaner(
            self.storage,
            interval_hours=self.config.retention_sweep_interval_hours,
            events=self.events,
            audit=self.audit,
        )

    def file_importer(self) -> FileImportService:
        return FileImportService(
            self.source_db,
            events=self.events,
            audit=self.audit,
            max_file_size=self.config.import_max_file_size_mb * 1024 * 1024,
        )

    def orchestrator(self, **option_overrides) -> MigrationOrchestrator:
        options = self.config.migration_options(**option_overrides)
        backup_service = self.backup_manager if options.backup_before_migration else None
        return MigrationOrchestrator(
            self.source_db,
            self.target_dbs(),
            plans=self.plans,
            options=options,
            encryption=self.pii_encryption(),
            events=self.events,
            audit=self.audit,
            backup_service=backup_service,
            cancellation=self.cancellation,
        )

    def require_pipeline(self, pipeline_id: str) -> None:
        known = self.data_store.pipelines()
        if pipeline_id not in known:
            raise ConfigurationError(
                f"Unknown pipeline '{pipeline_id}'. Configured pipelines: {', '.join(known) or 'none'}"
            )

    def close(self) -> None:
        for db in self._databases.values():
            db.close()


def _format_size(size_bytes: float) -> str:
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} TB"


def _echo_backup(metadata: BackupMetadata) -> None:
    click.echo(
        f"   {metadata.backup_id}  {metadata.backup_type.value:<12} {metadata.status.value:<9} "
        f"{metadata.verification_status.value:<8} {_format_size(metadata.backup_size):>10}  "
        f"{metadata.record_count} records  {metadata.created_at:%Y-%m-%d %H:%M:%S}"
    )


def run_migration(app: Application, dry_run: Optional[bool], batch_size: Optional[int],
                  max_workers: Optional[int], lenient: bool, backup_before: Optional[str],
                  report_dir: Optional[Path]):
    """Run the migration plan with a live record progress bar"""
    orchestrator = app.orchestrator(
        dry_run=dry_run,
        batch_size=batch_size,
        max_workers=max_workers,
        strict_validation=False if lenient else None,
        backup_before_migration=backup_before,
    )
    mode = " (dry run)" if orchestrator.options.dry_run else ""
    click.echo(f"🚚 Migrating {len(app.plans)} service(s){mode}")

    run_id = uuid.uuid4().hex[:12]
    with log_context(run_id=run_id), ThreadPoolExecutor(max_workers=1, thread_name_prefix='migration-run') as executor:
        future = executor.submit(orchestrator.run)
        with tqdm(total=0, unit="records", desc="Migrating") as progress:
            try:
                while not future.done():
                    _refresh_progress(progress, orchestrator)
                    time.sleep(PROGRESS_POLL_SECONDS)
                _refresh_progress(progress, orchestrator)
            except KeyboardInterrupt:
                orchestrator.cancel("Interrupted by operator")
                click.echo("\n⚠️  Cancelling migration...", err=True)

        try:
            results = future.result()
            error = None
        except MigrationRunException as e:
            results = e.results or []
            error = e

    reporter = MigrationReporter(report_dir)
    summary = reporter.generate_summary(results)
    report_path = reporter.generate_run_report(run_id, results, summary)

    click.echo(f"\n📊 Tables: {summary['completed_tables']} completed, "
               f"{summary['partial_tables']} partial, {summary['failed_tables']} failed")
    click.echo(f"   Records: {summary['migrated_records']}/{summary['total_records']} migrated, "
               f"{summary['failed_records']} failed ({summary['success_rate']:.1f}%)")
    for result in results:
        click.echo(f"   - {result.service_name}/{result.table_name}: {result.status.value} "
                   f"({result.migrated_records}/{result.total_records})")
    click.echo(f"   Report: {report_path}")

    if error is not None:
        raise MigrationError(f"Migration failed: {error.message}")
    click.echo("\n✅ Migration complete!")


def _refresh_progress(progress: tqdm, orchestrator: MigrationOrchestrator) -> None:
    snapshot = orchestrator.get_progress()
    if snapshot.status is RunStatus.NOT_STARTED:
        return
    progress.total = snapshot.total_records
    progress.update(snapshot.migrated_records - progress.n)
    progress.set_postfix(phase=f"{snapshot.current_phase}/{snapshot.total_phases}",
                         tables=f"{snapshot.completed_tables}/{snapshot.total_tables}")


def rollback_service(app: Application, service_name: str):
    orchestrator = app.orchestrator()
    try:
        orchestrator.rollback_service(service_name)
    except ValueError as e:
        raise RollbackError(str(e))
    click.echo(f"✅ Dropped migrated tables for {service_name}")


def create_backup(app: Application, pipeline_id: str, backup_type: str, description: Optional[str],
                  tags: List[str], compress: Optional[bool], encrypt: Optional[bool],
                  verify: Optional[bool], retention_days: Optional[int]):
    app.require_pipeline(pipeline_id)
    manager = app.backup_manager

    with log_context(pipeline_id=pipeline_id):
        if backup_type == BackupType.DIFFERENTIAL.value:
            click.echo(f"💾 Creating differential backup of {pipeline_id}")
            configuration = manager.create_differential_backup(pipeline_id)
        else:
            click.echo(f"💾 Creating full backup of {pipeline_id}")
            configuration = manager.create_backup(pipeline_id, BackupOptions(
                description=description,
                tags=list(tags) or None,
                compression_enabled=compress,
                encryption_enabled=encrypt,
                verification_enabled=verify,
                retention_days=retention_days,
            ))

    _report_backup(manager.get_backup(configuration.backup_id))


def create_incremental_backup(app: Application, pipeline_id: str, since: Optional[str]):
    app.require_pipeline(pipeline_id)
    click.echo(f"💾 Creating incremental backup of {pipeline_id}")
    with log_context(pipeline_id=pipeline_id):
        configuration = app.backup_manager.create_incremental_backup(pipeline_id, since)
    _report_backup(app.backup_manager.get_backup(configuration.backup_id))


def _report_backup(metadata: BackupMetadata) -> None:
    if not metadata.is_restorable:
        raise BackupError(
            f"Backup {metadata.backup_id} finished {metadata.status.value} "
            f"with verification {metadata.verification_status.value}"
        )
    click.echo(f"\n✅ Backup {metadata.backup_id} complete")
    click.echo(f"   Records: {metadata.record_count} in {metadata.table_count} table(s)")
    click.echo(f"   Size: {_format_size(metadata.backup_size)}")
    click.echo(f"   SHA-256: {metadata.checksum_sha256}")


def restore(app: Application, pipeline_id: str, backup_id: Optional[str], test: bool,
            verify: bool, rollback_on_failure: bool, preserve_current: bool):
    """One-click rollback of a pipeline to its latest (or a given) verified backup"""
    app.require_pipeline(pipeline_id)
    mode = "Test-restoring" if test else "Restoring"
    click.echo(f"⏪ {mode} {pipeline_id} from {backup_id or 'latest verified backup'}")

    with log_context(pipeline_id=pipeline_id, backup_id=backup_id):
        result = app.restore_manager.restore(pipeline_id, RestoreOptions(
            verify_integrity=verify,
            create_test_restore=test,
            rollback_on_failure=rollback_on_failure,
            preserve_current_data=preserve_current,
            backup_id=backup_id,
        ))
    _report_restore(result)

    if result.status is not RestoreStatus.COMPLETED:
        raise RollbackError(f"Restore {result.restore_id} ended {result.status.value}: {'; '.join(result.errors)}")
    click.echo("\n✅ Restore complete!")


def _report_restore(result: RestoreResult) -> None:
    click.echo(f"\n📋 Restore {result.restore_id} from {result.backup_id}: {result.status.value}")
    click.echo(f"   Records: {result.records_restored} in {result.tables_restored} table(s)")
    click.echo(f"   Duration: {result.performance_metrics.total_duration:.0f} ms")
    for check in result.integrity_check_results:
        click.echo(f"   - {check.check_type.value}: {check.status.value} ({check.details})")
    for warning in result.warnings:
        click.echo(f"   ⚠️  {warning}")


def list_backups(app: Application, pipeline_id: Optional[str]):
    pipelines = [pipeline_id] if pipeline_id else app.data_store.pipelines()
    total = 0
    for pid in pipelines:
        backups = app.backup_manager.list_backups(pid)
        total += len(backups)
        click.echo(f"\n📁 {pid}: {len(backups)} backup(s)")
        for metadata in backups:
            _echo_backup(metadata)

    if not pipeline_id:
        click.echo(f"\n{total} backup(s) across {len(pipelines)} pipeline(s)")


def cleanup(app: Application):
    click.echo("🧹 Removing expired backups")
    result = app.retention_cleaner().run_once()
    click.echo(f"   Deleted: {result.deleted_backups}")
    click.echo(f"   Reclaimed: {_format_size(result.space_reclaimed)}")
    if result.errors:
        raise BackupError(f"Cleanup finished with {len(result.errors)} error(s): {'; '.join(result.errors)}")


def show_statistics(app: Application):
    stats = app.backup_manager.get_backup_statistics()
    usage = stats['storage_usage']
    click.echo("📈 Backup statistics")
    click.echo(f"   Backups: {stats['total_backups']} ({_format_size(stats['total_size'])})")
    click.echo(f"   By type: {stats['backups_by_type']}")
    click.echo(f"   By status: {stats['backups_by_status']}")
    if stats['newest_backup']:
        click.echo(f"   Oldest: {stats['oldest_backup']:%Y-%m-%d %H:%M:%S}")
        click.echo(f"   Newest: {stats['newest_backup']:%Y-%m-%d %H:%M:%S}")
    click.echo(f"   Storage: {_format_size(usage['used'])} used, {_format_size(usage['available'])} free")
    click.echo(f"   Health: {stats['health_status']}")


def run_drill(app: Application, pipeline_id: str):
    app.require_pipeline(pipeline_id)
    click.echo(f"🧪 Running restore drill for {pipeline_id}")
    with log_context(pipeline_id=pipeline_id):
        report = app.restore_manager.run_restore_drill(pipeline_id)

    for name, outcome in report.items():
        mark = "✅" if outcome['success'] else "❌"
        click.echo(f"   {mark} {name}: {outcome}")

    if not all(outcome['success'] for outcome in report.values()):
        raise BackupError(f"Restore drill for {pipeline_id} failed")


def schedule_backups(app: Application, pipeline_id: str, frequency: str, retention_days: int):
    app.require_pipeline(pipeline_id)
    schedule_id = app.backup_manager.schedule_automated_backups(BackupSchedule(
        pipeline_id=pipeline_id,
        frequency=frequency,
        retention_days=retention_days,
        compression_enabled=app.config.compression_enabled,
        encryption_enabled=app.config.backup_encryption_enabled,
    ))
    click.echo(f"🗓️  Scheduled {frequency} backups of {pipeline_id} (schedule {schedule_id})")


def import_data_file(app: Application, path: Path, table: Optional[str], sheet: Optional[str],
                     delimiter: str, skip_rows: int, max_rows: Optional[int], if_exists: str,
                     strict: bool, validate: bool, dry_run: bool):
    options = FileImportOptions(
        target_table=table,
        delimiter=delimiter,
        sheet_name=sheet,
        skip_rows=skip_rows,
        max_rows=max_rows,
        validate_on_import=validate,
        strict_validation=strict,
        if_exists=if_exists,
        dry_run=dry_run,
    )
    mode = " (dry run)" if dry_run else ""
    click.echo(f"📥 Importing {path.name}{mode}")

    result = app.file_importer().import_file(path, options)

    click.echo(f"   Target table: {result.target_table}")
    click.echo(f"   Records: {result.records_imported} imported, {result.records_skipped} skipped "
               f"of {result.records_found}")
    detected = {column: analysis.detected_type.value for column, analysis in result.data_types.items()
                if analysis.confidence > 0.5}
    if detected:
        click.echo(f"   Detected types: {detected}")
    for issue in result.errors[:10]:
        click.echo(f"   ❌ row {issue.row}: {issue.message}")
    if len(result.errors) > 10:
        click.echo(f"   ... {len(result.errors) - 10} more error(s)")
    click.echo(f"   Warnings: {len(result.warnings)}")
    click.echo(f"   Quality score: {result.quality_score}/100")
