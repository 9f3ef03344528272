"""
Migration Orchestrator

Drives a dependency-ordered migration run: phases execute in increasing
order, services inside one phase run concurrently on a small worker pool, and
each service migrates its tables sequentially through the TableMigrator.
"""

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

from care_migration.contracts.backup_service import BackupOptions, BackupPriority, BackupService
from care_migration.contracts.collaborators import AuditService, EventPublisher
from care_migration.contracts.migration_engine_service import (
    MigrationEngineService,
    MigrationOptions,
    MigrationPlan,
    MigrationProgress,
    MigrationResult,
    RunStatus,
)
from care_migration.lib.cancellation import CancellationToken
from care_migration.lib.crypto import EncryptionService
from care_migration.lib.db_manager import DatabaseManager
from care_migration.lib.exceptions import (
    MigrationRunException,
    MissingConfigurationException,
    TableMigrationException,
)
from care_migration.services.plans import validate_plans
from care_migration.services.progress import ProgressTracker
from care_migration.services.table_migrator import TableMigrator

logger = logging.getLogger(__name__)


class MigrationOrchestrator(MigrationEngineService):
    """Implementation of MigrationEngineService"""

    def __init__(
        self,
        source_db: DatabaseManager,
        target_dbs: Dict[str, DatabaseManager],
        plans: Optional[Sequence[MigrationPlan]] = None,
        options: Optional[MigrationOptions] = None,
        encryption: Optional[EncryptionService] = None,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditService] = None,
        backup_service: Optional[BackupService] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.source_db = source_db
        self.target_dbs = dict(target_dbs)
        self.plans: List[MigrationPlan] = list(plans or [])
        self.options = options or MigrationOptions()
        self.events = events
        self.audit = audit
        self.backup_service = backup_service
        self.cancellation = cancellation or CancellationToken()
        self.tracker = ProgressTracker()
        self.migrator = TableMigrator(
            source_db,
            options=self.options,
            encryption=encryption,
            events=events,
            audit=audit,
            tracker=self.tracker,
            cancellation=self.cancellation,
        )

    def run(self, plans: Optional[Sequence[MigrationPlan]] = None) -> List[MigrationResult]:
        plans = list(plans) if plans is not None else list(self.plans)
        validate_plans(plans)
        self.plans = plans

        run_id = f"migration-{uuid.uuid4().hex[:12]}"
        total_phases = max((plan.phase for plan in plans), default=0)
        total_tables = sum(len(plan.tables) for plan in plans)
        results: List[MigrationResult] = []
        start_time = time.time()

        self.tracker.start(total_phases, total_tables)
        logger.info(f"Starting migration run {run_id}: {total_phases} phases, {total_tables} tables")
        self._signal('migration_started', 'MIGRATION_STARTED', run_id, {
            'total_phases': total_phases,
            'total_tables': total_tables,
            'dry_run': self.options.dry_run,
        })

        try:
            self._backup_before_run(run_id)

            for phase in range(1, total_phases + 1):
                self.cancellation.raise_if_cancelled(f"phase {phase}")
                self.tracker.set_phase(phase)

                phase_plans = [plan for plan in plans if plan.phase == phase]
                if not phase_plans:
                    continue

                logger.info(
                    f"Starting migration phase {phase}: "
                    f"{', '.join(plan.service_name for plan in phase_plans)}"
                )
                phase_results, failures = self._run_phase(phase_plans)
                results.extend(phase_results)
                self._emit_phase_progress(phase, failures)

                if failures:
                    failed_services = ', '.join(failures)
                    raise MigrationRunException(
                        f"Migration phase {phase} failed for: {failed_services}",
                        {'phase': phase, 'failures': failures},
                        results=results
                    )

        except Exception as e:
            self.tracker.finish(RunStatus.FAILED)
            progress = self.tracker.snapshot()
            logger.error(f"Migration run {run_id} failed: {e}")
            self._signal('migration_failed', 'MIGRATION_FAILED', run_id, {
                'error': str(e),
                'phase': progress.current_phase,
                'completed_tables': progress.completed_tables,
                'results': [result.to_dict() for result in results],
            })
            if isinstance(e, MigrationRunException):
                raise
            raise MigrationRunException(f"Migration run failed: {e}", {'run_id': run_id}, results=results) from e

        self.tracker.finish(RunStatus.COMPLETED)
        progress = self.tracker.snapshot()
        logger.info(f"Migration run {run_id} finished successfully in {time.time() - start_time:.2f}s")
        self._signal('migration_completed', 'MIGRATION_COMPLETED', run_id, {
            'total_records': progress.total_records,
            'migrated_records': progress.migrated_records,
            'duration': time.time() - start_time,
            'results': [
                {
                    'service': result.service_name,
                    'table': result.table_name,
                    'status': result.status.value,
                    'records': result.migrated_records,
                }
                for result in results
            ],
        })
        return results

    def _run_phase(self, phase_plans: List[MigrationPlan]):
        """
        Run every service of a phase concurrently and join them all

        Returns:
            (results in plan order, {service_name: error message} for failed services)
        """
        collected: Dict[str, List[MigrationResult]] = {plan.service_name: [] for plan in phase_plans}
        failures: Dict[str, str] = {}
        workers = min(self.options.max_workers, len(phase_plans))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='migrate') as executor:
            futures = {
                plan.service_name: executor.submit(self._migrate_service_into, plan, collected[plan.service_name])
                for plan in phase_plans
            }
            wait(futures.values())

        phase_results: List[MigrationResult] = []
        for plan in phase_plans:
            phase_results.extend(collected[plan.service_name])
            error = futures[plan.service_name].exception()
            if error is None:
                continue

            failures[plan.service_name] = str(error)
            if isinstance(error, TableMigrationException) and error.result is not None:
                phase_results.append(error.result)
            logger.error(f"Service {plan.service_name} failed: {error}")

        return phase_results, failures

    def migrate_service(self, plan: MigrationPlan) -> List[MigrationResult]:
        results: List[MigrationResult] = []
        self._migrate_service_into(plan, results)
        return results

    def _migrate_service_into(self, plan: MigrationPlan, results: List[MigrationResult]) -> None:
        """Migrate a service's tables in order, appending each result as it completes"""
        logger.info(f"Migrating service: {plan.service_name}")

        target_db = self.target_dbs.get(plan.service_name)
        if target_db is None and not self.options.dry_run:
            raise MissingConfigurationException(
                f"Target database not configured for service: {plan.service_name}"
            )

        for table_config in plan.tables:
            result = self.migrator.migrate_table(table_config, target_db, plan.service_name)
            results.append(result)
            self.tracker.table_completed()

    def get_progress(self) -> MigrationProgress:
        return self.tracker.snapshot()

    def rollback_service(self, service_name: str) -> None:
        logger.info(f"Rolling back migration for service: {service_name}")

        plan = next((p for p in self.plans if p.service_name == service_name), None)
        if plan is None:
            raise ValueError(f"Migration plan not found for service: {service_name}")

        target_db = self.target_dbs.get(service_name)
        if target_db is None:
            raise ValueError(f"Target database not found for service: {service_name}")

        dropped = []
        try:
            with target_db.transaction() as session:
                for table_config in reversed(plan.tables):
                    target_db.drop_table(session, table_config.target_table)
                    dropped.append(table_config.target_table)
                    logger.info(f"Dropped table: {table_config.target_table}")
        except Exception as e:
            logger.error(f"Rollback failed for service {service_name}: {e}")
            raise

        if self.audit:
            self.audit.log_event('MIGRATION_ROLLBACK', 'migration', service_name, {
                'service_name': service_name,
                'tables_dropped': dropped,
                'rollback_procedure': plan.rollback_procedure,
            })
        if self.events:
            self.events.emit('service_rolled_back', {'service_name': service_name, 'tables': dropped})

        logger.info(f"Rollback completed for service: {service_name}")

    def cancel(self, reason: str = "Cancelled by operator") -> None:
        self.cancellation.cancel(reason)

    def _backup_before_run(self, run_id: str) -> None:
        pipeline_id = self.options.backup_before_migration
        if not pipeline_id:
            return
        if self.backup_service is None:
            raise MissingConfigurationException(
                "backup_before_migration is set but no backup service is configured"
            )

        logger.info(f"Creating pre-migration backup of {pipeline_id}")
        configuration = self.backup_service.create_backup(pipeline_id, BackupOptions(
            priority=BackupPriority.CRITICAL,
            description=f"Pre-migration backup for {run_id}",
            tags=['pre_migration', 'automated'],
        ))
        logger.info(f"Pre-migration backup {configuration.backup_id} created")

    def _emit_phase_progress(self, phase: int, failures: Dict[str, str]) -> None:
        progress = self.tracker.snapshot()
        percent = 0
        if progress.total_tables:
            percent = round(progress.completed_tables / progress.total_tables * 100)

        logger.info(
            f"Phase {phase}/{progress.total_phases} joined: "
            f"{progress.completed_tables}/{progress.total_tables} tables ({percent}%)"
        )
        if self.events:
            self.events.emit(f"phase_{phase}_progress", {
                'phase': phase,
                'total_phases': progress.total_phases,
                'completed_tables': progress.completed_tables,
                'total_tables': progress.total_tables,
                'migrated_records': progress.migrated_records,
                'percent': percent,
                'failed_services': sorted(failures),
            })

    def _signal(self, event_name: str, action: str, run_id: str, payload: Dict) -> None:
        if self.events:
            self.events.emit(event_name, dict(payload, run_id=run_id))
        if self.audit:
            self.audit.log_event(action, 'migration', run_id, payload)
