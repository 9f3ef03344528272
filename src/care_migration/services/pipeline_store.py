"""
SQL Pipeline Data Store

A pipeline is a named set of tables in one database. Backups dump every row
of those tables; restores replace their contents atomically and then check
the live data against what was replayed.
"""

import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import and_, func, inspect, literal, select

from care_migration.contracts.backup_service import IntegrityCheckResult, IntegrityCheckType, IntegrityStatus
from care_migration.contracts.collaborators import LogicalDataset, PipelineDataStore, TableSnapshot
from care_migration.lib.db_manager import DatabaseManager
from care_migration.lib.exceptions import DatabaseException

logger = logging.getLogger(__name__)


class SqlPipelineDataStore(PipelineDataStore):
    """PipelineDataStore over SQLAlchemy-managed databases"""

    def __init__(self):
        self._pipelines: Dict[str, Tuple[DatabaseManager, Optional[List[str]]]] = {}

    def register_pipeline(self, pipeline_id: str, db_manager: DatabaseManager,
                          tables: Optional[List[str]] = None) -> None:
        """
        Register a pipeline

        Args:
            pipeline_id: Name used by backups and restores
            db_manager: Database holding the pipeline's tables
            tables: Tables in dependency order; None means every table in the
                database, ordered by foreign keys
        """
        self._pipelines[pipeline_id] = (db_manager, list(tables) if tables is not None else None)
        logger.debug(f"Registered pipeline {pipeline_id} on database '{db_manager.name}'")

    def pipelines(self) -> List[str]:
        return sorted(self._pipelines)

    def _resolve(self, pipeline_id: str) -> DatabaseManager:
        if pipeline_id not in self._pipelines:
            raise KeyError(f"Unknown pipeline: {pipeline_id}")
        return self._pipelines[pipeline_id][0]

    def tables_for(self, pipeline_id: str) -> List[str]:
        db_manager = self._resolve(pipeline_id)
        tables = self._pipelines[pipeline_id][1]
        if tables is not None:
            return list(tables)
        return db_manager.sorted_table_names(exclude=['audit_log'])

    def dump(self, pipeline_id: str) -> LogicalDataset:
        db_manager = self._resolve(pipeline_id)
        dataset = LogicalDataset(pipeline_id=pipeline_id)

        # one session so every table is read from the same snapshot
        with db_manager.get_session() as session:
            for table_name in self.tables_for(pipeline_id):
                if not db_manager.table_exists(table_name):
                    logger.warning(f"Pipeline {pipeline_id}: table {table_name} does not exist, skipped")
                    continue
                dataset.tables.append(TableSnapshot(
                    name=table_name,
                    primary_key=db_manager.primary_key_columns(table_name),
                    columns=db_manager.column_names(table_name),
                    rows=db_manager.fetch_all(table_name, session),
                ))

        logger.info(
            f"Dumped pipeline {pipeline_id}: {dataset.table_count} tables, {dataset.record_count} records"
        )
        return dataset

    def replay(self, pipeline_id: str, dataset: LogicalDataset) -> int:
        db_manager = self._resolve(pipeline_id)
        written = 0

        for snapshot in dataset.tables:
            if not db_manager.table_exists(snapshot.name):
                raise DatabaseException(
                    f"Cannot restore table '{snapshot.name}': it does not exist in pipeline {pipeline_id}",
                    {'pipeline_id': pipeline_id, 'table': snapshot.name}
                )

        with db_manager.transaction() as session:
            # children first on delete, parents first on insert
            for snapshot in reversed(dataset.tables):
                db_manager.delete_all(session, snapshot.name)

            for snapshot in dataset.tables:
                live_columns = set(db_manager.column_names(snapshot.name))
                rows = [
                    {column: value for column, value in row.items() if column in live_columns}
                    for row in snapshot.rows
                ]
                written += db_manager.insert_rows(session, snapshot.name, rows)

        logger.info(f"Replayed {written} records into pipeline {pipeline_id}")
        return written

    def integrity_checks(self, pipeline_id: str, dataset: LogicalDataset) -> List[IntegrityCheckResult]:
        db_manager = self._resolve(pipeline_id)
        return [
            self._check_record_counts(db_manager, dataset),
            self._check_foreign_keys(db_manager, dataset),
            self._check_constraints(db_manager, dataset),
            self._check_data_types(db_manager, dataset),
        ]

    def _check_record_counts(self, db_manager: DatabaseManager, dataset: LogicalDataset) -> IntegrityCheckResult:
        mismatches = []
        actual_total = 0

        for snapshot in dataset.tables:
            actual = db_manager.count_rows(snapshot.name)
            actual_total += actual
            if actual != len(snapshot.rows):
                mismatches.append(f"{snapshot.name}: expected {len(snapshot.rows)}, found {actual}")

        return IntegrityCheckResult(
            check_type=IntegrityCheckType.RECORD_COUNT,
            status=IntegrityStatus.FAILED if mismatches else IntegrityStatus.PASSED,
            details='; '.join(mismatches) if mismatches else 'Record counts match',
            expected_value=dataset.record_count,
            actual_value=actual_total,
        )

    def _check_foreign_keys(self, db_manager: DatabaseManager, dataset: LogicalDataset) -> IntegrityCheckResult:
        inspector = inspect(db_manager.engine)
        orphans: List[str] = []
        checked = 0

        with db_manager.get_session() as session:
            for snapshot in dataset.tables:
                child = db_manager.get_table(snapshot.name)

                for foreign_key in inspector.get_foreign_keys(snapshot.name):
                    referred_name = foreign_key['referred_table']
                    if not db_manager.table_exists(referred_name):
                        orphans.append(f"{snapshot.name} references missing table {referred_name}")
                        continue

                    parent = db_manager.get_table(referred_name).alias('referred')
                    pairs = list(zip(foreign_key['constrained_columns'], foreign_key['referred_columns']))
                    parent_match = select(literal(1)).select_from(parent).where(
                        and_(*[parent.c[referred] == child.c[constrained] for constrained, referred in pairs])
                    ).exists()
                    query = select(func.count()).select_from(child).where(
                        and_(*[child.c[constrained].isnot(None) for constrained, _ in pairs]),
                        ~parent_match
                    )

                    count = int(session.execute(query).scalar_one())
                    checked += 1
                    if count:
                        orphans.append(f"{snapshot.name} -> {referred_name}: {count} orphaned rows")

        return IntegrityCheckResult(
            check_type=IntegrityCheckType.FOREIGN_KEYS,
            status=IntegrityStatus.FAILED if orphans else IntegrityStatus.PASSED,
            details='; '.join(orphans) if orphans else f"{checked} foreign keys verified",
            expected_value=0,
            actual_value=len(orphans),
        )

    def _check_constraints(self, db_manager: DatabaseManager, dataset: LogicalDataset) -> IntegrityCheckResult:
        violations: List[str] = []

        with db_manager.get_session() as session:
            for snapshot in dataset.tables:
                table = db_manager.get_table(snapshot.name)
                pk_columns = list(table.primary_key.columns)

                if pk_columns:
                    total = db_manager.count_rows(snapshot.name, session)
                    distinct = int(session.execute(
                        select(func.count()).select_from(select(*pk_columns).distinct().subquery())
                    ).scalar_one())
                    if distinct != total:
                        violations.append(f"{snapshot.name}: {total - distinct} duplicate primary keys")

                for column in table.columns:
                    if column.nullable or column.primary_key:
                        continue
                    nulls = int(session.execute(
                        select(func.count()).select_from(table).where(column.is_(None))
                    ).scalar_one())
                    if nulls:
                        violations.append(f"{snapshot.name}.{column.name}: {nulls} NULL values")

        return IntegrityCheckResult(
            check_type=IntegrityCheckType.CONSTRAINTS,
            status=IntegrityStatus.FAILED if violations else IntegrityStatus.PASSED,
            details='; '.join(violations) if violations else 'Primary key and NOT NULL constraints hold',
            expected_value=0,
            actual_value=len(violations),
        )

    def _check_data_types(self, db_manager: DatabaseManager, dataset: LogicalDataset) -> IntegrityCheckResult:
        missing: List[str] = []
        extra: List[str] = []

        for snapshot in dataset.tables:
            live_columns = set(db_manager.column_names(snapshot.name))
            backed_up = set(snapshot.columns)
            missing.extend(f"{snapshot.name}.{c}" for c in sorted(backed_up - live_columns))
            extra.extend(f"{snapshot.name}.{c}" for c in sorted(live_columns - backed_up))

        if missing:
            status = IntegrityStatus.FAILED
            details = f"Columns missing from live schema: {', '.join(missing)}"
        elif extra:
            status = IntegrityStatus.WARNING
            details = f"Live schema has columns not in backup: {', '.join(extra)}"
        else:
            status = IntegrityStatus.PASSED
            details = 'Schema matches backup'

        return IntegrityCheckResult(
            check_type=IntegrityCheckType.DATA_TYPES,
            status=status,
            details=details,
            expected_value=0,
            actual_value=len(missing),
        )
