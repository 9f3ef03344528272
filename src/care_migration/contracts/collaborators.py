"""
External Collaborator Contracts

Abstract interfaces for everything the migration and backup core calls out
to: audit trail, lifecycle events, notifications, and the pipeline data store
that backups are taken from and restored into.
"""

from typing import Any, Dict, List, Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


class AuditService(ABC):
    """Persists audit events; delivery is entirely the implementation's concern"""

    @abstractmethod
    def log_event(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        details: Optional[Dict[str, Any]] = None,
        user_id: str = 'system'
    ) -> None:
        """
        Record one audit event

        Args:
            action: Upper-case action name, e.g. ``BACKUP_EXPIRED_DELETED``
            entity_type: Kind of entity affected, e.g. ``MigrationBackup``
            entity_id: Identifier of the affected entity
            details: Small JSON-serializable payload
            user_id: Actor that initiated the operation
        """
        pass


class EventPublisher(ABC):
    """Receives lifecycle signals such as ``migration_started`` or ``backup_progress``"""

    @abstractmethod
    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        pass


class NotificationService(ABC):
    """Delivers human-readable notifications to operators"""

    @abstractmethod
    def send_notification(self, subject: str, message: str, data: Optional[Dict[str, Any]] = None,
                          priority: str = 'medium') -> None:
        pass


@dataclass
class TableSnapshot:
    """Every row of one table at a point in time"""
    name: str
    primary_key: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)

    def key_of(self, row: Dict[str, Any]) -> tuple:
        key_columns = self.primary_key or self.columns
        return tuple(row.get(column) for column in key_columns)


@dataclass
class LogicalDataset:
    """Point-in-time contents of a pipeline, tables in dependency order"""
    pipeline_id: str
    tables: List[TableSnapshot] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        return sum(len(table.rows) for table in self.tables)

    @property
    def table_count(self) -> int:
        return len(self.tables)

    def table(self, name: str) -> Optional[TableSnapshot]:
        for snapshot in self.tables:
            if snapshot.name == name:
                return snapshot
        return None


class PipelineDataStore(ABC):
    """Storage a pipeline's data can be dumped from and replayed into"""

    @abstractmethod
    def tables_for(self, pipeline_id: str) -> List[str]:
        """
        Tables belonging to a pipeline, parents before children

        Raises:
            KeyError: If the pipeline is unknown
        """
        pass

    @abstractmethod
    def dump(self, pipeline_id: str) -> LogicalDataset:
        """Read every row of every pipeline table"""
        pass

    @abstractmethod
    def replay(self, pipeline_id: str, dataset: LogicalDataset) -> int:
        """
        Replace the pipeline's current rows with the dataset, atomically

        Returns:
            Number of records written
        """
        pass

    @abstractmethod
    def integrity_checks(self, pipeline_id: str, dataset: LogicalDataset) -> List[Any]:
        """
        Post-restore checks of live data against the replayed dataset

        Returns:
            IntegrityCheckResult list covering record counts, foreign keys,
            constraints and data types
        """
        pass
