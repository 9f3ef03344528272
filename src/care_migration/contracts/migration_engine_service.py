"""
Migration Engine Service Contract

Data model for a dependency-ordered migration run (phases -> services ->
tables) and the abstract interface the orchestrator implements.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MigrationStatus(Enum):
    """Outcome of one table migration

    COMPLETED means no record failed. PARTIAL means at least one record was
    rejected by transformation or validation; this includes a table where
    every record was rejected (``migrated_records == 0``), since rejected
    records are reported as data and do not stop the run. FAILED is kept for
    a propagated exception, which ends the service and the run.
    """
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class RunStatus(Enum):
    """Status of a whole migration run"""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class ValidationKind(Enum):
    REQUIRED = "required"
    NHS_NUMBER = "nhs_number"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    CUSTOM = "custom"


def _unchanged(value: Any) -> Any:
    return value


@dataclass(frozen=True)
class TransformationRule:
    """Maps one source column to one target column"""
    source_column: str
    target_column: str
    transform: Callable[[Any], Any] = _unchanged
    required: bool = False


@dataclass(frozen=True)
class ValidationRule:
    """Classifies one target column value as valid or invalid"""
    column: str
    kind: ValidationKind
    error_message: str
    validator: Optional[Callable[[Any], bool]] = None

    def __post_init__(self):
        if self.kind is ValidationKind.CUSTOM and self.validator is None:
            raise ValueError(f"Custom validation rule for '{self.column}' needs a validator")


@dataclass(frozen=True)
class MigrationTableConfig:
    """One logical table to move from the source store to a service's target store"""
    source_table: str
    target_table: str
    transformation_rules: Tuple[TransformationRule, ...] = ()
    validation_rules: Tuple[ValidationRule, ...] = ()
    contains_pii: bool = False
    retention_years: int = 7
    healthcare_context: str = ""


@dataclass(frozen=True)
class MigrationPlan:
    """All tables of one target service, scheduled in a numbered phase"""
    phase: int
    service_name: str
    tables: Tuple[MigrationTableConfig, ...]
    dependencies: Tuple[str, ...] = ()
    rollback_procedure: str = ""


DEFAULT_PII_FIELDS = (
    'first_name',
    'last_name',
    'nhs_number',
    'email_address',
    'phone_number',
    'address',
)


@dataclass
class MigrationOptions:
    """Configuration options for migration operations"""
    batch_size: int = 1000
    strict_validation: bool = True
    dry_run: bool = False
    max_workers: int = 4
    pii_fields: Sequence[str] = DEFAULT_PII_FIELDS
    backup_before_migration: Optional[str] = None

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")


@dataclass(frozen=True)
class MigrationResult:
    """Final outcome of one table migration"""
    service_name: str
    table_name: str
    total_records: int
    migrated_records: int
    failed_records: int
    validation_errors: Tuple[str, ...]
    duration: float  # seconds
    status: MigrationStatus
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'service_name': self.service_name,
            'table_name': self.table_name,
            'total_records': self.total_records,
            'migrated_records': self.migrated_records,
            'failed_records': self.failed_records,
            'validation_errors': list(self.validation_errors),
            'duration': self.duration,
            'status': self.status.value,
            'error': self.error,
        }


@dataclass
class MigrationProgress:
    """Run-wide counters, written only by the orchestrator"""
    total_phases: int = 0
    current_phase: int = 0
    total_tables: int = 0
    completed_tables: int = 0
    total_records: int = 0
    migrated_records: int = 0
    start_time: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    status: RunStatus = RunStatus.NOT_STARTED


@dataclass
class RecordOutcome:
    """Result of transforming or validating a single record"""
    record: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.record is not None

    @classmethod
    def failed(cls, message: str) -> 'RecordOutcome':
        return cls(record=None, errors=[message])


@dataclass
class BatchOutcome:
    """Counts for one committed batch"""
    successful: int = 0
    failed: int = 0
    validation_errors: List[str] = field(default_factory=list)
    fetched: int = 0


class MigrationEngineService(ABC):
    """Abstract interface for dependency-ordered data migration"""

    @abstractmethod
    def run(self, plans: Sequence[MigrationPlan]) -> List[MigrationResult]:
        """
        Execute every plan, phase by phase

        Args:
            plans: Migration plans; services sharing a phase run concurrently

        Returns:
            One MigrationResult per migrated table

        Raises:
            PlanValidationException: If the plans are inconsistent
            MigrationRunException: If any service fails; carries partial results
        """
        pass

    @abstractmethod
    def migrate_service(self, plan: MigrationPlan) -> List[MigrationResult]:
        """
        Migrate one service's tables sequentially, in plan order

        Raises:
            TableMigrationException: If a table migration fails
        """
        pass

    @abstractmethod
    def get_progress(self) -> MigrationProgress:
        """
        Snapshot of run progress

        Returns:
            A copy of the progress counters; mutating it has no effect
        """
        pass

    @abstractmethod
    def rollback_service(self, service_name: str) -> None:
        """
        Drop every target table of a service, in reverse plan order

        Raises:
            ValueError: If the service has no plan or no target store
        """
        pass
