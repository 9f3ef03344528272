"""
Backup and Restore Service Contract

Records describing point-in-time backups of a pipeline's data, restore
requests and their outcomes, and the abstract backup/restore interfaces.
"""

from typing import Any, Dict, List, Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum


class BackupType(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"


class BackupStatus(Enum):
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class VerificationStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class BackupPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RestoreStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class IntegrityCheckType(Enum):
    CHECKSUM = "checksum"
    RECORD_COUNT = "record_count"
    FOREIGN_KEYS = "foreign_keys"
    CONSTRAINTS = "constraints"
    DATA_TYPES = "data_types"


class IntegrityStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


@dataclass(frozen=True)
class BackupSettings:
    """Externally supplied backup configuration"""
    storage_path: str = "./backups"
    compression_enabled: bool = True
    compression_level: int = 6
    encryption_enabled: bool = True
    verification_enabled: bool = True
    retention_days: Dict[str, int] = field(default_factory=lambda: {
        BackupType.FULL.value: 30,
        BackupType.INCREMENTAL.value: 7,
        BackupType.DIFFERENTIAL.value: 14,
    })

    def retention_for(self, backup_type: BackupType) -> int:
        return self.retention_days.get(backup_type.value, 30)


@dataclass
class BackupOptions:
    """Per-request overrides for a backup"""
    priority: BackupPriority = BackupPriority.HIGH
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    compression_enabled: Optional[bool] = None
    encryption_enabled: Optional[bool] = None
    verification_enabled: Optional[bool] = None
    retention_days: Optional[int] = None
    # Pipeline whose data is dumped; defaults to the backup's own pipeline id
    snapshot_of: Optional[str] = None


@dataclass(frozen=True)
class BackupConfiguration:
    """Immutable description of one backup request"""
    backup_id: str
    pipeline_id: str
    created_at: datetime
    backup_type: BackupType
    compression_enabled: bool
    encryption_enabled: bool
    retention_policy: int  # days
    verification_enabled: bool
    backup_location: str
    priority: BackupPriority


@dataclass
class BackupMetadata:
    """Lifecycle record of one backup, persisted apart from its artifact"""
    backup_id: str
    pipeline_id: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    status: BackupStatus = BackupStatus.CREATING
    backup_size: int = 0
    record_count: int = 0
    table_count: int = 0
    checksum_md5: str = ""
    checksum_sha256: str = ""
    compression_ratio: Optional[float] = None
    encryption_algorithm: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    tags: List[str] = field(default_factory=list)
    description: str = ""
    backup_type: BackupType = BackupType.FULL
    retention_days: int = 30
    snapshot_of: Optional[str] = None
    base_backup_id: Optional[str] = None

    @property
    def is_restorable(self) -> bool:
        return (self.status is BackupStatus.COMPLETED
                and self.verification_status is VerificationStatus.VERIFIED)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, list):
                value = list(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupMetadata':
        values = dict(data)
        for name in ('created_at', 'completed_at'):
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        values['status'] = BackupStatus(values.get('status', BackupStatus.CREATING.value))
        values['verification_status'] = VerificationStatus(
            values.get('verification_status', VerificationStatus.PENDING.value)
        )
        values['backup_type'] = BackupType(values.get('backup_type', BackupType.FULL.value))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class BackupSchedule:
    """Recurring automated backup request"""
    pipeline_id: str
    frequency: str  # hourly | daily | weekly
    retention_days: int
    compression_enabled: bool = True
    encryption_enabled: bool = True


@dataclass
class RestoreOptions:
    """Options for a restore (one-click rollback)"""
    verify_integrity: bool = True
    create_test_restore: bool = False
    notify_on_completion: bool = True
    rollback_on_failure: bool = True
    preserve_current_data: bool = False
    backup_id: Optional[str] = None


@dataclass
class IntegrityCheckResult:
    check_type: IntegrityCheckType
    status: IntegrityStatus
    details: str
    expected_value: Any = None
    actual_value: Any = None


@dataclass
class RestorePerformanceMetrics:
    total_duration: float = 0.0  # milliseconds
    data_transfer_rate: float = 0.0  # MB/s
    records_per_second: float = 0.0
    peak_memory_usage: float = 0.0  # MB
    disk_space_used: float = 0.0  # MB


@dataclass
class RestoreResult:
    """Outcome of one restore; integrity checks are only ever appended"""
    restore_id: str
    backup_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: RestoreStatus = RestoreStatus.RUNNING
    records_restored: int = 0
    tables_restored: int = 0
    integrity_check_results: List[IntegrityCheckResult] = field(default_factory=list)
    performance_metrics: RestorePerformanceMetrics = field(default_factory=RestorePerformanceMetrics)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def add_check(self, check: IntegrityCheckResult) -> None:
        self.integrity_check_results.append(check)

    def failed_checks(self) -> List[IntegrityCheckResult]:
        return [c for c in self.integrity_check_results if c.status is IntegrityStatus.FAILED]


class BackupService(ABC):
    """Abstract interface for creating and listing backups"""

    @abstractmethod
    def create_backup(self, pipeline_id: str, options: Optional[BackupOptions] = None) -> BackupConfiguration:
        """
        Dump, compress, encrypt, checksum and verify a full backup

        Raises:
            BackupStageException: If any stage fails; metadata is left ``failed``
        """
        pass

    @abstractmethod
    def create_incremental_backup(self, pipeline_id: str,
                                  since_backup_id: Optional[str] = None) -> BackupConfiguration:
        """
        Back up only the changes since a verified base backup

        Raises:
            BackupNotFoundException: If no usable base backup exists
        """
        pass

    @abstractmethod
    def list_backups(self, pipeline_id: str) -> List[BackupMetadata]:
        """All backups of a pipeline, newest first"""
        pass


class RestoreService(ABC):
    """Abstract interface for restoring a pipeline from its backups"""

    @abstractmethod
    def restore(self, pipeline_id: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        """
        Restore the latest verified backup of a pipeline

        Raises:
            BackupNotFoundException: If no completed, verified backup exists
        """
        pass
