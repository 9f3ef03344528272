"""
File Import Service Contract

Data model for loading a spreadsheet or data file (CSV, TSV, Excel, JSON,
XML) into a source-store table, with per-column type detection and a data
quality score for the imported records.
"""

from typing import Any, Dict, List, Optional, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from care_migration.contracts.migration_engine_service import TransformationRule, ValidationRule

SUPPORTED_EXTENSIONS = ('.csv', '.tsv', '.xlsx', '.json', '.xml')
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024


class ImportSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DetectedType(Enum):
    """Column types recognised from column names and sampled values"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    EMAIL = "email"
    PHONE = "phone"
    NHS_NUMBER = "nhs_number"
    POSTCODE = "postcode"


@dataclass(frozen=True)
class ImportIssue:
    """One problem found in an imported row; ``row`` is 1-based, 0 for file-level issues"""
    row: int
    column: str
    message: str
    value: Any = None
    severity: ImportSeverity = ImportSeverity.MEDIUM
    suggestion: Optional[str] = None
    auto_fixed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'row': self.row,
            'column': self.column,
            'message': self.message,
            'value': self.value,
            'severity': self.severity.value,
            'suggestion': self.suggestion,
            'auto_fixed': self.auto_fixed,
        }


@dataclass(frozen=True)
class FieldTypeAnalysis:
    """Detected type of one column"""
    column: str
    detected_type: DetectedType
    confidence: float
    sample_values: Tuple[Any, ...] = ()
    null_count: int = 0
    unique_count: int = 0


@dataclass(frozen=True)
class FileImportOptions:
    """
    How to read, check and load one file

    ``transformation_rules`` empty means records are loaded with their file
    columns unchanged. ``strict_validation`` skips any record that fails a
    validation rule; otherwise failures are reported and the record is loaded.
    """
    target_table: Optional[str] = None
    delimiter: str = ','
    encoding: str = 'utf-8'
    sheet_name: Optional[str] = None
    skip_rows: int = 0
    max_rows: Optional[int] = None
    auto_detect_types: bool = True
    validate_on_import: bool = True
    strict_validation: bool = False
    transformation_rules: Tuple[TransformationRule, ...] = ()
    validation_rules: Tuple[ValidationRule, ...] = ()
    if_exists: str = 'append'
    dry_run: bool = False

    def __post_init__(self):
        if self.if_exists not in ('append', 'replace', 'fail'):
            raise ValueError(f"if_exists must be append, replace or fail, got '{self.if_exists}'")
        if self.skip_rows < 0:
            raise ValueError("skip_rows cannot be negative")
        if self.max_rows is not None and self.max_rows <= 0:
            raise ValueError("max_rows must be positive")


@dataclass
class FileImportResult:
    """Outcome of one file import"""
    import_id: str
    file_name: str
    file_size: int
    target_table: Optional[str]
    records_found: int = 0
    records_imported: int = 0
    records_skipped: int = 0
    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)
    data_types: Dict[str, FieldTypeAnalysis] = field(default_factory=dict)
    sample_data: List[Dict[str, Any]] = field(default_factory=list)
    processing_time: float = 0.0
    quality_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'import_id': self.import_id,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'target_table': self.target_table,
            'records_found': self.records_found,
            'records_imported': self.records_imported,
            'records_skipped': self.records_skipped,
            'errors': [issue.to_dict() for issue in self.errors],
            'warnings': [issue.to_dict() for issue in self.warnings],
            'data_types': {
                column: {
                    'type': analysis.detected_type.value,
                    'confidence': analysis.confidence,
                    'null_count': analysis.null_count,
                    'unique_count': analysis.unique_count,
                }
                for column, analysis in self.data_types.items()
            },
            'processing_time': round(self.processing_time, 3),
            'quality_score': self.quality_score,
        }


class FileImportServiceInterface(ABC):

    @abstractmethod
    def import_file(self, path: Path, options: FileImportOptions) -> FileImportResult:
        """
        Import a file from disk

        Raises:
            FileImportException: If the file is missing, too large, of an
                unsupported format, empty, or cannot be parsed
        """
        pass

    @abstractmethod
    def import_from_buffer(self, data: bytes, file_name: str, options: FileImportOptions) -> FileImportResult:
        """Import file contents already in memory; the format comes from ``file_name``"""
        pass
