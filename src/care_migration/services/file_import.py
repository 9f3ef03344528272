"""
File Import Service

Loads a data file exported from a care home system (CSV, TSV, Excel, JSON or
XML) into a table of the source store, so it can be migrated like any other
legacy table. Files are parsed with pandas (Excel through openpyxl), column
types are detected from names and sampled values, confidently typed values
are normalised, and each record then goes through the same transformation
and validation rules a table migration uses. Surviving records are written
in one transaction.
"""

import io
import json
import logging
import re
import time
import uuid
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd
from openpyxl import load_workbook
from sqlalchemy.exc import SQLAlchemyError

from care_migration.contracts.collaborators import AuditService, EventPublisher
from care_migration.contracts.file_import_service import (
    DEFAULT_MAX_FILE_SIZE,
    SUPPORTED_EXTENSIONS,
    DetectedType,
    FieldTypeAnalysis,
    FileImportOptions,
    FileImportResult,
    FileImportServiceInterface,
    ImportIssue,
    ImportSeverity,
)
from care_migration.lib.db_manager import DatabaseManager
from care_migration.lib.exceptions import CareMigrationException, DatabaseException, FileImportException
from care_migration.lib.logging_config import log_context
from care_migration.lib.transforms import (
    strip_whitespace,
    to_bool,
    to_date,
    to_number,
    transform_record,
    uk_phone,
    uk_postcode,
)
from care_migration.lib.validators import validate_date, validate_email, validate_record

logger = logging.getLogger(__name__)

TYPE_SAMPLE_SIZE = 100
AUTO_TRANSFORM_CONFIDENCE = 0.8
SAMPLE_RECORDS = 5

IDENTIFIER_COLUMNS = ('resident_id', 'patient_id', 'id')
BIRTH_DATE_COLUMNS = ('date_of_birth', 'dob')
CARE_LEVELS = ('low dependency', 'medium dependency', 'high dependency', 'nursing care')
MIN_RESIDENT_AGE = 18
MAX_RESIDENT_AGE = 120

SEVERITY_PENALTIES = {
    ImportSeverity.CRITICAL: 10,
    ImportSeverity.HIGH: 5,
    ImportSeverity.MEDIUM: 2,
    ImportSeverity.LOW: 1,
}
WARNING_PENALTY = 0.5

PHONE_LIKE = re.compile(r'^(\+44|0)[0-9\s\-()]{8,15}$')
POSTCODE_LIKE = re.compile(r'^[A-Z]{1,2}[0-9][A-Z0-9]?\s?[0-9][A-Z]{2}$', re.IGNORECASE)
BOOLEAN_WORDS = {'true', 'false', '1', '0', 'yes', 'no', 'y', 'n'}


def _nhs_digits(value: Any) -> str:
    return strip_whitespace(str(value))


# Normaliser applied to every value of a confidently typed column
_NORMALISERS: Dict[DetectedType, Callable[[Any], Any]] = {
    DetectedType.NHS_NUMBER: _nhs_digits,
    DetectedType.DATE: to_date,
    DetectedType.PHONE: uk_phone,
    DetectedType.POSTCODE: uk_postcode,
    DetectedType.NUMBER: to_number,
    DetectedType.BOOLEAN: to_bool,
}


def _share(values: List[Any], check: Callable[[Any], bool]) -> float:
    return sum(1 for value in values if check(value)) / len(values)


def _is_number(value: Any) -> bool:
    try:
        to_number(value)
        return True
    except ValueError:
        return False


def _is_nhs_number(text: str) -> bool:
    return bool(re.fullmatch(r'\d{10}', re.sub(r'\s', '', text)))


def _is_identifier(name: str) -> bool:
    return name == 'id' or name.endswith('_id')


def detect_column_type(column: str, values: List[Any]) -> Tuple[DetectedType, float]:
    """
    Guess a column's type from its name and non-null sample values

    Name hints pick the candidate type; the share of sampled values that fit
    it must clear a per-type threshold. A non-identifier column whose every
    value is a yes/no word is boolean whatever its name.

    Returns:
        (detected type, confidence between 0 and 1)
    """
    if not values:
        return DetectedType.STRING, 0.0

    name = column.lower()
    texts = [str(value).strip() for value in values]

    def named(*hints: str) -> bool:
        return any(hint in name for hint in hints)

    if named('nhs', 'national') and _share(texts, _is_nhs_number) > 0.8:
        return DetectedType.NHS_NUMBER, 0.95
    if named('date', 'dob', 'birth') and _share(values, validate_date) > 0.7:
        return DetectedType.DATE, 0.9
    if named('phone', 'tel', 'mobile') and _share(texts, lambda t: bool(PHONE_LIKE.match(t))) > 0.6:
        return DetectedType.PHONE, 0.85
    if named('postcode', 'postal', 'zip') and _share(texts, lambda t: bool(POSTCODE_LIKE.match(t))) > 0.7:
        return DetectedType.POSTCODE, 0.9
    if named('mail') and _share(texts, validate_email) > 0.8:
        return DetectedType.EMAIL, 0.9
    if named('amount', 'cost', 'price') and _share(values, _is_number) > 0.8:
        return DetectedType.NUMBER, 0.85
    if not _is_identifier(name) and all(
        isinstance(value, bool) or text.lower() in BOOLEAN_WORDS for value, text in zip(values, texts)
    ):
        return DetectedType.BOOLEAN, 0.95

    return DetectedType.STRING, 0.5


def analyze_data_types(records: List[Dict[str, Any]], columns: List[str]) -> Dict[str, FieldTypeAnalysis]:
    """Detect the type of every column from the first records of a file"""
    sample = records[:TYPE_SAMPLE_SIZE]
    analysis = {}

    for column in columns:
        column_values = [record.get(column) for record in sample]
        present = [value for value in column_values if value is not None]
        detected_type, confidence = detect_column_type(column, present)

        analysis[column] = FieldTypeAnalysis(
            column=column,
            detected_type=detected_type,
            confidence=confidence,
            sample_values=tuple(present[:5]),
            null_count=len(column_values) - len(present),
            unique_count=len({str(value) for value in present}),
        )

    return analysis


def quality_score(errors: List[ImportIssue], warnings: List[ImportIssue], field_count: int,
                  record_count: int) -> float:
    """
    Score imported data from 0 to 100

    Each error costs points by severity and each warning half a point. Files
    with more fields earn back up to 10 points for completeness.
    """
    if record_count == 0:
        return 0.0

    score = 100.0
    score -= sum(SEVERITY_PENALTIES[issue.severity] for issue in errors)
    score -= WARNING_PENALTY * len(warnings)
    score += min(field_count * 2, 10)

    return round(max(0.0, min(100.0, score)), 1)


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _as_text(value: Any) -> str:
    return str(value).strip().lower()


class FileImportService(FileImportServiceInterface):
    """
    Imports data files into the source store

    Parsing problems and rejected files raise ``FileImportException``; problems
    with individual records are reported on the result.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        events: Optional[EventPublisher] = None,
        audit: Optional[AuditService] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    ):
        self.db_manager = db_manager
        self.events = events
        self.audit = audit
        self.max_file_size = max_file_size

    def import_file(self, path: Union[str, Path], options: FileImportOptions) -> FileImportResult:
        path = Path(path)
        if not path.is_file():
            raise FileImportException(f"Import file not found: {path}", {'path': str(path)})

        size = path.stat().st_size
        if size > self.max_file_size:
            raise FileImportException(
                f"File {path.name} is {size} bytes; the limit is {self.max_file_size} bytes",
                {'file_name': path.name, 'file_size': size}
            )

        return self.import_from_buffer(path.read_bytes(), path.name, options)

    def import_from_buffer(self, data: bytes, file_name: str, options: FileImportOptions) -> FileImportResult:
        """
        Parse, check and load one file's contents

        Args:
            data: Raw file contents
            file_name: Original file name; its extension selects the parser
            options: Import options

        Returns:
            FileImportResult with counts, issues, detected types and quality score

        Raises:
            FileImportException: If the file is rejected or cannot be parsed
            DatabaseException: If writing the records fails
        """
        import_id = f"import_{uuid.uuid4().hex[:12]}"
        target_table = options.target_table or self._table_name_for(file_name)
        started = time.time()

        with log_context(import_id=import_id):
            self._emit('import_started', {
                'import_id': import_id, 'file_name': file_name, 'file_size': len(data)
            })
            logger.info(f"Importing {file_name} ({len(data)} bytes) into {target_table}")

            try:
                self._check_file(data, file_name)
                records, columns = self._read_records(data, file_name, options)
                self._emit('data_parsed', {'import_id': import_id, 'records_found': len(records)})

                result = FileImportResult(
                    import_id=import_id,
                    file_name=file_name,
                    file_size=len(data),
                    target_table=target_table,
                    records_found=len(records),
                )
                if options.auto_detect_types:
                    result.data_types = analyze_data_types(records, columns)

                accepted = self._process_records(records, columns, options, result)

                if not options.dry_run and accepted:
                    self._load(accepted, target_table, options.if_exists)

            except CareMigrationException as e:
                logger.error(f"Import of {file_name} failed: {e.message}")
                self._emit('import_failed', {'import_id': import_id, 'file_name': file_name, 'error': e.message})
                self._audit('FILE_IMPORT_FAILED', import_id, {
                    'file_name': file_name, 'target_table': target_table, 'error': e.message
                })
                raise

            result.records_imported = 0 if options.dry_run else len(accepted)
            result.records_skipped = len(records) - len(accepted)
            result.sample_data = accepted[:SAMPLE_RECORDS]
            result.quality_score = quality_score(
                result.errors, result.warnings, len(accepted[0]) if accepted else 0, len(records)
            )
            result.processing_time = time.time() - started

            logger.info(
                f"Imported {result.records_imported}/{result.records_found} records from {file_name}, "
                f"{len(result.errors)} errors, {len(result.warnings)} warnings, "
                f"quality {result.quality_score}"
            )
            self._emit('import_completed', {
                'import_id': import_id,
                'records_imported': result.records_imported,
                'records_skipped': result.records_skipped,
                'quality_score': result.quality_score,
            })
            self._audit('FILE_IMPORT_COMPLETED', import_id, {
                'file_name': file_name,
                'target_table': target_table,
                'records_found': result.records_found,
                'records_imported': result.records_imported,
                'records_skipped': result.records_skipped,
                'quality_score': result.quality_score,
                'dry_run': options.dry_run,
            })
            return result

    # Parsing

    def _check_file(self, data: bytes, file_name: str) -> None:
        if len(data) > self.max_file_size:
            raise FileImportException(
                f"File {file_name} is {len(data)} bytes; the limit is {self.max_file_size} bytes",
                {'file_name': file_name, 'file_size': len(data)}
            )

        extension = Path(file_name).suffix.lower()
        if extension not in SUPPORTED_EXTENSIONS:
            raise FileImportException(
                f"Unsupported file format '{extension}'. Supported: {', '.join(SUPPORTED_EXTENSIONS)}",
                {'file_name': file_name}
            )

        if not data.strip():
            raise FileImportException(f"File {file_name} is empty", {'file_name': file_name})

    def _read_records(self, data: bytes, file_name: str,
                      options: FileImportOptions) -> Tuple[List[Dict[str, Any]], List[str]]:
        """Parse the file into records with stripped column names and ``None`` for blanks"""
        frame = self._read_frame(data, Path(file_name).suffix.lower(), options)
        frame.columns = [str(column).strip() for column in frame.columns]

        frame = frame.iloc[options.skip_rows:]
        if options.max_rows is not None:
            frame = frame.head(options.max_rows)

        rows = frame.astype(object).where(frame.notna(), None).to_dict('records')
        records = [{column: _clean(value) for column, value in row.items()} for row in rows]
        records = [record for record in records if any(value is not None for value in record.values())]

        if not records:
            raise FileImportException(f"File {file_name} contains no data records", {'file_name': file_name})

        logger.debug(f"Parsed {len(records)} records with columns {list(frame.columns)}")
        return records, list(frame.columns)

    def _read_frame(self, data: bytes, extension: str, options: FileImportOptions) -> pd.DataFrame:
        try:
            if extension in ('.csv', '.tsv'):
                return pd.read_csv(
                    io.BytesIO(data),
                    sep='\t' if extension == '.tsv' else options.delimiter,
                    encoding=options.encoding,
                    dtype=str,
                    skip_blank_lines=True,
                )

            if extension == '.xlsx':
                sheet = options.sheet_name
                if sheet is not None and sheet not in self.sheet_names(data):
                    raise FileImportException(f"Worksheet '{sheet}' not found", {'sheet_name': sheet})
                return pd.read_excel(io.BytesIO(data), sheet_name=sheet or 0, engine='openpyxl', dtype=object)

            if extension == '.json':
                return pd.DataFrame.from_records(self._json_records(data, options.encoding))

            return pd.read_xml(io.BytesIO(data), parser='etree', dtype=str, encoding=options.encoding)

        except FileImportException:
            raise
        except Exception as e:
            logger.error(f"Failed to parse {extension} data: {str(e)}")
            raise FileImportException(f"Cannot parse file: {str(e)}", {'format': extension}) from e

    @staticmethod
    def _json_records(data: bytes, encoding: str) -> List[Dict[str, Any]]:
        """Accept an array of objects, ``{"data": [...]}``, or a single object"""
        parsed = json.loads(data.decode(encoding))

        if isinstance(parsed, dict) and isinstance(parsed.get('data'), list):
            parsed = parsed['data']
        elif isinstance(parsed, dict):
            parsed = [parsed]

        if not isinstance(parsed, list) or not all(isinstance(item, dict) for item in parsed):
            raise FileImportException("JSON data must be an object or an array of objects")
        return parsed

    @staticmethod
    def sheet_names(data: bytes) -> List[str]:
        """Worksheet names of an Excel workbook"""
        try:
            workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
            names = workbook.sheetnames
            workbook.close()
            return names
        except Exception as e:
            logger.error(f"Failed to read sheet names: {str(e)}")
            raise FileImportException(f"Cannot read Excel file metadata: {str(e)}") from e

    # Record checks

    def _process_records(self, records: List[Dict[str, Any]], columns: List[str],
                         options: FileImportOptions, result: FileImportResult) -> List[Dict[str, Any]]:
        """
        Normalise, transform and validate each record

        A record whose transformation fails is skipped. In strict mode a record
        with any validation error is skipped too.
        """
        normalisers = {
            column: _NORMALISERS[analysis.detected_type]
            for column, analysis in result.data_types.items()
            if analysis.confidence > AUTO_TRANSFORM_CONFIDENCE and analysis.detected_type in _NORMALISERS
        }
        if options.validate_on_import and not any(column in columns for column in IDENTIFIER_COLUMNS):
            result.errors.append(ImportIssue(
                row=0, column='', severity=ImportSeverity.HIGH,
                message=f"No identifier column ({', '.join(IDENTIFIER_COLUMNS)})",
            ))

        accepted = []
        for index, source in enumerate(records):
            row = options.skip_rows + index + 1
            record = self._normalise(row, source, normalisers, result)

            if options.transformation_rules:
                outcome = transform_record(record, list(options.transformation_rules))
                if not outcome.ok:
                    result.errors.append(ImportIssue(row=row, column='', message='; '.join(outcome.errors)))
                    continue
                record = outcome.record

            errors = []
            for message in validate_record(record, list(options.validation_rules)):
                column = message.split(':', 1)[0]
                errors.append(ImportIssue(row=row, column=column, value=record.get(column), message=message))
            if options.validate_on_import:
                errors.extend(self._care_record_checks(row, record, result))

            result.errors.extend(errors)
            if errors and options.strict_validation:
                continue
            accepted.append(record)

        return accepted

    def _normalise(self, row: int, record: Dict[str, Any], normalisers: Dict[str, Callable[[Any], Any]],
                   result: FileImportResult) -> Dict[str, Any]:
        normalised = dict(record)

        for column, normaliser in normalisers.items():
            value = record.get(column)
            if value is None:
                continue

            detected = result.data_types[column].detected_type.value
            try:
                normalised[column] = normaliser(value)
            except (TypeError, ValueError) as e:
                result.warnings.append(ImportIssue(
                    row=row, column=column, value=value, severity=ImportSeverity.MEDIUM,
                    message=f"Could not normalise {detected}: {e}",
                ))
                continue

            if _as_text(normalised[column]) != _as_text(value):
                result.warnings.append(ImportIssue(
                    row=row, column=column, value=value, severity=ImportSeverity.LOW,
                    message=f"Auto-transformed {detected}", suggestion=str(normalised[column]),
                    auto_fixed=True,
                ))

        return normalised

    @staticmethod
    def _care_record_checks(row: int, record: Dict[str, Any], result: FileImportResult) -> List[ImportIssue]:
        """Resident record rules: identifier present, plausible date of birth, known care level"""
        errors = []

        present_ids = [column for column in IDENTIFIER_COLUMNS if column in record]
        if present_ids and all(record[column] is None for column in present_ids):
            errors.append(ImportIssue(
                row=row, column=present_ids[0], severity=ImportSeverity.HIGH,
                message="Missing required identifier",
            ))

        birth_column = next((column for column in BIRTH_DATE_COLUMNS if record.get(column) is not None), None)
        if birth_column:
            try:
                born = to_date(record[birth_column])
            except ValueError:
                born = None

            today = date.today()
            if born and born > today:
                errors.append(ImportIssue(
                    row=row, column=birth_column, value=record[birth_column], severity=ImportSeverity.HIGH,
                    message="Date of birth cannot be in the future",
                ))
            elif born:
                age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
                if age < MIN_RESIDENT_AGE or age > MAX_RESIDENT_AGE:
                    result.warnings.append(ImportIssue(
                        row=row, column=birth_column, value=record[birth_column], severity=ImportSeverity.LOW,
                        message=f"Unusual age for a resident: {age}",
                    ))

        care_level = record.get('care_level')
        if care_level is not None and _as_text(care_level) not in CARE_LEVELS:
            result.warnings.append(ImportIssue(
                row=row, column='care_level', value=care_level, severity=ImportSeverity.LOW,
                message=f"Unknown care level '{care_level}'",
                suggestion=f"One of: {', '.join(CARE_LEVELS)}",
            ))

        return errors

    # Loading

    def _load(self, records: List[Dict[str, Any]], table_name: str, if_exists: str) -> None:
        """Write every accepted record in one transaction"""
        self.db_manager.initialize()
        frame = pd.DataFrame.from_records(records)

        try:
            with self.db_manager.engine.begin() as connection:
                frame.to_sql(table_name, connection, if_exists=if_exists, index=False)
        except SQLAlchemyError as e:
            raise DatabaseException(
                f"Failed to write {len(records)} records to {table_name}: {str(e)}",
                {'table': table_name}
            ) from e
        except ValueError as e:
            # pandas refuses if_exists='fail' on an existing table
            raise FileImportException(str(e), {'table': table_name}) from e
        finally:
            self.db_manager.forget_table(table_name)

        logger.info(f"Wrote {len(records)} records to {self.db_manager.name}.{table_name}")

    @staticmethod
    def _table_name_for(file_name: str) -> str:
        return re.sub(r'\W+', '_', Path(file_name).stem).strip('_').lower() or 'imported_records'

    def _emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.events:
            self.events.emit(event_name, payload)

    def _audit(self, action: str, import_id: str, details: Dict[str, Any]) -> None:
        if self.audit:
            self.audit.log_event(action, 'FileImport', import_id, details)
