"""
Migration Reporting Service

Summaries and JSON reports for migration runs.
"""

import logging
import json
from pathlib import Path
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone

from care_migration.contracts.migration_engine_service import MigrationResult, MigrationStatus

logger = logging.getLogger(__name__)


class MigrationReporter:
    """
    Migration reporting service

    Generates per-run reports with table outcomes, record counts and
    success rates.
    """

    def __init__(self, output_dir: Optional[Path] = None):
        """
        Initialize reporter

        Args:
            output_dir: Directory for report output (default: logs/)
        """
        self.output_dir = Path(output_dir) if output_dir else Path("logs")
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def generate_run_report(
        self,
        run_id: str,
        results: List[MigrationResult],
        summary: Optional[Dict[str, Any]] = None
    ) -> Path:
        """
        Generate migration run report

        Args:
            run_id: Run identifier
            results: Per-table migration results, including partial ones
            summary: Summary statistics; computed from results when omitted

        Returns:
            Path to generated report file
        """
        report_data = {
            'run_id': run_id,
            'generated_at': datetime.now(timezone.utc).isoformat(),
            'summary': summary if summary is not None else self.generate_summary(results),
            'table_results': [result.to_dict() for result in results]
        }

        report_path = self.output_dir / f"migration_report_{run_id}.json"

        with open(report_path, 'w') as f:
            json.dump(report_data, f, indent=2, default=str)

        logger.info(f"Generated migration report: {report_path}")
        return report_path

    def generate_summary(self, results: List[MigrationResult]) -> Dict[str, Any]:
        """
        Generate migration summary statistics

        Args:
            results: Per-table migration results

        Returns:
            Summary dictionary
        """
        total_tables = len(results)
        completed = sum(1 for r in results if r.status is MigrationStatus.COMPLETED)
        partial = sum(1 for r in results if r.status is MigrationStatus.PARTIAL)
        failed = sum(1 for r in results if r.status is MigrationStatus.FAILED)
        total_records = sum(r.total_records for r in results)
        migrated_records = sum(r.migrated_records for r in results)

        return {
            'total_tables': total_tables,
            'completed_tables': completed,
            'partial_tables': partial,
            'failed_tables': failed,
            'total_records': total_records,
            'migrated_records': migrated_records,
            'failed_records': sum(r.failed_records for r in results),
            'validation_errors': sum(len(r.validation_errors) for r in results),
            'services': sorted({r.service_name for r in results}),
            'success_rate': (migrated_records / total_records * 100) if total_records > 0 else 0
        }
