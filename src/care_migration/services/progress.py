"""
Run-wide migration progress.

A single ``MigrationProgress`` is owned by the orchestrator's tracker; services
running concurrently in one phase update it through the tracker's locked
increments, and observers only ever receive copies.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from care_migration.contracts.migration_engine_service import MigrationProgress, RunStatus


class ProgressTracker:
    """Synchronized owner of one MigrationProgress"""

    def __init__(self):
        self._lock = threading.Lock()
        self._progress = MigrationProgress()

    def start(self, total_phases: int, total_tables: int, now: Optional[datetime] = None) -> None:
        with self._lock:
            self._progress = MigrationProgress(
                total_phases=total_phases,
                total_tables=total_tables,
                start_time=now or datetime.now(timezone.utc),
                status=RunStatus.IN_PROGRESS,
            )

    def set_phase(self, phase: int) -> None:
        with self._lock:
            self._progress.current_phase = phase

    def add_total(self, records: int) -> None:
        with self._lock:
            self._progress.total_records += records

    def add_migrated(self, records: int) -> None:
        with self._lock:
            self._progress.migrated_records += records

    def table_completed(self) -> None:
        with self._lock:
            self._progress.completed_tables += 1

    def finish(self, status: RunStatus) -> None:
        with self._lock:
            self._progress.status = status
            if status is RunStatus.COMPLETED:
                self._progress.estimated_completion = datetime.now(timezone.utc)

    def snapshot(self, now: Optional[datetime] = None) -> MigrationProgress:
        """
        Copy of the current progress

        While a run is in progress and records have moved, ``estimated_completion``
        is projected from the observed record rate.
        """
        with self._lock:
            progress = replace(self._progress)

        if (progress.status is RunStatus.IN_PROGRESS
                and progress.migrated_records > 0
                and progress.start_time is not None):
            now = now or datetime.now(timezone.utc)
            elapsed = (now - progress.start_time).total_seconds()
            if elapsed > 0:
                rate = progress.migrated_records / elapsed
                remaining = max(progress.total_records - progress.migrated_records, 0)
                progress.estimated_completion = now + timedelta(seconds=remaining / rate)

        return progress
