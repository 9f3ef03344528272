"""
Performance Monitoring

Samples process memory and CPU with psutil while backups and restores run,
so restore results can report peak memory and throughput.
"""

import logging
import psutil
import time
from typing import Optional, List
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass
class PerformanceMetrics:
    """Performance metrics snapshot"""
    timestamp: float
    memory_used_mb: float
    memory_percent: float
    cpu_percent: float


class PerformanceMonitor:
    """
    Resource sampling for long-running operations

    Each sample is appended to ``metrics_history``; callers create one monitor
    per operation and read the peak afterwards.
    """

    def __init__(self, enable_monitoring: bool = True, memory_limit_mb: Optional[float] = None):
        """
        Initialize performance monitor

        Args:
            enable_monitoring: Whether to keep a history of samples
            memory_limit_mb: Log a warning when resident memory exceeds this
        """
        self.enable_monitoring = enable_monitoring
        self.memory_limit_mb = memory_limit_mb
        self.process = psutil.Process()
        self.metrics_history: List[PerformanceMetrics] = []

    def get_current_metrics(self) -> PerformanceMetrics:
        """
        Get current performance metrics

        Returns:
            Current performance metrics
        """
        memory_info = self.process.memory_info()

        metrics = PerformanceMetrics(
            timestamp=time.time(),
            memory_used_mb=memory_info.rss / BYTES_PER_MB,
            memory_percent=self.process.memory_percent(),
            cpu_percent=self.process.cpu_percent(interval=None)
        )

        if self.enable_monitoring:
            self.metrics_history.append(metrics)

        return metrics

    def sample(self) -> None:
        """Record one sample; called between stages of an operation"""
        metrics = self.get_current_metrics()

        if self.memory_limit_mb and metrics.memory_used_mb > self.memory_limit_mb:
            logger.warning(
                f"Memory usage {metrics.memory_used_mb:.2f} MB exceeds "
                f"limit of {self.memory_limit_mb} MB"
            )

    def get_memory_usage_mb(self) -> float:
        return self.get_current_metrics().memory_used_mb

    def get_peak_memory_mb(self) -> float:
        """
        Get peak memory usage from history

        Returns:
            Peak memory usage in megabytes
        """
        if not self.metrics_history:
            return self.get_memory_usage_mb()

        return max(m.memory_used_mb for m in self.metrics_history)
