"""Process memory monitoring for embedding runs.

The embedding pipeline consults the monitor before each batch and shrinks
the batch when the process is close to its memory cap.
"""

import psutil
from loguru import logger


class MemoryMonitor:
    """Track process RSS against a configurable cap.

    Warning and critical thresholds default to 80% and 90% of the cap.
    """

    def __init__(
        self,
        max_memory_gb: float | None = None,
        warn_threshold_pct: float = 0.8,
        critical_threshold_pct: float = 0.9,
    ):
        """Initialize memory monitor.

        Args:
            max_memory_gb: Maximum memory in GB (default: 8GB)
            warn_threshold_pct: Warning threshold as fraction (default: 0.8 = 80%)
            critical_threshold_pct: Critical threshold as fraction (default: 0.9 = 90%)
        """
        if max_memory_gb is None:
            max_memory_gb = 8.0

        self.max_memory_gb = max_memory_gb
        self.max_memory_bytes = int(max_memory_gb * 1024 * 1024 * 1024)
        self.warn_threshold = warn_threshold_pct
        self.critical_threshold = critical_threshold_pct

        self._warned = False
        self._process = psutil.Process()

    def get_current_memory_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    def get_memory_usage_pct(self) -> float:
        """Current usage as a fraction of the cap (may exceed 1.0)."""
        return self._process.memory_info().rss / self.max_memory_bytes

    def check_memory_limit(self) -> tuple[bool, float, str]:
        """Check if memory usage is within limits.

        Returns:
            Tuple of (is_ok, usage_pct, status) where status is one of
            "ok", "warning", "critical" or "exceeded"
        """
        usage_pct = self.get_memory_usage_pct()

        if usage_pct >= 1.0:
            logger.error(
                f"Memory limit exceeded: {self.get_current_memory_mb():.0f}MB "
                f"/ {self.max_memory_gb:.1f}GB ({usage_pct * 100:.1f}%)"
            )
            return False, usage_pct, "exceeded"

        if usage_pct >= self.warn_threshold:
            status = "critical" if usage_pct >= self.critical_threshold else "warning"
            if not self._warned:
                logger.warning(
                    f"Memory usage {status}: {usage_pct * 100:.1f}% of "
                    f"{self.max_memory_gb:.1f}GB, shrinking embedding batches"
                )
                self._warned = True
            return True, usage_pct, status

        self._warned = False
        return True, usage_pct, "ok"

    def get_adjusted_batch_size(
        self, current_batch_size: int, min_batch_size: int = 1
    ) -> int:
        """Shrink a batch size under memory pressure.

        Args:
            current_batch_size: Requested batch size
            min_batch_size: Floor for the result (default: 1)

        Returns:
            ``current_batch_size`` when usage is normal, half of it above the
            warning threshold, a quarter above critical, and
            ``min_batch_size`` at or over the cap
        """
        _, _, status = self.check_memory_limit()

        if status == "exceeded":
            return min_batch_size
        elif status == "critical":
            return max(min_batch_size, current_batch_size // 4)
        elif status == "warning":
            return max(min_batch_size, current_batch_size // 2)
        else:
            return current_batch_size

    def log_memory_summary(self) -> None:
        logger.info(
            f"Memory usage: {self.get_current_memory_mb():.0f}MB / "
            f"{self.max_memory_gb:.1f}GB ({self.get_memory_usage_pct() * 100:.1f}%)"
        )
