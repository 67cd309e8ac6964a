"""
In-memory buffer for metrics waiting to be flushed.
"""
import logging
from typing import List

from .models import ApiCall

logger = logging.getLogger(__name__)


class MetricsBuffer:
    """Ordered holding area for records not yet handed to a transport."""

    def __init__(self):
        self.buffer: List[ApiCall] = []

    def add(self, metric: ApiCall) -> None:
        """
        Add a metric to the buffer.

        Args:
            metric (ApiCall): The metric to buffer
        """
        self.buffer.append(metric)

    def get_all(self) -> List[ApiCall]:
        """
        Get all metrics from the buffer.

        Returns:
            list: A copy of the buffered metrics, in insertion order
        """
        return list(self.buffer)

    def drain(self) -> List[ApiCall]:
        """
        Remove and return every buffered metric.

        Returns:
            list: The buffered metrics, in insertion order
        """
        metrics, self.buffer = self.buffer, []
        return metrics

    def clear(self) -> None:
        """Clear all metrics from the buffer."""
        self.buffer.clear()

    def __len__(self) -> int:
        return len(self.buffer)
