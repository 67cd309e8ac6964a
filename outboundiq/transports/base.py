"""
Base class for metric delivery transports.
"""
import base64
import enum
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..configuration import Configuration

logger = logging.getLogger(__name__)

Batch = List[Dict[str, Any]]


class DeliveryOutcome(enum.Enum):
    """Terminal state of one flush cycle."""
    DELIVERED = 'delivered'
    FAILED = 'failed'
    DELEGATED = 'delegated'


class Transport(ABC):
    """
    Abstract base class for all delivery transports.

    A transport receives a serialized batch (a list of record dicts) and is
    responsible for getting it to the collector. Delivery failures are logged
    and reported through the returned outcome; only encoding errors escape
    send().
    """

    name = None

    def __init__(self, configuration: Configuration):
        self.config = configuration

    @staticmethod
    def encode(batch: Batch) -> str:
        """
        Encode a batch for transmission.

        Args:
            batch (list): Serialized records

        Returns:
            str: Base64 text of the compact JSON document

        Raises:
            TypeError, ValueError: If the batch is not JSON serializable
        """
        json_data = json.dumps(batch, separators=(',', ':'))
        return base64.b64encode(json_data.encode('utf-8')).decode('ascii')

    @abstractmethod
    def send(self, batch: Batch) -> DeliveryOutcome:
        """
        Deliver a batch.

        Args:
            batch (list): Serialized records

        Returns:
            DeliveryOutcome: What happened to the batch
        """
        pass
