"""
Queue-based transport that dispatches metrics to a background job.

Use this transport when:
- The host application runs queue workers (Celery, RQ, SQS consumers, ...)
- You want truly async behavior on serverless platforms
- You have a worker process that can call deliver_batch()
"""
import logging
from typing import Any, Callable, Dict, Optional

from ..configuration import Configuration
from .base import Batch, DeliveryOutcome, Transport
from .sync_transport import SyncTransport

logger = logging.getLogger(__name__)

Dispatcher = Callable[[Batch, Dict[str, Any]], None]


class QueueTransport(Transport):
    """
    Delegates delivery to a host-supplied dispatcher.

    Without a dispatcher every batch goes out through a SyncTransport, so
    metrics are not lost just because nothing was wired up.
    """

    name = 'queue'

    def __init__(self, configuration: Configuration, dispatcher: Optional[Dispatcher] = None):
        """
        Initialize the transport.

        Args:
            configuration (Configuration): Delivery policy
            dispatcher (callable, optional): Function receiving
                (batch, configuration snapshot), usually enqueueing a job
        """
        super().__init__(configuration)
        self.dispatcher = dispatcher
        self.fallback = SyncTransport(configuration)

    def set_dispatcher(self, dispatcher: Optional[Dispatcher]) -> None:
        self.dispatcher = dispatcher

    def has_dispatcher(self) -> bool:
        return self.dispatcher is not None

    def send(self, batch: Batch) -> DeliveryOutcome:
        if not self.has_dispatcher():
            logger.warning(
                "Queue transport has no dispatcher configured, sending %d metrics synchronously",
                len(batch)
            )
            return self.fallback.send(batch)

        try:
            self.dispatcher(batch, self.config.snapshot())
        except Exception as e:
            logger.error("Error dispatching metrics to queue: %s", str(e))
            return DeliveryOutcome.FAILED

        logger.debug("Dispatched %d metrics to queue", len(batch))
        return DeliveryOutcome.DELEGATED


def deliver_batch(batch: Batch, snapshot: Dict[str, Any]) -> DeliveryOutcome:
    """
    Deliver a dispatched batch from a queue worker.

    Args:
        batch (list): Serialized records received by the dispatcher
        snapshot (dict): Configuration snapshot received by the dispatcher

    Returns:
        DeliveryOutcome: Result of the blocking send
    """
    return SyncTransport(Configuration.from_snapshot(snapshot)).send(batch)
