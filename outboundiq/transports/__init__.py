"""
Delivery transports for buffered metrics.
"""
from typing import Optional

from ..configuration import Configuration
from .async_transport import AsyncTransport
from .base import Batch, DeliveryOutcome, Transport
from .queue_transport import Dispatcher, QueueTransport, deliver_batch
from .sync_transport import SyncTransport

# 'file' is the historical name of the detached transport
TRANSPORTS = {
    'async': AsyncTransport,
    'file': AsyncTransport,
    'sync': SyncTransport,
    'queue': QueueTransport,
}


def create_transport(configuration: Configuration, dispatcher: Optional[Dispatcher] = None) -> Transport:
    """
    Create the transport selected by a configuration.

    Args:
        configuration (Configuration): Delivery policy
        dispatcher (callable, optional): Dispatcher for the queue transport

    Returns:
        Transport: The transport instance
    """
    transport_class = TRANSPORTS[configuration.transport]
    if transport_class is QueueTransport:
        return QueueTransport(configuration, dispatcher=dispatcher)
    return transport_class(configuration)


__all__ = [
    'AsyncTransport',
    'Batch',
    'DeliveryOutcome',
    'Dispatcher',
    'QueueTransport',
    'SyncTransport',
    'TRANSPORTS',
    'Transport',
    'create_transport',
    'deliver_batch',
]
