"""
OutboundIQ SDK for tracking outbound API calls.
"""
from .config import VERSION as __version__
from .client import (
    Client,
    init,
    get_client,
    track_api_call,
    flush,
    shutdown,
    get_buffered_count
)
from .configuration import Configuration
from .exceptions import ConfigurationError, OutboundIQError
from .interceptors import TrackedSession, instrument_session
from .models import ApiCall
from .transports import (
    AsyncTransport,
    DeliveryOutcome,
    QueueTransport,
    SyncTransport,
    deliver_batch
)

__all__ = [
    'ApiCall',
    'AsyncTransport',
    'Client',
    'Configuration',
    'ConfigurationError',
    'DeliveryOutcome',
    'OutboundIQError',
    'QueueTransport',
    'SyncTransport',
    'TrackedSession',
    'deliver_batch',
    'flush',
    'get_buffered_count',
    'get_client',
    'init',
    'instrument_session',
    'shutdown',
    'track_api_call',
]
