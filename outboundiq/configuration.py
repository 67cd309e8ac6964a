"""
Delivery policy: buffering thresholds, transport selection and credentials.
"""
import logging
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from . import config
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    'enabled': True,
    'timeout': config.REQUEST_TIMEOUT,
    'retry_attempts': config.MAX_RETRIES,
    'buffer_size': config.BUFFER_SIZE,
    'flush_interval': config.FLUSH_INTERVAL,
    'max_payload_size': config.MAX_PAYLOAD_SIZE,
    'max_concurrent_requests': config.MAX_CONCURRENT_REQUESTS,
    'transport': config.TRANSPORT,
    'base_url': config.BASE_URL,
    'endpoint': None,  # derived from base_url when not given
    'temp_dir': None,  # config.TEMP_DIR when not given
}

# Cannot be changed through set() once the configuration exists
PROTECTED_PROPERTIES = frozenset({
    'version',
    'max_payload_size',
    'max_concurrent_requests',
})

TRANSPORT_NAMES = ('async', 'file', 'sync', 'queue')

_CONTROL_CHAR_RE = re.compile(r"[\x00-\x1f\x7f]")


def _to_number(key: str, value: Any, cast=int):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for {key}: {value!r}")


def _validate_url(key: str, url: Any) -> str:
    url = str(url or '').strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigurationError(f"Invalid {key} URL: {url!r}")
    return url


class Configuration:
    """
    Holds the delivery policy of one client.

    Payload size and concurrency bounds are validated strictly; every other
    numeric threshold is clamped to its floor.
    """

    def __init__(self, api_key: Optional[str] = None, **options: Any):
        """
        Initialize the configuration.

        Args:
            api_key (str, optional): OutboundIQ API key. None disables tracking.
            **options: Overrides for any key in DEFAULTS

        Raises:
            ConfigurationError: If an option is unknown or out of range, or the
                API key is malformed
        """
        unknown = set(options) - set(DEFAULTS)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration option(s): {', '.join(sorted(unknown))}"
            )

        merged = dict(DEFAULTS, **options)

        if api_key is not None:
            self._validate_api_key(api_key)
        self._api_key = api_key or ''
        self._enabled = api_key is not None and bool(merged['enabled'])
        self._version = config.VERSION

        self._max_payload_size = self._validate_max_payload_size(merged['max_payload_size'])
        self._max_concurrent_requests = self._validate_max_concurrent_requests(
            merged['max_concurrent_requests']
        )

        self._base_url = _validate_url('base_url', merged['base_url']).rstrip('/')
        if merged['endpoint']:
            self._endpoint = _validate_url('endpoint', merged['endpoint'])
        else:
            self._endpoint = self._base_url + config.METRICS_PATH
        self._temp_dir = merged['temp_dir'] or config.TEMP_DIR

        self.set_buffer_size(merged['buffer_size'])
        self.set_flush_interval(merged['flush_interval'])
        self.set_timeout(merged['timeout'])
        self.set_retry_attempts(merged['retry_attempts'])
        self.set_transport(merged['transport'])

        self.last_flush_time = time.monotonic()

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> 'Configuration':
        """
        Rebuild a configuration from the output of snapshot().

        Args:
            snapshot (dict): Delivery settings

        Returns:
            Configuration: A configuration using the synchronous transport
        """
        return cls(
            snapshot['api_key'],
            endpoint=snapshot['endpoint'],
            base_url=snapshot.get('base_url', config.BASE_URL),
            timeout=snapshot.get('timeout', config.REQUEST_TIMEOUT),
            retry_attempts=snapshot.get('retry_attempts', config.MAX_RETRIES),
            max_payload_size=snapshot.get('max_payload_size', config.MAX_PAYLOAD_SIZE),
            transport='sync',
        )

    @staticmethod
    def _validate_api_key(api_key: str) -> None:
        if not api_key:
            raise ConfigurationError('API key cannot be empty')
        if _CONTROL_CHAR_RE.search(api_key):
            raise ConfigurationError('API key contains invalid control characters')
        if len(api_key) < config.MIN_API_KEY_LENGTH:
            raise ConfigurationError('Invalid API key format')

    @staticmethod
    def _validate_max_payload_size(size: Any) -> int:
        size = _to_number('max_payload_size', size)
        if not config.MIN_PAYLOAD_SIZE_LIMIT <= size <= config.MAX_PAYLOAD_SIZE_LIMIT:
            raise ConfigurationError(
                f"Max payload size must be between {config.MIN_PAYLOAD_SIZE_LIMIT} "
                f"and {config.MAX_PAYLOAD_SIZE_LIMIT} bytes"
            )
        return size

    @staticmethod
    def _validate_max_concurrent_requests(count: Any) -> int:
        count = _to_number('max_concurrent_requests', count)
        if not config.MIN_CONCURRENT_REQUESTS_LIMIT <= count <= config.MAX_CONCURRENT_REQUESTS_LIMIT:
            raise ConfigurationError(
                f"Max concurrent requests must be between {config.MIN_CONCURRENT_REQUESTS_LIMIT} "
                f"and {config.MAX_CONCURRENT_REQUESTS_LIMIT}"
            )
        return count

    # Read-only settings

    @property
    def api_key(self) -> str:
        return self._api_key

    @property
    def version(self) -> str:
        return self._version

    @property
    def user_agent(self) -> str:
        return f"OutboundIQ-Python/{self._version}"

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def temp_dir(self) -> str:
        return self._temp_dir

    @property
    def max_payload_size(self) -> int:
        return self._max_payload_size

    @property
    def max_concurrent_requests(self) -> int:
        return self._max_concurrent_requests

    # Mutable settings

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def flush_interval(self) -> float:
        return self._flush_interval

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def retry_attempts(self) -> int:
        return self._retry_attempts

    @property
    def transport(self) -> str:
        return self._transport

    def set_buffer_size(self, size: Any) -> 'Configuration':
        self._buffer_size = max(1, _to_number('buffer_size', size))
        return self

    def set_flush_interval(self, seconds: Any) -> 'Configuration':
        self._flush_interval = max(1, _to_number('flush_interval', seconds, float))
        return self

    def set_timeout(self, seconds: Any) -> 'Configuration':
        self._timeout = max(1, _to_number('timeout', seconds, float))
        return self

    def set_retry_attempts(self, attempts: Any) -> 'Configuration':
        self._retry_attempts = max(0, _to_number('retry_attempts', attempts))
        return self

    def set_enabled(self, enabled: Any) -> 'Configuration':
        self._enabled = bool(enabled)
        return self

    def set_transport(self, transport: Any) -> 'Configuration':
        name = str(transport).lower()
        if name not in TRANSPORT_NAMES:
            raise ConfigurationError(
                f"Unknown transport {transport!r}, expected one of {', '.join(TRANSPORT_NAMES)}"
            )
        self._transport = name
        return self

    def set(self, key: str, value: Any) -> 'Configuration':
        """
        Set a configuration value by key.

        Args:
            key (str): Configuration key
            value: New value, validated by the matching setter

        Returns:
            Configuration: self

        Raises:
            ConfigurationError: If the key is protected or unknown
        """
        if key in PROTECTED_PROPERTIES:
            raise ConfigurationError(f"Cannot modify protected property: {key}")

        setters = {
            'buffer_size': self.set_buffer_size,
            'flush_interval': self.set_flush_interval,
            'timeout': self.set_timeout,
            'retry_attempts': self.set_retry_attempts,
            'enabled': self.set_enabled,
            'transport': self.set_transport,
        }
        if key not in setters:
            raise ConfigurationError(f"Unknown configuration key: {key}")

        setters[key](value)
        logger.debug("Configuration %s set to %r", key, value)
        return self

    # Flush bookkeeping

    def should_flush(self, queue_size: int) -> bool:
        """
        Decide whether the buffer should be flushed now.

        Args:
            queue_size (int): Number of buffered metrics

        Returns:
            bool: True if the size threshold is reached or the flush interval elapsed
        """
        time_since_last_flush = time.monotonic() - self.last_flush_time
        return queue_size >= self._buffer_size or time_since_last_flush >= self._flush_interval

    def mark_flushed(self) -> None:
        self.last_flush_time = time.monotonic()

    # Delivery helpers

    def headers(self) -> Dict[str, str]:
        """Headers sent with every metrics delivery."""
        return {
            'Authorization': f"Bearer {self._api_key}",
            'Content-Type': 'application/json',
            'User-Agent': self.user_agent,
        }

    def connect_timeout(self) -> float:
        """Connect timeout, always shorter than the overall send timeout."""
        return min(config.CONNECT_TIMEOUT, self._timeout / 2)

    def snapshot(self) -> Dict[str, Any]:
        """
        Get the delivery settings as a plain dict.

        Handed to queue dispatchers so a worker can deliver the batch later
        without access to this object.

        Returns:
            dict: Delivery settings
        """
        return {
            'api_key': self._api_key,
            'endpoint': self._endpoint,
            'base_url': self._base_url,
            'timeout': self._timeout,
            'connect_timeout': self.connect_timeout(),
            'retry_attempts': self._retry_attempts,
            'max_payload_size': self._max_payload_size,
            'version': self._version,
            'user_agent': self.user_agent,
            'transport': self._transport,
        }
