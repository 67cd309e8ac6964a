"""
OutboundIQ client: buffers captured API calls and flushes them through the
configured transport.

The client never raises on the tracking path. Configuration errors are the
only exceptions that reach the host application, and only at construction.
"""
import atexit
import json
import logging
import threading
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

import requests

from . import config
from .buffer import MetricsBuffer
from .configuration import Configuration
from .exceptions import ConfigurationError
from .models import ApiCall, Body, HeadersInput
from .transports import DeliveryOutcome, Dispatcher, QueueTransport, Transport, create_transport

logger = logging.getLogger(__name__)

EXCLUDED_HOSTS = ('localhost', '127.0.0.1')


class Client:
    """
    Client for tracking outbound API calls.

    With register_shutdown (the default) the client registers close() with
    atexit, which keeps a reference to it until close() is called. Clients
    created and discarded repeatedly should be closed explicitly or used as
    a context manager.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        dispatcher: Optional[Dispatcher] = None,
        register_shutdown: bool = True,
        **options: Any
    ):
        """
        Initialize the client.

        Args:
            api_key (str, optional): OutboundIQ API key. Without one the client
                is created disabled.
            dispatcher (callable, optional): Dispatcher used by the queue transport
            register_shutdown (bool): Flush remaining metrics at interpreter exit
            **options: Configuration overrides (buffer_size, flush_interval,
                timeout, retry_attempts, max_payload_size,
                max_concurrent_requests, transport, base_url, endpoint,
                temp_dir, enabled)

        Raises:
            ConfigurationError: If the API key or any option is invalid
        """
        self.config = Configuration(api_key, **options)
        self.buffer = MetricsBuffer()
        self.transport: Optional[Transport] = None

        self._dispatcher = dispatcher
        self._lock = threading.RLock()
        self._closed = False
        self._shutdown_registered = False

        if self.config.enabled:
            self.transport = create_transport(self.config, dispatcher)
            logger.info("OutboundIQ client initialized with %s transport", self.config.transport)
        else:
            logger.info("OutboundIQ client disabled - no API key provided or explicitly disabled")

        if register_shutdown:
            # Flush remaining metrics when the interpreter exits
            atexit.register(self.close)
            self._shutdown_registered = True

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self.config.enabled and not self._closed

    def enable(self) -> None:
        """
        Enable tracking.

        Raises:
            ConfigurationError: If the client has no API key
        """
        if not self.config.api_key:
            raise ConfigurationError('Cannot enable tracking without an API key')
        with self._lock:
            if self.transport is None:
                self.transport = create_transport(self.config, self._dispatcher)
            self.config.set_enabled(True)

    def disable(self) -> None:
        """Stop tracking. Metrics already buffered are flushed first."""
        with self._lock:
            self.flush()
            self.config.set_enabled(False)

    def set(self, key: str, value: Any) -> 'Client':
        """
        Change a configuration value at runtime.

        Args:
            key (str): Configuration key
            value: New value

        Returns:
            Client: self

        Raises:
            ConfigurationError: If the key is protected, unknown or the value invalid
        """
        if key == 'enabled':
            if value:
                self.enable()
            else:
                self.disable()
            return self

        with self._lock:
            self.config.set(key, value)
            if key == 'transport' and self.transport is not None:
                if self.transport.name != self.config.transport:
                    self.transport = create_transport(self.config, self._dispatcher)
        return self

    def set_dispatcher(self, dispatcher: Optional[Dispatcher]) -> None:
        """
        Register the function the queue transport hands batches to.

        Args:
            dispatcher (callable): Function receiving (batch, configuration snapshot)
        """
        self._dispatcher = dispatcher
        if isinstance(self.transport, QueueTransport):
            self.transport.set_dispatcher(dispatcher)
        else:
            logger.warning(
                "Dispatcher stored but unused: active transport is %s",
                self.config.transport
            )

    def get_buffered_count(self) -> int:
        """
        Get the number of buffered metrics.

        Returns:
            int: Number of buffered metrics
        """
        return len(self.buffer)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def _should_exclude_url(self, url: Any) -> bool:
        if not isinstance(url, str):
            return False
        # Don't track calls to the collector itself
        if url.split('?', 1)[0] == self.config.endpoint:
            return True
        hostname = urlparse(url).hostname or ''
        return hostname in EXCLUDED_HOSTS or hostname == urlparse(self.config.base_url).hostname

    def track_api_call(
        self,
        url: str,
        method: str,
        duration: float,
        status_code: int,
        request_headers: HeadersInput = None,
        request_body: Body = None,
        response_headers: HeadersInput = None,
        response_body: Body = None,
        request_type: str = 'unknown',
        error_message: Optional[str] = None,
        error_type: Optional[str] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Track an API call. Never raises.

        Args:
            url (str): The API endpoint URL
            method (str): HTTP method used
            duration (float): Request duration in milliseconds
            status_code (int): HTTP status code
            request_headers: Request headers
            request_body (bytes or str, optional): Request body
            response_headers: Response headers
            response_body (bytes or str, optional): Response body
            request_type (str): Tag naming the capturing mechanism
            error_message (str, optional): Error message
            error_type (str, optional): Error type
            user_context (dict, optional): User context (user_id, user_type, context)
        """
        try:
            if not self.enabled:
                logger.debug("Tracking skipped - client is disabled")
                return

            if self._should_exclude_url(url):
                logger.debug("Tracking skipped - URL is excluded: %s", url)
                return

            record = ApiCall.create(
                url=url,
                method=method,
                duration=duration,
                status_code=status_code,
                request_headers=request_headers,
                request_body=request_body,
                response_headers=response_headers,
                response_body=response_body,
                request_type=request_type,
                error_message=error_message,
                error_type=error_type,
                user_context=user_context,
            )
        except Exception as e:
            logger.error("Failed to capture API call to %s: %s", url, str(e))
            return

        self.add_metric(record)

    def add_metric(self, metric: ApiCall) -> None:
        """
        Add a metric to the buffer and flush if the policy says so. Never raises.

        Args:
            metric (ApiCall): The captured call
        """
        try:
            with self._lock:
                if not self.enabled:
                    return

                if not isinstance(metric, ApiCall) or not metric.is_valid():
                    logger.warning("Invalid metric data - missing required fields, dropped")
                    return

                self.buffer.add(metric)

                if self.config.should_flush(len(self.buffer)):
                    self.flush()
        except Exception as e:
            logger.error("Error adding metric: %s", str(e))

    def flush(self) -> Optional[DeliveryOutcome]:
        """
        Send every buffered metric through the transport. Never raises.

        The batch is dropped whatever the outcome; there is no retry from
        the buffer.

        Returns:
            DeliveryOutcome: Outcome of the delivery, or None if nothing was
                sent (empty buffer, disabled client, or a batch that could not
                be serialized)
        """
        with self._lock:
            if not len(self.buffer) or self.transport is None or not self.config.enabled:
                return None

            metrics = self.buffer.drain()
            outcome = None
            try:
                batch = [metric.to_dict() for metric in metrics]
                outcome = self.transport.send(batch)
            except Exception as e:
                logger.error("Failed to flush %d metrics, batch dropped: %s", len(metrics), str(e))
            finally:
                self.config.mark_flushed()

            if outcome is DeliveryOutcome.FAILED:
                logger.warning("Delivery of %d metrics failed, batch dropped", len(metrics))
            elif outcome is not None:
                logger.debug("Flushed %d metrics (%s)", len(metrics), outcome.value)
            return outcome

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """
        Flush remaining metrics and stop tracking. Safe to call repeatedly.

        The final flush makes a single delivery attempt so that closing (and
        interpreter exit) is bounded by the configured timeout.
        """
        with self._lock:
            if self._closed:
                return
            try:
                self.config.set_retry_attempts(0)
                self.flush()
            finally:
                self._closed = True

        if self._shutdown_registered:
            atexit.unregister(self.close)
            self._shutdown_registered = False

    shutdown = close

    def __enter__(self) -> 'Client':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query(self, path: str, headers: Dict[str, str]) -> Optional[Any]:
        if not self.enabled:
            return None

        url = f"{self.config.base_url}{path}"
        headers = {
            'Authorization': f"Bearer {self.config.api_key}",
            'Accept': 'application/json',
            'User-Agent': self.config.user_agent,
            **headers,
        }

        try:
            response = requests.get(url, headers=headers, timeout=self.config.timeout)
            # The server answers with JSON for 2xx, 401 and 404 alike
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Request to %s failed: %s", path, str(e))
            return None
        except ValueError as e:
            logger.error("Invalid response from %s: %s", path, str(e))
            return None

    @staticmethod
    def _user_context_header(user_context: Optional[Dict[str, Any]]) -> Dict[str, str]:
        if not user_context:
            return {}
        return {'X-User-Context': json.dumps(user_context)}

    def recommend(
        self,
        service_name: str,
        request_id: Optional[str] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> Optional[Any]:
        """
        Get the recommended provider/endpoint for a service.

        Args:
            service_name (str): The service name (e.g. 'payment-processing')
            request_id (str, optional): Trace ID for correlation, generated if omitted
            user_context (dict, optional): User context (user_id, user_type, context)

        Returns:
            dict: The server response, or None on network failure
        """
        headers = {'X-Request-Id': request_id or str(uuid.uuid4())}
        headers.update(self._user_context_header(user_context))
        return self._query(f"/v1/recommend/{quote(service_name, safe='')}", headers)

    def provider_status(
        self,
        provider_slug: str,
        user_context: Optional[Dict[str, Any]] = None
    ) -> Optional[Any]:
        """
        Get status and metrics for a provider.

        Args:
            provider_slug (str): The provider slug (e.g. 'paystack')
            user_context (dict, optional): User context

        Returns:
            dict: The server response, or None on network failure
        """
        return self._query(
            f"/v1/provider/{quote(provider_slug, safe='')}/status",
            self._user_context_header(user_context)
        )

    def endpoint_status(
        self,
        endpoint_slug: str,
        user_context: Optional[Dict[str, Any]] = None
    ) -> Optional[Any]:
        """
        Get status and metrics for a specific endpoint.

        Args:
            endpoint_slug (str): The endpoint slug
                (e.g. 'paystack-post-transaction-initialize')
            user_context (dict, optional): User context

        Returns:
            dict: The server response, or None on network failure
        """
        return self._query(
            f"/v1/endpoint/{quote(endpoint_slug, safe='')}/status",
            self._user_context_header(user_context)
        )


# Singleton instance for easy import - set up by init()
default_client: Optional[Client] = None


def init(api_key: Optional[str] = None, **options: Any) -> Client:
    """
    Create the default client once and return it.

    Args:
        api_key (str, optional): API key. Defaults to OUTBOUNDIQ_API_KEY.
        **options: Configuration overrides

    Returns:
        Client: The default client
    """
    global default_client
    if default_client is None:
        default_client = Client(api_key if api_key is not None else config.API_KEY, **options)
    return default_client


def get_client() -> Optional[Client]:
    return default_client


def track_api_call(*args: Any, **kwargs: Any) -> None:
    """
    Track an API call using the default client.

    Accepts the same arguments as Client.track_api_call.
    """
    if default_client is None:
        logger.debug("Tracking skipped - OutboundIQ is not initialized")
        return
    default_client.track_api_call(*args, **kwargs)


def flush() -> Optional[DeliveryOutcome]:
    """
    Flush the default client.

    Returns:
        DeliveryOutcome: Outcome of the delivery, or None
    """
    if default_client is None:
        return None
    return default_client.flush()


def shutdown() -> None:
    """Close the default client and forget it."""
    global default_client
    if default_client is not None:
        default_client.close()
        default_client = None


def get_buffered_count() -> int:
    """
    Get the number of buffered metrics using the default client.

    Returns:
        int: Number of buffered metrics
    """
    if default_client is None:
        return 0
    return default_client.get_buffered_count()
