"""
Capture outbound calls made with requests and report them to a client.

Usage::

    import outboundiq
    from outboundiq.interceptors import TrackedSession

    outboundiq.init(api_key)
    session = TrackedSession()
    session.get('https://api.example.com/users')
"""
import logging
import time
from typing import Any, Optional

import requests

from . import config
from .client import Client, get_client

logger = logging.getLogger(__name__)

REQUEST_TYPE = 'requests'


def _truncate(body: Any) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, str):
        body = body.encode('utf-8', errors='replace')
    if not isinstance(body, bytes):
        # Streamed uploads (files, generators) are not captured
        return None
    return body[:config.MAX_BODY_BYTES]


def _resolve(client: Optional[Client]) -> Optional[Client]:
    return client if client is not None else get_client()


def report_response(
    client: Optional[Client],
    response: requests.Response,
    duration: float,
    stream: bool = False
) -> None:
    """
    Report a completed request. Never raises.

    Args:
        client (Client, optional): Target client, the default client if None
        response (requests.Response): The received response
        duration (float): Request duration in milliseconds
        stream (bool): True if the body is streamed and must not be read
    """
    try:
        target = _resolve(client)
        if target is None:
            return
        request = response.request
        target.track_api_call(
            url=request.url,
            method=request.method,
            duration=round(duration, 2),
            status_code=response.status_code,
            request_headers=request.headers,
            request_body=_truncate(request.body),
            response_headers=response.headers,
            response_body=None if stream else _truncate(response.content),
            request_type=REQUEST_TYPE,
        )
    except Exception as e:
        logger.debug("Failed to report response: %s", str(e))


def report_error(
    client: Optional[Client],
    request: requests.PreparedRequest,
    duration: float,
    error: Exception
) -> None:
    """
    Report a request that failed before a response arrived. Never raises.

    Args:
        client (Client, optional): Target client, the default client if None
        request (requests.PreparedRequest): The request that failed
        duration (float): Time spent until the failure, in milliseconds
        error (Exception): The raised exception
    """
    try:
        target = _resolve(client)
        if target is None:
            return
        target.track_api_call(
            url=request.url,
            method=request.method,
            duration=round(duration, 2),
            status_code=0,
            request_headers=request.headers,
            request_body=_truncate(request.body),
            request_type=REQUEST_TYPE,
            error_message=str(error),
            error_type=type(error).__name__,
        )
    except Exception as e:
        logger.debug("Failed to report request error: %s", str(e))


class TrackedSession(requests.Session):
    """requests.Session that reports every request it sends, including failures."""

    def __init__(self, client: Optional[Client] = None):
        """
        Initialize the session.

        Args:
            client (Client, optional): Client to report to. Defaults to the
                client created by outboundiq.init(), looked up per request.
        """
        super().__init__()
        self.outboundiq_client = client

    def send(self, request, **kwargs):
        start = time.perf_counter()
        try:
            response = super().send(request, **kwargs)
        except requests.exceptions.RequestException as e:
            report_error(self.outboundiq_client, request, (time.perf_counter() - start) * 1000, e)
            raise

        report_response(
            self.outboundiq_client,
            response,
            (time.perf_counter() - start) * 1000,
            stream=kwargs.get('stream', False)
        )
        return response


def instrument_session(session: requests.Session, client: Optional[Client] = None) -> requests.Session:
    """
    Report responses received by an existing session through a response hook.

    Requests that fail without a response are not reported; use
    TrackedSession for those.

    Args:
        session (requests.Session): The session to instrument
        client (Client, optional): Client to report to, the default client if None

    Returns:
        requests.Session: The same session
    """
    def _response_hook(response, *args, **kwargs):
        report_response(
            client,
            response,
            response.elapsed.total_seconds() * 1000,
            stream=kwargs.get('stream', False)
        )

    session.hooks['response'].append(_response_hook)
    return session
