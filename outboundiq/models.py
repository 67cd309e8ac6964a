"""
Metric records captured for outbound API calls.
"""
import logging
import sys
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import psutil
import pytz

logger = logging.getLogger(__name__)

HeaderPairs = Tuple[Tuple[str, str], ...]
HeadersInput = Optional[Union[Mapping, Iterable[Tuple[str, Any]]]]
Body = Optional[Union[bytes, str]]


def normalize_headers(headers: HeadersInput) -> HeaderPairs:
    """
    Flatten headers into an ordered tuple of (name, value) pairs.

    Args:
        headers: A mapping of name to a value or list of values, or an
            iterable of (name, value) pairs. Repeated headers are kept as
            repeated entries.

    Returns:
        tuple: Ordered (name, value) pairs
    """
    if not headers:
        return ()

    items = headers.items() if isinstance(headers, Mapping) else headers
    pairs: List[Tuple[str, str]] = []
    for name, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((str(name), str(v)) for v in value)
        else:
            pairs.append((str(name), str(value)))
    return tuple(pairs)


def _headers_to_dict(pairs: HeaderPairs) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for name, value in pairs:
        grouped.setdefault(name, []).append(value)
    return grouped


def _body_to_text(body: Body) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, bytes):
        return body.decode('utf-8', errors='replace')
    return str(body)


def _max_rss() -> int:
    try:
        import resource
    except ImportError:
        return 0
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    return usage if sys.platform == 'darwin' else usage * 1024


def memory_snapshot() -> Tuple[int, int]:
    """
    Take a snapshot of the current process memory.

    Returns:
        tuple: (resident bytes, peak resident bytes), (0, 0) if unavailable
    """
    try:
        info = psutil.Process().memory_info()
    except psutil.Error as e:
        logger.debug("Could not read process memory: %s", e)
        return 0, 0

    # peak_wset only exists on Windows
    peak = getattr(info, 'peak_wset', None)
    if peak is None:
        peak = _max_rss()
    return info.rss, max(peak, info.rss)


@dataclass(frozen=True)
class ApiCall:
    """One captured outbound API call."""
    url: str
    method: str
    duration: float
    status_code: int
    request_headers: HeaderPairs = ()
    request_body: Body = None
    response_headers: HeaderPairs = ()
    response_body: Body = None
    request_type: str = 'unknown'
    error: Optional[Mapping] = None
    user_context: Optional[Mapping] = None
    transaction_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    memory_usage: int = 0
    memory_peak: int = 0

    @classmethod
    def create(
        cls,
        url: str,
        method: str,
        duration: float,
        status_code: int,
        request_headers: HeadersInput = None,
        request_body: Body = None,
        response_headers: HeadersInput = None,
        response_body: Body = None,
        request_type: Optional[str] = 'unknown',
        error_message: Optional[str] = None,
        error_type: Optional[str] = None,
        user_context: Optional[Mapping] = None
    ) -> 'ApiCall':
        """
        Build a record from the values a capturing hook has at hand.

        Args:
            url (str): The called URL
            method (str): HTTP method used
            duration (float): Request duration in milliseconds
            status_code (int): HTTP status code, 0 if no response was received
            request_headers: Request headers (mapping or pairs)
            request_body (bytes or str, optional): Request body
            response_headers: Response headers (mapping or pairs)
            response_body (bytes or str, optional): Response body
            request_type (str, optional): Tag naming the capturing mechanism
            error_message (str, optional): Error message
            error_type (str, optional): Error type
            user_context (dict, optional): User context (user_id, user_type, context)

        Returns:
            ApiCall: The new record
        """
        error = None
        if error_message is not None or error_type is not None:
            error = MappingProxyType({'message': error_message, 'type': error_type})

        memory_usage, memory_peak = memory_snapshot()

        return cls(
            url=url,
            method=method,
            duration=float(duration),
            status_code=int(status_code),
            request_headers=normalize_headers(request_headers),
            request_body=request_body,
            response_headers=normalize_headers(response_headers),
            response_body=response_body,
            request_type=request_type or 'unknown',
            error=error,
            user_context=MappingProxyType(dict(user_context)) if user_context is not None else None,
            memory_usage=memory_usage,
            memory_peak=memory_peak,
        )

    def is_valid(self) -> bool:
        """Return True if the record carries a non-empty URL and method."""
        return (
            isinstance(self.url, str) and bool(self.url)
            and isinstance(self.method, str) and bool(self.method)
        )

    @property
    def recorded_at(self) -> str:
        return datetime.fromtimestamp(self.timestamp, pytz.UTC).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the record to its transmission form.

        Returns:
            dict: JSON-ready representation of the call
        """
        data = {
            'transaction_id': self.transaction_id,
            'url': self.url,
            'method': self.method,
            'duration': self.duration,
            'status_code': self.status_code,
            'request_headers': _headers_to_dict(self.request_headers),
            'request_body': _body_to_text(self.request_body),
            'response_headers': _headers_to_dict(self.response_headers),
            'response_body': _body_to_text(self.response_body),
            'timestamp': self.timestamp,
            'recorded_at': self.recorded_at,
            'memory_usage': self.memory_usage,
            'memory_peak': self.memory_peak,
            'request_type': self.request_type,
        }

        if self.error is not None:
            data['error'] = dict(self.error)

        if self.user_context is not None:
            data['user_context'] = dict(self.user_context)

        return data
