"""
Exceptions raised by the OutboundIQ SDK.
"""


class OutboundIQError(Exception):
    """Base class for all SDK errors."""


class ConfigurationError(OutboundIQError, ValueError):
    """
    Raised when the SDK is constructed or reconfigured with invalid settings.

    This is the only error the SDK lets escape to the host application; it is
    raised synchronously at construction time, before any network activity.
    """
