"""
Error types raised by the SES mail forwarder.

Each stage raises its own error kind after logging the underlying cause.
The pipeline driver collapses all of them into ForwardingFailedError, so the
specific kind is only visible in the logs.
"""


class ForwarderError(Exception):
    """Base class for all forwarder errors."""


class InvalidEventError(ForwarderError):
    """The trigger payload is not a single SES receipt record."""


class ConfigurationError(ForwarderError):
    """Forwarder configuration is missing or cannot be parsed."""


class FetchError(ForwarderError):
    """The raw message could not be loaded from S3."""


class SendError(ForwarderError):
    """SES rejected or failed to transmit the rewritten message."""


class ForwardingFailedError(ForwarderError):
    """Generic invocation failure reported back to the Lambda runtime."""
