"""Exception types raised across branchchat."""

from typing import Optional


class ConfigurationError(ValueError):
    """Raised when a send cannot start: no provider, unknown or disabled model."""


class ProviderError(Exception):
    """A provider request failed.

    ``status_code`` carries the HTTP status when the provider returned one, so
    the retry controller can pick a policy for it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OperationAborted(Exception):
    """The operation was cancelled by the user (not a failure)."""


class ToolExecutionError(Exception):
    """A tool could not be executed (unknown server, connection or call failure)."""


class RequestLimitExceeded(RuntimeError):
    """A turn needed more provider requests than ``Config.request_limit`` allows."""
