"""
Error taxonomy for the Incus provider.

Validation and configuration errors are raised before any call reaches the
endpoint. Transport, endpoint and asynchronous-operation errors come back
from the endpoint and are never retried here.
"""


class ProviderError(Exception):
    """Base class for every error raised by the provider."""


class ValidationError(ProviderError):
    """Bad or missing input in the provisioning request."""


class ConfigurationError(ProviderError):
    """Something the request refers to is not configured or not supported."""


class MissingRemoteError(ConfigurationError):
    pass


class UnknownRemoteError(ConfigurationError):
    pass


class ArchitectureNotFoundError(ConfigurationError):
    pass


class UnsupportedArchitectureError(ConfigurationError):
    pass


class ProfileNotFoundError(ConfigurationError):
    pass


class SchemaError(ProviderError):
    """Extra specs failed JSON schema validation."""


class TransportError(ProviderError):
    """The endpoint could not be reached or sent something unreadable."""


class EndpointError(ProviderError):
    """
    The endpoint answered with an error.

    :param message: Error text returned by the endpoint
    :param status_code: HTTP-like status code of the error, if known
    :param operation: Name of the provider operation that produced it
    """

    def __init__(self, message, status_code=None, operation=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.operation = operation

    def __str__(self):
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message

    def with_operation(self, operation):
        """Return a copy of this error labelled with the operation name."""
        return type(self)(self.message, status_code=self.status_code, operation=operation)


class NotFoundError(EndpointError):
    """The endpoint confirms the target does not exist."""

    def __init__(self, message, status_code=404, operation=None):
        super().__init__(message, status_code=status_code, operation=operation)


class AsyncOperationError(EndpointError):
    """An asynchronous endpoint operation finished with a failure."""


class OperationCancelledError(ProviderError):
    """The caller cancelled while waiting on the endpoint."""
