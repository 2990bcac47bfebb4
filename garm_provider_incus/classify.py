"""
Classification of endpoint errors.

The lifecycle controller only ever needs to know whether an error means the
target is gone, the instance was already stopped, or the endpoint is
temporarily unavailable. Everything else is unclassified and propagates.
"""

import logging

from garm_provider_incus.errors import (
    AsyncOperationError,
    EndpointError,
    NotFoundError,
    TransportError,
)

log = logging.getLogger(__name__)


class Condition:
    NOT_FOUND = "not-found"
    ALREADY_STOPPED = "already-stopped"
    TRANSIENT = "transient"
    UNCLASSIFIED = "unclassified"


# status code -> known messages for that code
HTTP_RESPONSE_ERRORS = {
    404: ("not found", "instance not found"),
}

ALREADY_STOPPED_MESSAGES = (
    "the instance is already stopped",
    "already stopped",
)

TRANSIENT_STATUS_CODES = frozenset([502, 503, 504])

# the only operation failure text that means the instance itself is gone
ASYNC_NOT_FOUND_MESSAGE = "instance not found"


def classify(err):
    """
    :param err: Exception raised by an endpoint call
    :return: one of the Condition values
    """
    if isinstance(err, NotFoundError):
        return Condition.NOT_FOUND

    if isinstance(err, TransportError):
        return Condition.TRANSIENT

    if not isinstance(err, EndpointError):
        return Condition.UNCLASSIFIED

    message = (err.message or "").lower()

    if err.status_code in HTTP_RESPONSE_ERRORS:
        return Condition.NOT_FOUND
    if isinstance(err, AsyncOperationError):
        # operation failures carry free text about any resource involved
        if message.strip() == ASYNC_NOT_FOUND_MESSAGE:
            return Condition.NOT_FOUND
    else:
        for messages in HTTP_RESPONSE_ERRORS.values():
            if any(m in message for m in messages):
                return Condition.NOT_FOUND

    if any(m in message for m in ALREADY_STOPPED_MESSAGES):
        return Condition.ALREADY_STOPPED

    if err.status_code in TRANSIENT_STATUS_CODES:
        return Condition.TRANSIENT

    return Condition.UNCLASSIFIED


def is_not_found(err):
    return classify(err) == Condition.NOT_FOUND


def label(err, operation):
    """
    Name the failed operation on unclassified endpoint errors.

    Asynchronous-operation failures and errors that already carry an
    operation name are returned as they are.
    """
    if (
        isinstance(err, EndpointError)
        and not isinstance(err, AsyncOperationError)
        and not err.operation
        and classify(err) == Condition.UNCLASSIFIED
    ):
        return err.with_operation(operation)
    return err


def tolerate(err, conditions, operation):
    """
    Decide whether ``err`` from ``operation`` may be ignored.

    :param err: Exception raised by the endpoint
    :param conditions: Set of Condition values treated as success
    :param operation: Name used in the log line and the re-raised error
    :return: None when tolerated, otherwise the error to raise
    """
    condition = classify(err)
    if condition in conditions:
        log.debug("%s: tolerating %s error: %s", operation, condition, err)
        return None
    return label(err, operation)
