"""
Exceptions raised by the messaging service and their HTTP mapping.

Every error carries the status code the API answers with, so routes can let
them propagate and a single handler turns them into JSON responses.
"""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    """Base class for all messaging errors."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidParticipant(MessagingError):
    """A participant identifier is missing, empty or malformed."""

    status_code = status.HTTP_400_BAD_REQUEST


class EmptyBody(MessagingError):
    """Attempted to send a message with no text."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str = "Message cannot be empty"):
        super().__init__(message)


class NoRecipient(MessagingError):
    """Attempted to send a message without a recipient."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str = "No recipient selected"):
        super().__init__(message)


class StoreUnavailable(MessagingError):
    """The message store call failed or timed out."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class StatusUpdateFailed(MessagingError):
    """Marking a message delivered/read failed in the store."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message_id: str, target_status: str, cause: Exception | None = None):
        self.message_id = message_id
        self.target_status = target_status
        self.cause = cause
        super().__init__(f"Failed to mark message {message_id} as {target_status}")


class MalformedRecord(MessagingError):
    """A record read from the message store does not match the message schema."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, record_id: str | None, reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Malformed message record {record_id}: {reason}")


class MessageNotFound(MessagingError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message '{message_id}' not found")


class NotRecipient(MessagingError):
    """Only the recipient of a message may change its status."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Only the recipient can update message '{message_id}'")


class ContactNotFound(MessagingError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, contact_id: int):
        self.contact_id = contact_id
        super().__init__(f"Contact {contact_id} not found")


class DuplicateContact(MessagingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, cell_digits: str):
        self.cell_digits = cell_digits
        super().__init__(f"{cell_digits} is already in your contacts")


async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    """Convert a MessagingError into a ``{"detail": ...}`` JSON response.

    Args:
        request: The incoming request that triggered the error.
        exc: The raised messaging error.

    Returns:
        JSONResponse with the error's status code.
    """
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message},
    )
