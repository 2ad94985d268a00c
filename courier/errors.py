"""
Error taxonomy for the delivery-status service.

Every error carries the HTTP status it is surfaced with. The FastAPI
exception handler in main.py turns any CourierError into {"detail": message}.
"""

from fastapi import status


class CourierError(Exception):
    """Base class for all service errors."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MalformedPayloadError(CourierError):
    """Webhook payload is missing the entry[0].changes[0].value envelope."""

    http_status = status.HTTP_400_BAD_REQUEST


class ValidationError(CourierError):
    """Request is missing a required field or carries an empty body."""

    http_status = status.HTTP_400_BAD_REQUEST


class NotFoundError(CourierError):
    http_status = status.HTTP_404_NOT_FOUND


class ConflictError(CourierError):
    """A record with the same idempotency key and perspective already exists."""

    http_status = status.HTTP_409_CONFLICT


class StaleRecordError(ConflictError):
    """The record changed between read and write (version check failed)."""


class TransportError(CourierError):
    """Outbound dispatch failed or timed out."""

    http_status = status.HTTP_502_BAD_GATEWAY
