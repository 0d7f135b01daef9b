from __future__ import annotations

from typing import Any


class DealBridgeError(Exception):
    """Base error for the project workflow; carries the HTTP status it maps to."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationFailedError(DealBridgeError):
    status_code = 400
    code = "validation_failed"


class MissingFieldError(ValidationFailedError):
    code = "missing_field"

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(message or f"{field} is required in the request body.", missingField=field)
        self.field = field


class InvalidIdFormatError(ValidationFailedError):
    code = "invalid_id_format"


class UnauthenticatedError(DealBridgeError):
    status_code = 401
    code = "unauthenticated"


class NotFoundError(DealBridgeError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity.capitalize()} with ID {entity_id} not found.", entity=entity)
        self.entity = entity
        self.entity_id = entity_id


class SequenceExhaustedError(DealBridgeError):
    status_code = 409
    code = "sequence_exhausted"


class RateLimitedError(DealBridgeError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: int) -> None:
        super().__init__(message, retryAfterSeconds=retry_after_seconds)
        self.retry_after_seconds = retry_after_seconds


class DownstreamError(DealBridgeError):
    status_code = 500
    code = "downstream_error"


class DownstreamUnavailableError(DownstreamError):
    code = "downstream_unavailable"


class StorageUnavailableError(DownstreamError):
    code = "storage_unavailable"


class InvalidDepartmentCodeError(ValidationFailedError):
    code = "invalid_department_code"
