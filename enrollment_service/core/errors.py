"""Error taxonomy surfaced by the enrollment orchestrator.

Callers need to tell "your request was invalid" (NotFound, Conflict,
InvalidRequest) apart from "a required external step failed"
(ExternalServiceError) and from plain server faults (UnknownError).
Each error carries the HTTP status the API layer renders it with.
"""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500
    kind: str = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequest(AppError):
    status_code = 400
    kind = "invalid_request"


class NotFound(AppError):
    status_code = 404
    kind = "not_found"

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class Conflict(AppError):
    status_code = 409
    kind = "conflict"


class ExternalServiceError(AppError):
    status_code = 502
    kind = "external_service_error"


class UnknownError(AppError):
    """Unexpected persistence failure, wrapped with operation context.

    The original exception is chained as __cause__.
    """

    def __init__(self, operation: str, enrollment_id: int | None = None) -> None:
        message = f"{operation} failed"
        if enrollment_id is not None:
            message += f" for enrollment {enrollment_id}"
        super().__init__(message)
        self.operation = operation
        self.enrollment_id = enrollment_id


class LmsError(Exception):
    """Raised by LMS clients; converted to ExternalServiceError by triggers."""


class StaleEnrollmentError(Exception):
    """Raised by repos when an update's expected version no longer matches."""


class DuplicateEnrollmentError(Exception):
    """Raised by repos when a uniqueness constraint rejects an insert."""

    def __init__(self, field: str) -> None:
        super().__init__(f"duplicate {field}")
        self.field = field
