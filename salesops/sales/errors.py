from __future__ import annotations

from fastapi import HTTPException, status


class SalesOpsError(HTTPException):
    """Base class for domain failures surfaced to the caller with a stable code."""

    code = "sales_error"
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        self.code = type(self).code
        self.message = message
        super().__init__(status_code=type(self).status_code_default, detail={"code": self.code, "message": message})


class ValidationError(SalesOpsError):
    """Request is structurally valid but violates a domain precondition. Never retried."""

    code = "validation_error"
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY


class MissingCloserError(ValidationError):
    code = "missing_closer"


class LegacyImportError(ValidationError):
    """Appointment has neither a cached reschedule link nor a calendar invitee reference."""

    code = "legacy_import"


class ConfirmationRequiredError(ValidationError):
    code = "confirmation_required"


class ConflictError(SalesOpsError):
    code = "conflict"
    status_code_default = status.HTTP_409_CONFLICT


class AlreadyClosedError(ConflictError):
    code = "already_closed"


class AlreadyClaimedError(ConflictError):
    code = "already_claimed"


class NoActiveTaskError(ConflictError):
    code = "no_active_task"


class TaskAlreadyCompletedError(ConflictError):
    code = "task_completed"


class InvalidScheduleTransitionError(ConflictError):
    code = "invalid_transition"


class UndoConflictError(ConflictError):
    """The tracked record changed after the undoable action was applied."""

    code = "undo_conflict"


class ExternalCollaboratorError(SalesOpsError):
    """Calendar link provider failure; the dependent stage write is not committed."""

    code = "calendar_unavailable"
    status_code_default = status.HTTP_502_BAD_GATEWAY


class CalendarUnauthenticatedError(ExternalCollaboratorError):
    code = "calendar_unauthenticated"


class CalendarNotFoundError(ExternalCollaboratorError):
    code = "calendar_not_found"


class CalendarTimeoutError(ExternalCollaboratorError):
    code = "calendar_timeout"
    status_code_default = status.HTTP_504_GATEWAY_TIMEOUT


class ConsistencyViolationError(SalesOpsError):
    """Raised when an invariant would be broken; indicates a race or a sequencing bug."""

    code = "consistency_violation"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, kind: str) -> None:
        self.kind = kind
        super().__init__(message)
