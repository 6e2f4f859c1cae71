"""Domain errors raised by the verification lifecycle services.

Every error carries an ErrorCode so routes can return a structured payload.
All of them are raised before any state is written.
"""

from veriflow.domain.enums import ErrorCode, VerificationStatus


class VerificationError(Exception):
    """Base class for recoverable verification lifecycle failures."""

    code: ErrorCode = ErrorCode.INVALID_TRANSITION

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code.value}
        payload.update(self.details)
        return payload


class VerificationNotFoundError(VerificationError):
    code = ErrorCode.NOT_FOUND


class InvalidTransitionError(VerificationError):
    """Raised when a verification state transition is not allowed."""

    code = ErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        current_status: VerificationStatus,
        target_status: VerificationStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}",
            current_status=current_status.value,
            target_status=target_status.value,
        )


class ConcurrentTransitionError(VerificationError):
    """The compare-and-swap guard failed: another writer moved the record first."""

    code = ErrorCode.CONCURRENT_MODIFICATION


class LinkAccessError(VerificationError):
    """Customer link cannot be opened. ``code`` says which access check failed."""

    def __init__(self, code: ErrorCode, message: str, **details):
        self.code = code
        super().__init__(message, **details)


class EmptySelectionError(VerificationError):
    code = ErrorCode.EMPTY_SELECTION


class InvalidSelectionError(VerificationError):
    code = ErrorCode.INVALID_SELECTION


class FinalConfirmationRequiredError(VerificationError):
    code = ErrorCode.FINAL_CONFIRMATION_REQUIRED


class GeofenceViolationError(VerificationError):
    code = ErrorCode.GEOFENCE_VIOLATION


class IncompleteSubmissionError(VerificationError):
    code = ErrorCode.INCOMPLETE_SUBMISSION


class ConsentRequiredError(VerificationError):
    code = ErrorCode.CONSENT_REQUIRED


class AssignmentConflictError(VerificationError):
    """Manual assignment or policy change would break business scoping."""

    code = ErrorCode.ASSIGNMENT_CONFLICT
