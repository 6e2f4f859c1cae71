"""Translate domain errors into HTTP responses."""

from fastapi import HTTPException

from veriflow.domain.enums import ErrorCode
from veriflow.domain.errors import VerificationError

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.EXPIRED: 410,
    ErrorCode.ALREADY_COMPLETED: 409,
    ErrorCode.CANCELLED: 400,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.EMPTY_SELECTION: 422,
    ErrorCode.INVALID_SELECTION: 422,
    ErrorCode.FINAL_CONFIRMATION_REQUIRED: 428,
    ErrorCode.GEOFENCE_VIOLATION: 422,
    ErrorCode.INCOMPLETE_SUBMISSION: 422,
    ErrorCode.CONSENT_REQUIRED: 400,
    ErrorCode.ASSIGNMENT_CONFLICT: 409,
}


def http_error(exc: VerificationError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_CODE.get(exc.code, 400), detail=exc.to_dict())
