"""Customer-facing verification flow, addressed only by link token.

No staff authentication here: the opaque token is the credential.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.errors import http_error
from veriflow.domain.enums import ErrorCode, VerificationStatus
from veriflow.domain.errors import LinkAccessError, VerificationError
from veriflow.domain.schemas import GeoCheckRequest, SubmitEvidenceRequest
from veriflow.infra.database import get_db
from veriflow.services.geo_validator import Coordinates
from veriflow.services.link_access_guard import LinkAccessGuard, mask_phone
from veriflow.services.rejection_tracker import remaining_attempts
from veriflow.services.verification_service import VerificationService, submission_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verify", tags=["customer-verify"])


@router.get("/{token}/validate")
async def validate_link(token: str, db: AsyncSession = Depends(get_db)):
    """Open the link. The first successful call starts the verification."""
    guard = LinkAccessGuard(db)
    try:
        grant = await guard.authorize(token)
    except LinkAccessError as exc:
        if exc.code == ErrorCode.ALREADY_COMPLETED:
            # Awaiting review is reported the same way as a finished decision
            return {"valid": False, **exc.to_dict()}
        raise http_error(exc)

    await db.commit()

    verification = grant.verification
    count = verification.rejection_count or 0
    is_revision = verification.status == VerificationStatus.NEEDS_REVISION.value
    return {
        "valid": True,
        "verification": {
            "id": verification.id,
            "verification_ref": verification.verification_ref,
            "status": verification.status,
            "customer_name": verification.customer_name,
            "customer_phone": mask_phone(verification.customer_phone),
            "policy_type": grant.policy_type,
            "requires_gps": grant.requires_gps,
            "template_snapshot": verification.template_snapshot or [],
            "prefill_data": verification.prefill_data or {},
            "link_expiry": verification.link_expiry.isoformat(),
            "is_revision": is_revision,
            "rejection_reason": verification.rejection_reason if is_revision else None,
            "rejection_count": count,
            "remaining_attempts": remaining_attempts(count),
        },
    }


@router.post("/{token}/gps-check")
async def check_location(token: str, body: GeoCheckRequest, db: AsyncSession = Depends(get_db)):
    captured = Coordinates(lat=body.gps.lat, lon=body.gps.lon) if body.gps else None
    try:
        result = await VerificationService(db).check_photo_location(token, captured)
    except VerificationError as exc:
        raise http_error(exc)
    return result.to_dict()


@router.post("/{token}/submit")
async def submit_evidence(token: str, body: SubmitEvidenceRequest, db: AsyncSession = Depends(get_db)):
    categories = [c.model_dump(mode="json", exclude_none=True) for c in body.categories]
    try:
        verification, submission = await VerificationService(db).submit_evidence(
            token, categories, body.consent_given
        )
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return {
        "success": True,
        "verification_ref": verification.verification_ref,
        "status": verification.status,
        "submission_number": submission.submission_number,
        "geo_checks": submission.geo_checks or [],
    }


@router.get("/{token}/submission")
async def previous_submission(token: str, db: AsyncSession = Depends(get_db)):
    """Latest evidence plus feedback, available only while a revision is requested."""
    try:
        result = await VerificationService(db).previous_submission_for_revision(token)
    except VerificationError as exc:
        raise http_error(exc)

    return {
        "submission": submission_payload(result["submission"]),
        "rejection_reason": result["rejection_reason"],
        "rejection_count": result["rejection_count"],
        "remaining_attempts": result["remaining_attempts"],
    }
