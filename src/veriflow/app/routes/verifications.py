"""Staff API for verifications: issue, inspect, assign, cancel and decide.

Business admins see every verification whose policy belongs to their
business. Verifiers see the ones currently or previously assigned to them
and may only decide on their current assignments.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.config import get_settings
from veriflow.app.errors import http_error
from veriflow.app.routes.auth import (
    ADMIN_ROLES,
    STAFF_ROLES,
    require_role,
    resolve_business_scope,
)
from veriflow.domain.enums import (
    DecisionOutcome,
    UserRole,
    VerificationActor,
    VerificationStatus,
)
from veriflow.domain.errors import VerificationError
from veriflow.domain.models import Policy, User, Verification, VerificationEvent
from veriflow.domain.schemas import (
    AssignRequest,
    CancelRequest,
    DecisionRequest,
    PolicyChangeRequest,
    VerificationCreate,
)
from veriflow.infra.clock import utcnow
from veriflow.infra.database import get_db
from veriflow.services.assignment_service import AssignmentSelector, assigned_to
from veriflow.services.geo_validator import Coordinates
from veriflow.services.rejection_tracker import (
    REJECTION_REASONS,
    RejectionFeedback,
    rejectable_fields,
    remaining_attempts,
    requires_final_confirmation,
)
from veriflow.services.verification_service import VerificationService, submission_payload
from veriflow.services.verification_state_machine import state_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verifications", tags=["verifications"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dt(val) -> Optional[str]:
    if val is None:
        return None
    if isinstance(val, datetime):
        return val.isoformat()
    return str(val)


def _is_admin(user: User) -> bool:
    return user.role in ADMIN_ROLES


def _actor_for(user: User) -> VerificationActor:
    return VerificationActor.ADMIN if _is_admin(user) else VerificationActor.VERIFIER


async def _get_visible_or_404(db: AsyncSession, user: User, verification_id: str) -> Verification:
    """Load a verification the user may see; anything else looks like a 404."""
    verification = await db.get(Verification, verification_id)
    if verification is None:
        raise HTTPException(status_code=404, detail="Verification not found")

    if user.role == UserRole.SUPER_ADMIN.value:
        return verification

    if user.role == UserRole.BUSINESS_ADMIN.value:
        policy = await db.get(Policy, verification.policy_id)
        if policy is not None and policy.business_id == user.business_id:
            return verification
        raise HTTPException(status_code=404, detail="Verification not found")

    visible = await db.execute(
        select(Verification.id).where(Verification.id == verification.id, assigned_to(user.id))
    )
    if visible.scalar_one_or_none() is None:
        raise HTTPException(status_code=404, detail="Verification not found")
    return verification


def _serialize_verification(verification: Verification, now: Optional[datetime] = None) -> dict:
    count = verification.rejection_count or 0
    return {
        "id": verification.id,
        "verification_ref": verification.verification_ref,
        "policy_id": verification.policy_id,
        "assigned_verifier_id": verification.assigned_verifier_id,
        "status": verification.status,
        "effective_status": state_machine.effective_status(verification, now).value,
        "customer": {
            "name": verification.customer_name,
            "phone": verification.customer_phone,
            "email": verification.customer_email,
            "address": verification.customer_address,
        },
        "property_coordinates": verification.property_coordinates,
        "link": get_settings().customer_link(verification.link_token),
        "link_expiry": _dt(verification.link_expiry),
        "link_accessed_at": _dt(verification.link_accessed_at),
        "rejection_count": count,
        "rejection_reason": verification.rejection_reason,
        "remaining_attempts": remaining_attempts(count),
        "decision": verification.decision,
        "submitted_at": _dt(verification.submitted_at),
        "reviewed_at": _dt(verification.reviewed_at),
        "cancelled_at": _dt(verification.cancelled_at),
        "cancel_reason": verification.cancel_reason,
        "created_at": _dt(verification.created_at),
        "updated_at": _dt(verification.updated_at),
    }


def _serialize_event(event: VerificationEvent) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "actor": event.actor,
        "actor_id": event.actor_id,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "data": event.data,
        "created_at": _dt(event.created_at),
    }


# ---------------------------------------------------------------------------
# Collection endpoints
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_verification(
    data: VerificationCreate,
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    policy = await db.get(Policy, data.policy_id)
    if policy is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    resolve_business_scope(user, policy.business_id)

    coordinates = None
    if data.property_coordinates is not None:
        coordinates = Coordinates(lat=data.property_coordinates.lat, lon=data.property_coordinates.lon)

    service = VerificationService(db)
    try:
        verification = await service.create_verification(
            policy.id,
            data.customer.model_dump(),
            prefill_data=data.prefill_data,
            coordinates=coordinates,
            verifier_id=data.verifier_id,
            created_by=user,
        )
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return _serialize_verification(verification)


@router.get("")
async def list_verifications(
    status: Optional[VerificationStatus] = Query(None),
    business_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    user: User = Depends(require_role(*STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Verification).order_by(Verification.created_at.desc())
    if _is_admin(user):
        scope = resolve_business_scope(user, business_id)
        stmt = stmt.join(Policy, Policy.id == Verification.policy_id).where(
            Policy.business_id == scope
        )
    else:
        stmt = stmt.where(assigned_to(user.id))

    if status is not None and status != VerificationStatus.EXPIRED:
        stmt = stmt.where(Verification.status == status.value)

    result = await db.execute(stmt)
    now = utcnow()
    items = []
    for verification in result.scalars().all():
        if status == VerificationStatus.EXPIRED and not (
            state_machine.effective_status(verification, now) == VerificationStatus.EXPIRED
        ):
            continue
        items.append(_serialize_verification(verification, now))
        if len(items) >= limit:
            break
    return {"items": items, "count": len(items)}


@router.get("/workload")
async def verifier_workload(
    business_id: Optional[str] = Query(None),
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    scope = resolve_business_scope(user, business_id)
    return {"verifiers": await AssignmentSelector(db).workload_summary(scope)}


@router.post("/assignments/retry")
async def retry_assignments(
    business_id: Optional[str] = Query(None),
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    scope = resolve_business_scope(user, business_id)
    summary = await AssignmentSelector(db).retry_unassigned(scope)
    await db.commit()
    return summary


# ---------------------------------------------------------------------------
# Item endpoints
# ---------------------------------------------------------------------------


@router.get("/{verification_id}")
async def get_verification(
    verification_id: str,
    user: User = Depends(require_role(*STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    verification = await _get_visible_or_404(db, user, verification_id)
    service = VerificationService(db)
    submissions = await service.list_submissions(verification.id)
    latest = submissions[-1] if submissions else None

    events = await db.execute(
        select(VerificationEvent)
        .where(VerificationEvent.verification_id == verification.id)
        .order_by(VerificationEvent.created_at)
    )

    payload = _serialize_verification(verification)
    payload.update({
        "template_snapshot": verification.template_snapshot or [],
        "prefill_data": verification.prefill_data or {},
        "rejection_history": verification.rejection_history or [],
        "submissions": [submission_payload(s) for s in submissions],
        "rejectable_fields": {
            category_id: sorted(fields)
            for category_id, fields in rejectable_fields(
                verification.template_snapshot, latest.categories if latest else []
            ).items()
        },
        "rejection_reasons": list(REJECTION_REASONS),
        "requires_final_confirmation": requires_final_confirmation(verification.rejection_count or 0),
        "allowed_transitions": [
            s.value for s in state_machine.get_allowed_transitions(verification.status, _actor_for(user))
        ],
        "events": [_serialize_event(e) for e in events.scalars().all()],
    })
    return payload


@router.post("/{verification_id}/decision")
async def decide_verification(
    verification_id: str,
    body: DecisionRequest,
    user: User = Depends(require_role(*STAFF_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    verification = await _get_visible_or_404(db, user, verification_id)
    if not _is_admin(user) and verification.assigned_verifier_id != user.id:
        raise HTTPException(status_code=403, detail="Verification is not assigned to you")

    service = VerificationService(db)
    try:
        feedback = None
        if body.outcome == DecisionOutcome.REJECT:
            feedback = RejectionFeedback.from_items(body.feedback)
        verification = await service.decide(
            verification.id,
            body.outcome,
            feedback=feedback,
            confirm_final=body.confirm_final,
            actor=_actor_for(user),
            actor_id=user.id,
            notes=body.notes,
        )
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return _serialize_verification(verification)


@router.post("/{verification_id}/cancel")
async def cancel_verification(
    verification_id: str,
    body: CancelRequest,
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    verification = await _get_visible_or_404(db, user, verification_id)
    try:
        verification = await VerificationService(db).cancel(
            verification.id, reason=body.reason, actor_id=user.id
        )
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return _serialize_verification(verification)


@router.post("/{verification_id}/assignment")
async def assign_verifier(
    verification_id: str,
    body: AssignRequest,
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    verification = await _get_visible_or_404(db, user, verification_id)
    try:
        await AssignmentSelector(db).assign_manually(verification, body.verifier_id, actor_id=user.id)
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return _serialize_verification(verification)


@router.delete("/{verification_id}/assignment")
async def release_verifier(
    verification_id: str,
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    verification = await _get_visible_or_404(db, user, verification_id)
    try:
        await AssignmentSelector(db).release(verification, actor_id=user.id)
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return _serialize_verification(verification)


@router.post("/{verification_id}/policy")
async def change_policy(
    verification_id: str,
    body: PolicyChangeRequest,
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    verification = await _get_visible_or_404(db, user, verification_id)
    try:
        target = await db.get(Policy, body.policy_id)
        if target is not None:
            resolve_business_scope(user, target.business_id)
        verification = await VerificationService(db).change_policy(
            verification.id, body.policy_id, actor_id=user.id
        )
    except VerificationError as exc:
        raise http_error(exc)

    await db.commit()
    return _serialize_verification(verification)
