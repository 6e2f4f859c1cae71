"""Team management for business admins: add staff, list them, deactivate verifiers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.routes.auth import ADMIN_ROLES, require_role, resolve_business_scope
from veriflow.domain.enums import UserRole
from veriflow.domain.models import User
from veriflow.domain.schemas import StaffCreate, UserResponse
from veriflow.infra.database import get_db
from veriflow.services.assignment_service import AssignmentSelector
from veriflow.services.auth_service import create_staff_user, get_user_by_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/team", tags=["team"])


@router.get("", response_model=list[UserResponse])
async def list_team(
    business_id: Optional[str] = Query(None),
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    scope = resolve_business_scope(user, business_id)
    result = await db.execute(
        select(User).where(User.business_id == scope).order_by(User.role, User.full_name)
    )
    return [UserResponse.model_validate(u) for u in result.scalars().all()]


@router.post("", response_model=UserResponse, status_code=201)
async def add_staff(
    data: StaffCreate,
    business_id: Optional[str] = Query(None),
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    scope = resolve_business_scope(user, business_id)
    if data.role == UserRole.SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Super admins cannot be created here")
    if await get_user_by_email(db, data.email):
        raise HTTPException(status_code=409, detail="Email already registered")

    staff = await create_staff_user(
        db,
        scope,
        data.email,
        data.password,
        data.full_name,
        data.role.value,
        specialization=data.specialization.value if data.specialization else None,
        phone=data.phone,
    )
    await db.commit()
    logger.info("User %s added %s %s to business %s", user.id, staff.role, staff.id, scope)
    return UserResponse.model_validate(staff)


@router.post("/{user_id}/deactivate")
async def deactivate_staff(
    user_id: str,
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a staff member and move their open verifications to other verifiers."""
    staff = await db.get(User, user_id)
    if staff is None or not staff.business_id:
        raise HTTPException(status_code=404, detail="User not found")
    scope = resolve_business_scope(
        user, staff.business_id if user.role == UserRole.SUPER_ADMIN.value else None
    )
    if staff.business_id != scope:
        raise HTTPException(status_code=404, detail="User not found")
    if staff.role == UserRole.SUPER_ADMIN.value:
        raise HTTPException(status_code=403, detail="Super admins cannot be deactivated here")
    if staff.id == user.id:
        raise HTTPException(status_code=400, detail="You cannot deactivate yourself")

    staff.is_active = False
    await db.flush()

    summary = {"released": 0, "reassigned": 0}
    if staff.role == UserRole.VERIFIER.value:
        summary = await AssignmentSelector(db).release_all(staff.id, actor_id=user.id)

    await db.commit()
    return {"user": UserResponse.model_validate(staff).model_dump(), **summary}
