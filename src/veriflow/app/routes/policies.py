"""Policy provisioning. Policies are immutable once issued."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.routes.auth import ADMIN_ROLES, require_role, resolve_business_scope
from veriflow.domain.enums import PolicyStatus
from veriflow.domain.models import Policy, Template, User
from veriflow.domain.schemas import PolicyCreate, PolicyResponse
from veriflow.infra.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/policies", tags=["policies"])


@router.post("", response_model=PolicyResponse, status_code=201)
async def create_policy(
    data: PolicyCreate,
    business_id: Optional[str] = Query(None),
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    scope = resolve_business_scope(user, business_id)

    if data.template_id:
        template = await db.get(Template, data.template_id)
        if template is None or template.business_id not in (None, scope):
            raise HTTPException(status_code=404, detail="Template not found")
        if template.policy_type != data.policy_type.value:
            raise HTTPException(status_code=400, detail="Template is for a different policy type")

    policy = Policy(
        business_id=scope,
        policy_name=data.policy_name,
        policy_type=data.policy_type.value,
        external_policy_id=data.external_policy_id,
        template_id=data.template_id,
        sla_hours=data.sla_hours,
        status=PolicyStatus.ACTIVE.value,
    )
    db.add(policy)
    await db.commit()
    await db.refresh(policy)

    logger.info("Policy %s (%s) created for business %s", policy.id, policy.policy_type, scope)
    return PolicyResponse.model_validate(policy)


@router.get("", response_model=list[PolicyResponse])
async def list_policies(
    business_id: Optional[str] = Query(None),
    user: User = Depends(require_role(*ADMIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    scope = resolve_business_scope(user, business_id)
    result = await db.execute(
        select(Policy).where(Policy.business_id == scope).order_by(Policy.created_at.desc())
    )
    return [PolicyResponse.model_validate(p) for p in result.scalars().all()]
