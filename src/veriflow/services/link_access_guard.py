"""Customer link authorization.

A customer reaches a verification only through its opaque ``link_token``.
Checks run in a fixed order and the first failure wins:

1. token resolves to a record        -> else NOT_FOUND
2. now <= link_expiry                -> else EXPIRED
3. status not approved/rejected/submitted -> else ALREADY_COMPLETED
4. status not cancelled              -> else CANCELLED

The first successful access stamps ``link_accessed_at`` and flips
``pending -> in_progress`` in a single set-if-null UPDATE.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.domain.enums import (
    ErrorCode,
    VerificationActor,
    VerificationEventType,
    VerificationStatus,
)
from veriflow.domain.errors import LinkAccessError
from veriflow.domain.models import Policy, Verification
from veriflow.infra.clock import as_utc, to_db, utcnow
from veriflow.services.geo_validator import is_gps_required
from veriflow.services.verification_state_machine import record_event, state_machine

logger = logging.getLogger(__name__)

COMPLETED_STATES = {
    VerificationStatus.APPROVED.value,
    VerificationStatus.REJECTED.value,
    VerificationStatus.SUBMITTED.value,
}


@dataclass
class AccessGrant:
    verification: Verification
    policy_type: Optional[str]
    requires_gps: bool
    first_access: bool


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """Keep the first 3 and last 4 characters: ``+919876543210`` -> ``+91****3210``."""
    if not phone:
        return phone
    if len(phone) <= 4:
        return "****"
    return f"{phone[:3]}****{phone[-4:]}"


class LinkAccessGuard:
    """Resolves link tokens and applies the accessed-once side effect."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, token: str, now: Optional[datetime] = None) -> Verification:
        """Run the ordered access checks without any side effect."""
        now = now or utcnow()

        result = await self.db.execute(
            select(Verification).where(Verification.link_token == token)
        )
        verification = result.scalar_one_or_none()

        if verification is None:
            logger.info("Link lookup failed for token %s...", (token or "")[:8])
            raise LinkAccessError(ErrorCode.NOT_FOUND, "Verification link not found")

        if state_machine.is_expired(verification, now):
            raise LinkAccessError(
                ErrorCode.EXPIRED,
                "This verification link has expired",
                expired_at=as_utc(verification.link_expiry).isoformat(),
            )

        if verification.status in COMPLETED_STATES:
            raise LinkAccessError(
                ErrorCode.ALREADY_COMPLETED,
                "This verification has already been completed",
                status=verification.status,
            )

        if verification.status == VerificationStatus.CANCELLED.value:
            raise LinkAccessError(ErrorCode.CANCELLED, "This verification has been cancelled")

        return verification

    async def authorize(self, token: str, now: Optional[datetime] = None) -> AccessGrant:
        """Validate the token and record first access when it has not happened yet."""
        now = now or utcnow()
        verification = await self.resolve(token, now)

        first_access = False
        if verification.link_accessed_at is None:
            first_access = await self.record_first_access(verification, now)

        policy = await self.db.get(Policy, verification.policy_id)
        policy_type = policy.policy_type if policy else None

        return AccessGrant(
            verification=verification,
            policy_type=policy_type,
            requires_gps=is_gps_required(policy_type),
            first_access=first_access,
        )

    async def record_first_access(
        self, verification: Verification, now: Optional[datetime] = None
    ) -> bool:
        """Atomically stamp ``link_accessed_at`` if it is still NULL.

        Returns True only for the call that actually set it. Any later call,
        concurrent or not, matches zero rows and changes nothing.
        """
        now = now or utcnow()
        previous_status = verification.status

        stmt = (
            update(Verification)
            .where(
                Verification.id == verification.id,
                Verification.link_accessed_at.is_(None),
            )
            .values(
                link_accessed_at=to_db(now),
                status=case(
                    (
                        Verification.status == VerificationStatus.PENDING.value,
                        VerificationStatus.IN_PROGRESS.value,
                    ),
                    else_=Verification.status,
                ),
                updated_at=to_db(now),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            await self.db.refresh(verification)
            return False

        flipped = previous_status == VerificationStatus.PENDING.value
        record_event(
            self.db,
            verification.id,
            VerificationEventType.LINK_ACCESSED,
            VerificationActor.CUSTOMER,
            from_status=previous_status,
            to_status=VerificationStatus.IN_PROGRESS.value if flipped else previous_status,
            data={"accessed_at": as_utc(now).isoformat()},
        )
        await self.db.flush()
        await self.db.refresh(verification)

        logger.info("Verification %s first accessed via link", verification.verification_ref)
        return True
