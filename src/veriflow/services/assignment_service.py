"""Load-balanced verifier assignment.

Eligible verifiers are the active verifiers of the policy's business whose
specialization matches the policy type or is NULL (generalist). The one with
the smallest active workload (pending + in_progress) wins; ties are broken
uniformly at random.

Selection and write happen in one transaction. Verifier rows are read
``FOR UPDATE`` and the write is a compare-and-swap on
``assigned_verifier_id IS NULL``, so two concurrent assignments of the same
record can never both succeed.
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.domain.enums import (
    UserRole,
    VerificationActor,
    VerificationEventType,
    VerificationStatus,
)
from veriflow.domain.errors import AssignmentConflictError, VerificationNotFoundError
from veriflow.domain.models import Policy, User, Verification, VerificationEvent
from veriflow.infra.clock import to_db, utcnow
from veriflow.services.verification_state_machine import (
    TERMINAL_STATES,
    coerce_status,
    record_event,
)

logger = logging.getLogger(__name__)

ACTIVE_WORKLOAD_STATES = (
    VerificationStatus.PENDING.value,
    VerificationStatus.IN_PROGRESS.value,
)
PENDING_REVIEW_STATES = (VerificationStatus.SUBMITTED.value,)
COMPLETED_STATES = (
    VerificationStatus.APPROVED.value,
    VerificationStatus.REJECTED.value,
)


@dataclass(frozen=True)
class VerifierWorkload:
    verifier_id: str
    active: int
    pending_review: int = 0
    completed: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        return {
            "verifier_id": self.verifier_id,
            "active_count": self.active,
            "pending_review_count": self.pending_review,
            "completed_count": self.completed,
            "total_assigned": self.total,
        }


def pick_least_loaded(
    workloads: Sequence[VerifierWorkload],
    rng: Optional[random.Random] = None,
) -> Optional[str]:
    """Return the id of a verifier with minimal active workload, or None."""
    if not workloads:
        return None
    lowest = min(w.active for w in workloads)
    candidates = sorted(w.verifier_id for w in workloads if w.active == lowest)
    return (rng or random).choice(candidates)


def assigned_to(verifier_id: str):
    """Filter for verifications currently or previously assigned to ``verifier_id``."""
    previously = select(VerificationEvent.verification_id).where(
        VerificationEvent.event_type == VerificationEventType.VERIFIER_ASSIGNED.value,
        VerificationEvent.assignee_id == verifier_id,
    )
    return or_(
        Verification.assigned_verifier_id == verifier_id,
        Verification.id.in_(previously),
    )


class AssignmentSelector:
    """Selects and attaches verifiers to verifications, scoped to one business."""

    def __init__(self, db: AsyncSession, rng: Optional[random.Random] = None):
        self.db = db
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def eligible_verifiers(
        self, business_id: str, required_specialization: Optional[str]
    ) -> list[str]:
        stmt = (
            select(User.id)
            .where(
                User.business_id == business_id,
                User.role == UserRole.VERIFIER.value,
                User.is_active.is_(True),
                or_(
                    User.specialization.is_(None),
                    User.specialization == required_specialization,
                ),
            )
            .order_by(User.id)
            .with_for_update()
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _workloads(self, business_id: str, verifier_ids: list[str]) -> list[VerifierWorkload]:
        """Status-bucketed counts per verifier, restricted to the business's policies."""
        if not verifier_ids:
            return []

        def _count(statuses):
            return func.sum(case((Verification.status.in_(statuses), 1), else_=0))

        stmt = (
            select(
                Verification.assigned_verifier_id,
                _count(ACTIVE_WORKLOAD_STATES),
                _count(PENDING_REVIEW_STATES),
                _count(COMPLETED_STATES),
                func.count(Verification.id),
            )
            .join(Policy, Policy.id == Verification.policy_id)
            .where(
                Policy.business_id == business_id,
                Verification.assigned_verifier_id.in_(verifier_ids),
            )
            .group_by(Verification.assigned_verifier_id)
        )
        rows = {row[0]: row[1:] for row in (await self.db.execute(stmt)).all()}

        workloads = []
        for verifier_id in verifier_ids:
            active, pending_review, completed, total = rows.get(verifier_id, (0, 0, 0, 0))
            workloads.append(
                VerifierWorkload(
                    verifier_id=verifier_id,
                    active=int(active or 0),
                    pending_review=int(pending_review or 0),
                    completed=int(completed or 0),
                    total=int(total or 0),
                )
            )
        return workloads

    async def select(self, business_id: str, required_specialization: Optional[str]) -> Optional[str]:
        """Pick the least-loaded eligible verifier, or None if nobody qualifies."""
        verifier_ids = await self.eligible_verifiers(business_id, required_specialization)
        workloads = await self._workloads(business_id, verifier_ids)
        return pick_least_loaded(workloads, self.rng)

    # ------------------------------------------------------------------
    # Assignment triggers
    # ------------------------------------------------------------------

    async def assign(self, verification: Verification) -> Optional[str]:
        """Attach a verifier to an unassigned verification.

        Returns the assigned verifier id. If another writer assigned the
        record first, returns that verifier instead. Returns None when no
        eligible verifier exists; the record stays unassigned.
        """
        if verification.assigned_verifier_id:
            return verification.assigned_verifier_id

        policy = await self.db.get(Policy, verification.policy_id)
        if policy is None:
            raise VerificationNotFoundError(
                "Policy not found", policy_id=verification.policy_id
            )

        verifier_id = await self.select(policy.business_id, policy.policy_type)
        if verifier_id is None:
            logger.warning(
                "No eligible verifier for %s (business=%s, type=%s); left unassigned",
                verification.verification_ref, policy.business_id, policy.policy_type,
            )
            record_event(
                self.db,
                verification.id,
                VerificationEventType.ASSIGNMENT_FAILED,
                VerificationActor.SYSTEM,
                data={"business_id": policy.business_id, "policy_type": policy.policy_type},
            )
            await self.db.flush()
            return None

        now = utcnow()
        result = await self.db.execute(
            update(Verification)
            .where(
                Verification.id == verification.id,
                Verification.assigned_verifier_id.is_(None),
            )
            .values(assigned_verifier_id=verifier_id, updated_at=to_db(now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.refresh(verification)
            logger.info(
                "Assignment race lost for %s; kept %s",
                verification.verification_ref, verification.assigned_verifier_id,
            )
            return verification.assigned_verifier_id

        record_event(
            self.db,
            verification.id,
            VerificationEventType.VERIFIER_ASSIGNED,
            VerificationActor.SYSTEM,
            assignee_id=verifier_id,
            data={"verifier_id": verifier_id, "mode": "auto"},
        )
        await self.db.flush()
        await self.db.refresh(verification)

        logger.info("Assigned %s to verifier %s", verification.verification_ref, verifier_id)
        return verifier_id

    async def release(
        self,
        verification: Verification,
        expected_verifier_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Optional[str]:
        """Clear the current assignment and immediately try to reassign.

        ``expected_verifier_id`` defaults to the value read by the caller; if the
        stored value has changed since, AssignmentConflictError is raised.
        """
        expected = expected_verifier_id or verification.assigned_verifier_id
        if not expected:
            return await self.assign(verification)

        result = await self.db.execute(
            update(Verification)
            .where(
                Verification.id == verification.id,
                Verification.assigned_verifier_id == expected,
            )
            .values(assigned_verifier_id=None, updated_at=to_db(utcnow()))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AssignmentConflictError(
                "Assignment changed since it was read; reload and retry",
                expected_verifier_id=expected,
            )

        record_event(
            self.db,
            verification.id,
            VerificationEventType.VERIFIER_RELEASED,
            VerificationActor.ADMIN,
            actor_id=actor_id,
            data={"verifier_id": expected},
        )
        await self.db.flush()
        await self.db.refresh(verification)

        if coerce_status(verification.status) in TERMINAL_STATES:
            return None
        return await self.assign(verification)

    async def is_eligible(self, verifier_id: str, policy: Policy) -> bool:
        """Whether ``verifier_id`` could be auto-assigned a verification of ``policy``."""
        verifier = await self.db.get(User, verifier_id)
        return (
            verifier is not None
            and verifier.role == UserRole.VERIFIER.value
            and bool(verifier.is_active)
            and verifier.business_id == policy.business_id
            and verifier.specialization in (None, policy.policy_type)
        )

    async def change_policy(
        self,
        verification: Verification,
        new_policy_id: str,
        actor_id: Optional[str] = None,
        template_snapshot: Optional[list] = None,
    ) -> Verification:
        """Move a verification to another policy of the same business.

        A verifier who is not eligible for the new policy type is released and
        the record reassigned. ``template_snapshot`` replaces the stored one
        while the customer has not opened the link yet.
        """
        status = coerce_status(verification.status)
        if status in TERMINAL_STATES:
            raise AssignmentConflictError(
                f"Cannot change the policy of a {verification.status} verification"
            )

        current = await self.db.get(Policy, verification.policy_id)
        target = await self.db.get(Policy, new_policy_id)
        if target is None:
            raise VerificationNotFoundError("Policy not found", policy_id=new_policy_id)
        if current is not None and current.business_id != target.business_id:
            raise AssignmentConflictError(
                "Policy belongs to a different business",
                policy_id=new_policy_id,
            )

        old_policy_id = verification.policy_id
        values = {"policy_id": new_policy_id, "updated_at": to_db(utcnow())}
        guards = [Verification.policy_id == old_policy_id]
        if template_snapshot is not None and status == VerificationStatus.PENDING:
            values["template_snapshot"] = template_snapshot
            guards.append(Verification.status == VerificationStatus.PENDING.value)

        result = await self.db.execute(
            update(Verification)
            .where(Verification.id == verification.id, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AssignmentConflictError(
                "Verification changed since it was read; reload and retry",
                expected_policy_id=old_policy_id,
            )

        record_event(
            self.db,
            verification.id,
            VerificationEventType.POLICY_CHANGED,
            VerificationActor.ADMIN,
            actor_id=actor_id,
            data={
                "from_policy_id": old_policy_id,
                "to_policy_id": new_policy_id,
                "template_refreshed": "template_snapshot" in values,
            },
        )
        await self.db.flush()
        await self.db.refresh(verification)

        assigned = verification.assigned_verifier_id
        if assigned is None:
            await self.assign(verification)
        elif not await self.is_eligible(assigned, target):
            logger.info(
                "Verifier %s not eligible for %s after policy change on %s; reassigning",
                assigned, target.policy_type, verification.verification_ref,
            )
            await self.release(verification, expected_verifier_id=assigned, actor_id=actor_id)
        return verification

    async def assign_manually(
        self,
        verification: Verification,
        verifier_id: str,
        actor_id: Optional[str] = None,
    ) -> str:
        """Admin override: attach a specific verifier of the same business."""
        policy = await self.db.get(Policy, verification.policy_id)
        verifier = await self.db.get(User, verifier_id)
        if (
            verifier is None
            or policy is None
            or verifier.role != UserRole.VERIFIER.value
            or not verifier.is_active
            or verifier.business_id != policy.business_id
        ):
            raise AssignmentConflictError(
                "Verifier is not an active verifier of this business",
                verifier_id=verifier_id,
            )
        if coerce_status(verification.status) in TERMINAL_STATES:
            raise AssignmentConflictError(
                f"Cannot assign a {verification.status} verification"
            )

        previous = verification.assigned_verifier_id
        guard = (
            Verification.assigned_verifier_id.is_(None)
            if previous is None
            else Verification.assigned_verifier_id == previous
        )
        result = await self.db.execute(
            update(Verification)
            .where(Verification.id == verification.id, guard)
            .values(assigned_verifier_id=verifier_id, updated_at=to_db(utcnow()))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AssignmentConflictError(
                "Assignment changed since it was read; reload and retry",
                expected_verifier_id=previous,
            )

        record_event(
            self.db,
            verification.id,
            VerificationEventType.VERIFIER_ASSIGNED,
            VerificationActor.ADMIN,
            actor_id=actor_id,
            assignee_id=verifier_id,
            data={"verifier_id": verifier_id, "previous_verifier_id": previous, "mode": "manual"},
        )
        await self.db.flush()
        await self.db.refresh(verification)
        return verifier_id

    async def retry_unassigned(self, business_id: str) -> dict:
        """Re-attempt assignment for every open, unassigned verification of a business."""
        terminal = [s.value for s in TERMINAL_STATES]
        result = await self.db.execute(
            select(Verification)
            .join(Policy, Policy.id == Verification.policy_id)
            .where(
                Policy.business_id == business_id,
                Verification.assigned_verifier_id.is_(None),
                Verification.status.notin_(terminal),
            )
            .order_by(Verification.created_at)
        )
        pending = list(result.scalars().all())

        assigned = 0
        for verification in pending:
            if await self.assign(verification):
                assigned += 1

        logger.info(
            "Assignment retry for business %s: %d/%d assigned",
            business_id, assigned, len(pending),
        )
        return {"attempted": len(pending), "assigned": assigned}

    async def release_all(self, verifier_id: str, actor_id: Optional[str] = None) -> dict:
        """Hand every open verification of a verifier to someone else.

        Used when a verifier is deactivated; the caller flips ``is_active``
        first so the verifier cannot be picked again.
        """
        terminal = [s.value for s in TERMINAL_STATES]
        result = await self.db.execute(
            select(Verification)
            .where(
                Verification.assigned_verifier_id == verifier_id,
                Verification.status.notin_(terminal),
            )
            .order_by(Verification.created_at)
        )
        open_items = list(result.scalars().all())

        reassigned = 0
        for verification in open_items:
            if await self.release(verification, expected_verifier_id=verifier_id, actor_id=actor_id):
                reassigned += 1

        if open_items:
            logger.info(
                "Released %d verifications from verifier %s (%d reassigned)",
                len(open_items), verifier_id, reassigned,
            )
        return {"released": len(open_items), "reassigned": reassigned}

    async def workload_summary(self, business_id: str) -> list[dict]:
        """Per-verifier counts for every verifier of the business, active or not."""
        result = await self.db.execute(
            select(User)
            .where(and_(User.business_id == business_id, User.role == UserRole.VERIFIER.value))
            .order_by(User.full_name, User.email)
        )
        verifiers = list(result.scalars().all())
        workloads = {
            w.verifier_id: w
            for w in await self._workloads(business_id, [v.id for v in verifiers])
        }

        summary = []
        for verifier in verifiers:
            entry = workloads[verifier.id].to_dict()
            entry.update({
                "full_name": verifier.full_name,
                "email": verifier.email,
                "specialization": verifier.specialization,
                "is_active": verifier.is_active,
            })
            summary.append(entry)
        return summary
