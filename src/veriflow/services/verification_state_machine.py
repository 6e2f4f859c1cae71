"""Verification state machine: validates transitions and applies them atomically.

Lifecycle:
    pending -> in_progress -> submitted -> approved
                                      \\-> needs_revision -> submitted (bounded loop)
                                      \\-> rejected (after the final rejection)
    pending / in_progress / submitted -> cancelled (admin)

``expired`` is never stored. It is derived from ``link_expiry`` every time a
customer touches the record.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.domain.enums import (
    VerificationActor,
    VerificationEventType,
    VerificationStatus,
)
from veriflow.domain.errors import ConcurrentTransitionError, InvalidTransitionError
from veriflow.domain.models import Verification, VerificationEvent
from veriflow.infra.clock import as_utc, to_db, utcnow
from veriflow.services.rejection_tracker import MAX_REVISION_CYCLES

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Transition map: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = VerificationStatus
A = VerificationActor

TRANSITION_MAP: dict[VerificationStatus, dict[VerificationStatus, set[VerificationActor]]] = {
    S.PENDING: {
        S.IN_PROGRESS: {A.CUSTOMER, A.SYSTEM},
    },
    S.IN_PROGRESS: {
        S.SUBMITTED: {A.CUSTOMER},
    },
    S.SUBMITTED: {
        S.APPROVED: {A.VERIFIER, A.ADMIN},
        S.NEEDS_REVISION: {A.VERIFIER, A.ADMIN},
        S.REJECTED: {A.VERIFIER, A.ADMIN},
    },
    S.NEEDS_REVISION: {
        S.SUBMITTED: {A.CUSTOMER},
    },
}

TERMINAL_STATES: set[VerificationStatus] = {
    S.APPROVED,
    S.REJECTED,
    S.CANCELLED,
}

# Administrative cancellation is allowed only before a decision is made
CANCELLABLE_STATES: set[VerificationStatus] = {
    S.PENDING,
    S.IN_PROGRESS,
    S.SUBMITTED,
}

# Statuses a customer can still act on through the link
CUSTOMER_ACTIONABLE_STATES: set[VerificationStatus] = {
    S.PENDING,
    S.IN_PROGRESS,
    S.NEEDS_REVISION,
}

# Transitions blocked once link_expiry has passed
DEADLINE_BOUND_TARGETS: set[VerificationStatus] = {
    S.IN_PROGRESS,
    S.SUBMITTED,
}


def coerce_status(status: Any) -> VerificationStatus:
    if isinstance(status, VerificationStatus):
        return status
    return VerificationStatus(status)


class VerificationStateMachine:
    """Validates verification state transitions and enforces business rules."""

    def validate_transition(
        self,
        current_status: VerificationStatus,
        target_status: VerificationStatus,
        actor: VerificationActor,
        verification=None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not.

        Checks:
        1. The source state is not terminal and neither side is the derived EXPIRED.
        2. The transition is in the allowed map (or is an admin cancellation).
        3. The actor has permission for this transition.
        4. The link has not expired for customer-facing transitions.
        5. The rejection cap selects needs_revision vs. rejected.
        """
        current_status = coerce_status(current_status)
        target_status = coerce_status(target_status)

        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"{current_status.value} is terminal; no further transitions are permitted",
            )

        if S.EXPIRED in (current_status, target_status):
            raise InvalidTransitionError(
                current_status,
                target_status,
                "expired is derived from link_expiry and cannot be transitioned",
            )

        if target_status == S.CANCELLED:
            if actor != A.ADMIN:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Actor {actor.value} is not permitted to cancel (allowed: admin)",
                )
            if current_status not in CANCELLABLE_STATES:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Cannot cancel from {current_status.value}",
                )
            return True

        allowed_targets = TRANSITION_MAP.get(current_status)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"No transitions allowed from {current_status.value}",
            )

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )

        if verification is not None:
            if target_status in DEADLINE_BOUND_TARGETS and self.is_expired(verification, now):
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Link expired at {as_utc(verification.link_expiry).isoformat()}",
                )

            count = getattr(verification, "rejection_count", 0) or 0
            if target_status == S.NEEDS_REVISION and count >= MAX_REVISION_CYCLES:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Revision limit reached ({MAX_REVISION_CYCLES}); the next rejection is final",
                )
            if target_status == S.REJECTED and count < MAX_REVISION_CYCLES:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Permanent rejection requires {MAX_REVISION_CYCLES} prior rejections "
                    f"(current: {count})",
                )

        return True

    def get_allowed_transitions(
        self,
        current_status: VerificationStatus,
        actor: VerificationActor,
    ) -> list[VerificationStatus]:
        """Return list of valid next states for the given actor from the current status."""
        current_status = coerce_status(current_status)
        results: list[VerificationStatus] = []

        if current_status in TERMINAL_STATES:
            return results

        for target_status, allowed_actors in TRANSITION_MAP.get(current_status, {}).items():
            if actor in allowed_actors:
                results.append(target_status)

        if actor == A.ADMIN and current_status in CANCELLABLE_STATES:
            results.append(S.CANCELLED)

        return results

    def is_expired(self, verification, now: Optional[datetime] = None) -> bool:
        """Return True if the verification's link window has closed."""
        expiry = as_utc(getattr(verification, "link_expiry", None))
        if expiry is None:
            return False
        return as_utc(now or utcnow()) > expiry

    def effective_status(self, verification, now: Optional[datetime] = None) -> VerificationStatus:
        """Stored status, or EXPIRED for a non-terminal record past its link window."""
        status = coerce_status(verification.status)
        if status not in TERMINAL_STATES and self.is_expired(verification, now):
            return S.EXPIRED
        return status


state_machine = VerificationStateMachine()


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def record_event(
    db: AsyncSession,
    verification_id: str,
    event_type: VerificationEventType,
    actor: VerificationActor,
    *,
    actor_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    data: Optional[dict] = None,
) -> VerificationEvent:
    event = VerificationEvent(
        id=str(uuid.uuid4()),
        verification_id=verification_id,
        event_type=event_type.value,
        actor=actor.value,
        actor_id=actor_id,
        assignee_id=assignee_id,
        from_status=from_status,
        to_status=to_status,
        data=data,
    )
    db.add(event)
    return event


async def apply_transition(
    db: AsyncSession,
    verification: Verification,
    target_status: VerificationStatus,
    actor: VerificationActor,
    event_type: VerificationEventType,
    *,
    actor_id: Optional[str] = None,
    values: Optional[dict] = None,
    guards: Iterable = (),
    now: Optional[datetime] = None,
    event_data: Optional[dict] = None,
) -> Verification:
    """Validate and write one transition with compare-and-swap semantics.

    The UPDATE only matches while the row still has the status the caller
    read (plus any extra ``guards``). Zero matched rows means another writer
    got there first: ConcurrentTransitionError is raised and nothing changes.
    """
    now = now or utcnow()
    current_status = coerce_status(verification.status)
    state_machine.validate_transition(current_status, target_status, actor, verification, now)

    stmt = (
        update(Verification)
        .where(
            Verification.id == verification.id,
            Verification.status == current_status.value,
            *guards,
        )
        .values(status=target_status.value, updated_at=to_db(now), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        logger.warning(
            "Transition %s -> %s lost CAS for verification %s",
            current_status.value, target_status.value, verification.id,
        )
        raise ConcurrentTransitionError(
            "Verification was modified by another request; reload and retry",
            expected_status=current_status.value,
        )

    record_event(
        db,
        verification.id,
        event_type,
        actor,
        actor_id=actor_id,
        from_status=current_status.value,
        to_status=target_status.value,
        data=event_data,
    )
    await db.flush()
    await db.refresh(verification)

    logger.info(
        "Verification %s: %s -> %s by %s",
        verification.id, current_status.value, target_status.value, actor.value,
    )
    return verification
