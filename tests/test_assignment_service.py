"""Tests for least-loaded verifier assignment."""

import random

import pytest
from sqlalchemy import select, update

from veriflow.domain.errors import AssignmentConflictError
from veriflow.domain.models import Verification, VerificationEvent
from veriflow.services.assignment_service import (
    AssignmentSelector,
    VerifierWorkload,
    pick_least_loaded,
)


async def _load(make_verification, policy, verifier, count, status="pending"):
    for _ in range(count):
        await make_verification(policy, status=status, assigned_verifier_id=verifier.id)


class TestPickLeastLoaded:
    def test_empty(self):
        assert pick_least_loaded([]) is None

    def test_minimum_wins(self):
        workloads = [VerifierWorkload("a", 2), VerifierWorkload("b", 1), VerifierWorkload("c", 5)]
        assert pick_least_loaded(workloads, random.Random(1)) == "b"

    def test_ties_are_spread(self):
        workloads = [VerifierWorkload("a", 0), VerifierWorkload("b", 0), VerifierWorkload("c", 3)]
        rng = random.Random(7)
        picks = {pick_least_loaded(workloads, rng) for _ in range(200)}
        assert picks == {"a", "b"}


class TestSelect:
    async def test_zero_zero_three_never_picks_loaded(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        policy = await make_policy(business)
        idle_a = await make_verifier(business)
        idle_b = await make_verifier(business)
        busy = await make_verifier(business)
        await _load(make_verification, policy, busy, 3)

        selector = AssignmentSelector(db_session, rng=random.Random(42))
        picks = {await selector.select(business.id, "home_insurance") for _ in range(30)}

        assert busy.id not in picks
        assert picks == {idle_a.id, idle_b.id}

    async def test_only_pending_and_in_progress_count(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        policy = await make_policy(business)
        reviewer = await make_verifier(business)
        other = await make_verifier(business)
        for status in ("submitted", "approved", "rejected", "cancelled", "needs_revision"):
            await _load(make_verification, policy, reviewer, 2, status=status)
        await _load(make_verification, policy, other, 1, status="in_progress")

        selector = AssignmentSelector(db_session, rng=random.Random(0))
        assert await selector.select(business.id, "home_insurance") == reviewer.id

    async def test_ineligible_verifiers_never_selected(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        other_business = await make_business("Other Co")
        eligible = await make_verifier(business, specialization="home_insurance")
        await _load(make_verification, await make_policy(business), eligible, 5)

        await make_verifier(business, is_active=False)
        await make_verifier(business, specialization="auto_insurance")
        await make_verifier(other_business)
        admin_like = await make_verifier(business)
        admin_like.role = "business_admin"
        await db_session.flush()

        selector = AssignmentSelector(db_session, rng=random.Random(3))
        picks = {await selector.select(business.id, "home_insurance") for _ in range(20)}
        assert picks == {eligible.id}

    async def test_workload_scoped_to_business(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        foreign = await make_business("Foreign")
        a = await make_verifier(business)
        b = await make_verifier(business)
        await _load(make_verification, await make_policy(business), b, 1)
        # Rows under another business's policy must not count toward a's workload
        await _load(make_verification, await make_policy(foreign), a, 4)

        selector = AssignmentSelector(db_session)
        assert await selector.select(business.id, "home_insurance") == a.id

    async def test_no_eligible_returns_none(self, db_session, make_business, make_verifier):
        business = await make_business()
        await make_verifier(business, specialization="credit_card")
        assert await AssignmentSelector(db_session).select(business.id, "home_insurance") is None


class TestAssign:
    async def test_assigns_and_records_event(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        verifier = await make_verifier(business)
        verification = await make_verification(await make_policy(business))

        assigned = await AssignmentSelector(db_session).assign(verification)

        assert assigned == verifier.id
        assert verification.assigned_verifier_id == verifier.id
        events = (await db_session.execute(
            select(VerificationEvent.event_type).where(VerificationEvent.verification_id == verification.id)
        )).scalars().all()
        assert events == ["verifier_assigned"]

    async def test_no_eligible_leaves_unassigned(
        self, db_session, make_business, make_policy, make_verification
    ):
        business = await make_business()
        verification = await make_verification(await make_policy(business))

        assert await AssignmentSelector(db_session).assign(verification) is None
        assert verification.assigned_verifier_id is None
        events = (await db_session.execute(
            select(VerificationEvent.event_type).where(VerificationEvent.verification_id == verification.id)
        )).scalars().all()
        assert events == ["assignment_failed"]

    async def test_lost_race_keeps_winner(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        winner = await make_verifier(business)
        await make_verifier(business)
        verification = await make_verification(await make_policy(business))

        # Another writer assigns first; our in-memory copy still says unassigned
        await db_session.execute(
            update(Verification)
            .where(Verification.id == verification.id)
            .values(assigned_verifier_id=winner.id)
            .execution_options(synchronize_session=False)
        )

        assert await AssignmentSelector(db_session).assign(verification) == winner.id
        assert verification.assigned_verifier_id == winner.id

    async def test_back_to_back_assignments_see_each_other(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        policy = await make_policy(business)
        a = await make_verifier(business)
        b = await make_verifier(business)

        selector = AssignmentSelector(db_session, rng=random.Random(11))
        first = await make_verification(policy)
        second = await make_verification(policy)
        await selector.assign(first)
        await selector.assign(second)

        assert {first.assigned_verifier_id, second.assigned_verifier_id} == {a.id, b.id}


class TestReassignmentTriggers:
    async def test_release_reassigns(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        leaving = await make_verifier(business)
        verification = await make_verification(
            await make_policy(business), assigned_verifier_id=leaving.id
        )
        leaving.is_active = False
        replacement = await make_verifier(business)
        await db_session.flush()

        assigned = await AssignmentSelector(db_session).release(verification)

        assert assigned == replacement.id
        assert verification.assigned_verifier_id == replacement.id

    async def test_release_with_stale_expectation_conflicts(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        current = await make_verifier(business)
        verification = await make_verification(
            await make_policy(business), assigned_verifier_id=current.id
        )

        with pytest.raises(AssignmentConflictError):
            await AssignmentSelector(db_session).release(verification, expected_verifier_id="someone-else")

    async def test_policy_change_assigns_unassigned_record(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        home = await make_policy(business, policy_type="home_insurance")
        auto = await make_policy(business, policy_type="auto_insurance")
        motor_expert = await make_verifier(business, specialization="auto_insurance")
        verification = await make_verification(home)

        selector = AssignmentSelector(db_session)
        assert await selector.assign(verification) is None

        await selector.change_policy(verification, auto.id)

        assert verification.policy_id == auto.id
        assert verification.assigned_verifier_id == motor_expert.id

    async def test_policy_change_moves_work_off_mismatched_specialist(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        auto = await make_policy(business, policy_type="auto_insurance")
        home = await make_policy(business, policy_type="home_insurance")
        motor_expert = await make_verifier(business, specialization="auto_insurance")
        home_expert = await make_verifier(business, specialization="home_insurance")
        verification = await make_verification(auto, assigned_verifier_id=motor_expert.id)

        await AssignmentSelector(db_session).change_policy(verification, home.id, actor_id="admin-1")

        assert verification.policy_id == home.id
        assert verification.assigned_verifier_id == home_expert.id
        events = (await db_session.execute(
            select(VerificationEvent.event_type, VerificationEvent.assignee_id)
            .where(VerificationEvent.verification_id == verification.id)
        )).all()
        assert ("verifier_released", None) in events
        assert ("verifier_assigned", home_expert.id) in events

    async def test_policy_change_keeps_eligible_verifier(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        generalist = await make_verifier(business)
        await make_verifier(business, specialization="auto_insurance")
        verification = await make_verification(
            await make_policy(business), assigned_verifier_id=generalist.id
        )

        await AssignmentSelector(db_session).change_policy(
            verification, (await make_policy(business, policy_type="auto_insurance")).id
        )

        assert verification.assigned_verifier_id == generalist.id

    async def test_policy_change_unmatched_specialist_left_unassigned(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        motor_expert = await make_verifier(business, specialization="auto_insurance")
        verification = await make_verification(
            await make_policy(business, policy_type="auto_insurance"),
            assigned_verifier_id=motor_expert.id,
        )

        await AssignmentSelector(db_session).change_policy(
            verification, (await make_policy(business, policy_type="home_insurance")).id
        )

        assert verification.assigned_verifier_id is None

    async def test_policy_change_lost_race_conflicts(
        self, db_session, make_business, make_policy, make_verification
    ):
        business = await make_business()
        home = await make_policy(business)
        auto = await make_policy(business, policy_type="auto_insurance")
        cards = await make_policy(business, policy_type="credit_card")
        verification = await make_verification(home)

        # Another admin re-pointed the record; our copy still names the home policy
        await db_session.execute(
            update(Verification)
            .where(Verification.id == verification.id)
            .values(policy_id=cards.id)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(AssignmentConflictError):
            await AssignmentSelector(db_session).change_policy(verification, auto.id)

        events = (await db_session.execute(
            select(VerificationEvent.event_type).where(VerificationEvent.verification_id == verification.id)
        )).scalars().all()
        assert "policy_changed" not in events

    async def test_policy_change_across_business_rejected(
        self, db_session, make_business, make_policy, make_verification
    ):
        business = await make_business()
        foreign_policy = await make_policy(await make_business("Foreign"))
        verification = await make_verification(await make_policy(business))

        with pytest.raises(AssignmentConflictError, match="different business"):
            await AssignmentSelector(db_session).change_policy(verification, foreign_policy.id)

    async def test_manual_assignment_requires_same_business(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        outsider = await make_verifier(await make_business("Foreign"))
        verification = await make_verification(await make_policy(business))

        with pytest.raises(AssignmentConflictError):
            await AssignmentSelector(db_session).assign_manually(verification, outsider.id)
        assert verification.assigned_verifier_id is None

    async def test_retry_unassigned(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        policy = await make_policy(business)
        open_one = await make_verification(policy)
        await make_verification(policy, status="cancelled")

        selector = AssignmentSelector(db_session)
        assert await selector.retry_unassigned(business.id) == {"attempted": 1, "assigned": 0}

        verifier = await make_verifier(business)
        assert await selector.retry_unassigned(business.id) == {"attempted": 1, "assigned": 1}
        await db_session.refresh(open_one)
        assert open_one.assigned_verifier_id == verifier.id

    async def test_release_all_leaves_unassigned_without_colleague(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        policy = await make_policy(business)
        leaving = await make_verifier(business)
        first = await make_verification(policy, status="pending", assigned_verifier_id=leaving.id)
        second = await make_verification(policy, status="needs_revision", assigned_verifier_id=leaving.id)
        leaving.is_active = False
        await db_session.flush()

        summary = await AssignmentSelector(db_session).release_all(leaving.id)

        assert summary == {"released": 2, "reassigned": 0}
        assert first.assigned_verifier_id is None
        assert second.assigned_verifier_id is None


class TestWorkloadSummary:
    async def test_counts_by_bucket(
        self, db_session, make_business, make_verifier, make_policy, make_verification
    ):
        business = await make_business()
        policy = await make_policy(business)
        verifier = await make_verifier(business)
        await _load(make_verification, policy, verifier, 2, status="pending")
        await _load(make_verification, policy, verifier, 1, status="submitted")
        await _load(make_verification, policy, verifier, 1, status="approved")
        await _load(make_verification, policy, verifier, 1, status="rejected")

        summary = await AssignmentSelector(db_session).workload_summary(business.id)

        assert len(summary) == 1
        entry = summary[0]
        assert entry["verifier_id"] == verifier.id
        assert entry["active_count"] == 2
        assert entry["pending_review_count"] == 1
        assert entry["completed_count"] == 2
        assert entry["total_assigned"] == 5
