"""Verification lifecycle operations.

Ties the core pieces together: creation and assignment, the customer
submission flow (revision merge, required fields, geofence), verifier
decisions with bounded rejection, and administrative cancellation.

Every operation validates fully before it writes. State changes go through
``apply_transition`` so each one is a single compare-and-swap UPDATE.
"""

import copy
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.config import get_settings
from veriflow.domain.enums import (
    CategoryKind,
    DecisionOutcome,
    PolicyStatus,
    VerificationActor,
    VerificationEventType,
    VerificationStatus,
)
from veriflow.domain.errors import (
    ConsentRequiredError,
    GeofenceViolationError,
    IncompleteSubmissionError,
    InvalidTransitionError,
    VerificationNotFoundError,
)
from veriflow.domain.models import Policy, Submission, Template, User, Verification
from veriflow.infra.clock import as_utc, to_db, utcnow
from veriflow.services.assignment_service import AssignmentSelector
from veriflow.services.geo_validator import (
    Coordinates,
    GeoValidationResult,
    is_gps_required,
    validate_location,
)
from veriflow.services.geocoding_service import geocode_address
from veriflow.services.link_access_guard import LinkAccessGuard
from veriflow.services.rejection_tracker import (
    RejectionFeedback,
    append_history,
    ensure_confirmed,
    rejectable_fields,
    rejection_outcome,
    remaining_attempts,
    validate_selection,
)
from veriflow.services.verification_state_machine import (
    apply_transition,
    coerce_status,
    record_event,
    state_machine,
)

logger = logging.getLogger(__name__)

REF_PREFIX = "VER"
_REF_PATTERN = re.compile(r"^VER-(\d{4})-(\d+)$")


def _photos_by_field(category: dict) -> dict[str, dict]:
    return {p["field_id"]: p for p in category.get("photos", []) if p.get("field_id")}


def _answers_by_question(category: dict) -> dict[str, dict]:
    return {a["question_id"]: a for a in category.get("answers", []) if a.get("question_id")}


def _index_categories(categories: list[dict]) -> dict[str, dict]:
    return {c["category_id"]: c for c in categories or [] if c.get("category_id")}


def merge_revision(
    previous: list[dict],
    incoming: list[dict],
    flagged: RejectionFeedback,
) -> tuple[list[dict], list[dict]]:
    """Build the evidence for a resubmission.

    Only flagged fields are taken from ``incoming``; every other value is
    carried over from ``previous``. Returns ``(merged_categories,
    newly_supplied_photos)``. Raises IncompleteSubmissionError listing any
    flagged field the customer did not resupply.
    """
    merged = copy.deepcopy(previous or [])
    merged_index = _index_categories(merged)
    incoming_index = _index_categories(incoming)

    missing = []
    new_photos = []
    for category_id, field_id, _ in flagged:
        source = incoming_index.get(category_id, {})
        photo = _photos_by_field(source).get(field_id)
        answer = _answers_by_question(source).get(field_id)
        if photo is None and answer is None:
            missing.append({"category_id": category_id, "field_id": field_id})
            continue

        target = merged_index.get(category_id)
        if target is None:
            target = {"category_id": category_id, "photos": [], "answers": []}
            merged.append(target)
            merged_index[category_id] = target

        if photo is not None:
            target["photos"] = [
                p for p in target.get("photos", []) if p.get("field_id") != field_id
            ] + [photo]
            new_photos.append({"category_id": category_id, **photo})
        if answer is not None:
            target["answers"] = [
                a for a in target.get("answers", []) if a.get("question_id") != field_id
            ] + [answer]

    if missing:
        raise IncompleteSubmissionError(
            "Every flagged field must be resubmitted",
            missing=missing,
        )
    return merged, new_photos


def missing_required_fields(template_snapshot: list[dict], categories: list[dict]) -> list[dict]:
    """Required photo fields and questions of the template absent from ``categories``."""
    index = _index_categories(categories)
    missing = []
    for template_category in template_snapshot or []:
        category_id = template_category.get("category_id")
        submitted = index.get(category_id, {})
        photos = _photos_by_field(submitted)
        answers = _answers_by_question(submitted)

        for field in template_category.get("photo_fields", []):
            if field.get("required") and not (photos.get(field["field_id"]) or {}).get("url"):
                missing.append({"category_id": category_id, "field_id": field["field_id"]})

        for question in template_category.get("questions", []):
            if not question.get("required"):
                continue
            value = (answers.get(question["question_id"]) or {}).get("value")
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append({"category_id": category_id, "field_id": question["question_id"]})
    return missing


def gps_fields(template_snapshot: list[dict]) -> set[tuple[str, str]]:
    """(category_id, field_id) of photo fields that must be geotagged."""
    fields = set()
    for category in template_snapshot or []:
        if category.get("kind", CategoryKind.EVIDENCE.value) == CategoryKind.IDENTITY.value:
            continue
        for field in category.get("photo_fields", []):
            if field.get("capture_gps", True):
                fields.add((category.get("category_id"), field.get("field_id")))
    return fields


class VerificationService:
    """Lifecycle operations on verifications. Callers own the commit."""

    def __init__(self, db: AsyncSession, selector: Optional[AssignmentSelector] = None):
        self.db = db
        self.selector = selector or AssignmentSelector(db)
        self.guard = LinkAccessGuard(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_verification(self, verification_id: str) -> Verification:
        verification = await self.db.get(Verification, verification_id)
        if verification is None:
            raise VerificationNotFoundError(
                "Verification not found", verification_id=verification_id
            )
        return verification

    async def latest_submission(self, verification_id: str) -> Optional[Submission]:
        result = await self.db.execute(
            select(Submission)
            .where(Submission.verification_id == verification_id)
            .order_by(Submission.submission_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_submissions(self, verification_id: str) -> list[Submission]:
        result = await self.db.execute(
            select(Submission)
            .where(Submission.verification_id == verification_id)
            .order_by(Submission.submission_number)
        )
        return list(result.scalars().all())

    async def previous_submission_for_revision(
        self, token: str, now: Optional[datetime] = None
    ) -> dict:
        """Evidence and feedback a customer needs to correct flagged fields."""
        verification = await self.guard.resolve(token, now)
        if verification.status != VerificationStatus.NEEDS_REVISION.value:
            raise InvalidTransitionError(
                coerce_status(verification.status),
                VerificationStatus.SUBMITTED,
                "Previous submission is only available while a revision is requested",
            )

        submission = await self.latest_submission(verification.id)
        return {
            "verification": verification,
            "submission": submission,
            "rejection_reason": verification.rejection_reason or {},
            "rejection_count": verification.rejection_count,
            "remaining_attempts": remaining_attempts(verification.rejection_count),
        }

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def _next_reference(self, now: datetime) -> str:
        year = as_utc(now).year
        result = await self.db.execute(
            select(Verification.verification_ref).where(
                Verification.verification_ref.like(f"{REF_PREFIX}-{year}-%")
            )
        )
        highest = 0
        for ref in result.scalars().all():
            match = _REF_PATTERN.match(ref)
            if match:
                highest = max(highest, int(match.group(2)))
        return f"{REF_PREFIX}-{year}-{highest + 1:06d}"

    async def _template_snapshot(self, policy: Policy) -> list[dict]:
        template = None
        if policy.template_id:
            template = await self.db.get(Template, policy.template_id)
        if template is None:
            result = await self.db.execute(
                select(Template)
                .where(
                    Template.business_id == policy.business_id,
                    Template.policy_type == policy.policy_type,
                    Template.is_active.is_(True),
                )
                .order_by(Template.version.desc())
                .limit(1)
            )
            template = result.scalar_one_or_none()
        if template is None:
            return []
        categories = copy.deepcopy(template.categories or [])
        return sorted(categories, key=lambda c: c.get("order", 0))

    async def _tolerance_for(self, policy: Optional[Policy]) -> float:
        if policy is not None and policy.template_id:
            template = await self.db.get(Template, policy.template_id)
            rules = (template.validation_rules or {}) if template else {}
            if rules.get("gps_tolerance_meters"):
                return float(rules["gps_tolerance_meters"])
        return get_settings().gps_tolerance_meters

    async def create_verification(
        self,
        policy_id: str,
        customer: dict,
        *,
        prefill_data: Optional[dict] = None,
        coordinates: Optional[Coordinates] = None,
        verifier_id: Optional[str] = None,
        created_by: Optional[User] = None,
        now: Optional[datetime] = None,
    ) -> Verification:
        """Issue a verification for a policy and attach a verifier.

        ``customer`` carries name, phone and optionally email and address.
        A manual ``verifier_id`` must belong to the policy's business; without
        one the least-loaded eligible verifier is picked.
        """
        now = now or utcnow()

        policy = await self.db.get(Policy, policy_id)
        if policy is None or policy.status != PolicyStatus.ACTIVE.value:
            raise VerificationNotFoundError("Policy not found or inactive", policy_id=policy_id)

        if coordinates is None and is_gps_required(policy.policy_type) and customer.get("address"):
            coordinates = await geocode_address(customer["address"])
            if coordinates is None:
                logger.warning(
                    "Could not geocode address for policy %s; photos will not be geofenced",
                    policy.id,
                )

        prefill = dict(prefill_data or {})
        if created_by is not None:
            prefill["agent_info"] = {
                "name": created_by.full_name,
                "email": created_by.email,
                "phone": created_by.phone,
            }

        sla_hours = policy.sla_hours or get_settings().default_sla_hours
        verification = Verification(
            verification_ref=await self._next_reference(now),
            policy_id=policy.id,
            status=VerificationStatus.PENDING.value,
            link_token=secrets.token_urlsafe(get_settings().link_token_bytes),
            link_expiry=to_db(now + timedelta(hours=sla_hours)),
            customer_name=customer["name"],
            customer_phone=customer["phone"],
            customer_email=customer.get("email"),
            customer_address=customer.get("address"),
            property_coordinates=coordinates.to_dict() if coordinates else None,
            template_snapshot=await self._template_snapshot(policy),
            prefill_data=prefill,
            rejection_count=0,
            rejection_history=[],
            created_at=to_db(now),
            updated_at=to_db(now),
        )
        self.db.add(verification)
        await self.db.flush()

        record_event(
            self.db,
            verification.id,
            VerificationEventType.CREATED,
            VerificationActor.ADMIN if created_by else VerificationActor.SYSTEM,
            actor_id=created_by.id if created_by else None,
            to_status=VerificationStatus.PENDING.value,
            data={"policy_id": policy.id, "sla_hours": sla_hours},
        )
        await self.db.flush()

        if verifier_id:
            await self.selector.assign_manually(
                verification, verifier_id, actor_id=created_by.id if created_by else None
            )
        else:
            await self.selector.assign(verification)

        logger.info(
            "Created verification %s for policy %s (expires %s)",
            verification.verification_ref, policy.id, verification.link_expiry.isoformat(),
        )
        return verification

    # ------------------------------------------------------------------
    # Customer flow
    # ------------------------------------------------------------------

    async def check_photo_location(
        self,
        token: str,
        captured: Optional[Coordinates],
        now: Optional[datetime] = None,
    ) -> GeoValidationResult:
        """Pre-upload geofence check so the customer can retake before submitting."""
        verification = await self.guard.resolve(token, now)
        policy = await self.db.get(Policy, verification.policy_id)
        if not is_gps_required(policy.policy_type if policy else None):
            return GeoValidationResult(
                is_valid=True,
                distance_meters=None,
                within_tolerance=True,
                message="Location check not required for this policy type",
            )
        return validate_location(
            captured,
            Coordinates.from_mapping(verification.property_coordinates),
            await self._tolerance_for(policy),
        )

    async def _geofence(
        self,
        verification: Verification,
        policy: Optional[Policy],
        photos: list[dict],
    ) -> list[dict]:
        """Validate newly supplied photos. Returns per-photo checks or raises."""
        if not is_gps_required(policy.policy_type if policy else None):
            return []

        expected = Coordinates.from_mapping(verification.property_coordinates)
        tolerance = await self._tolerance_for(policy)
        tagged = gps_fields(verification.template_snapshot)

        checks = []
        violations = []
        for photo in photos:
            key = (photo.get("category_id"), photo.get("field_id"))
            if verification.template_snapshot and key not in tagged:
                continue
            result = validate_location(Coordinates.from_mapping(photo.get("gps")), expected, tolerance)
            check = {"category_id": key[0], "field_id": key[1], **result.to_dict()}
            checks.append(check)
            if not result.accepted:
                violations.append(check)

        if violations:
            raise GeofenceViolationError(
                "Photo location could not be verified; please retake at the property",
                violations=violations,
            )
        return checks

    async def submit_evidence(
        self,
        token: str,
        categories: list[dict],
        consent_given: bool,
        now: Optional[datetime] = None,
    ) -> tuple[Verification, Submission]:
        """Accept a customer's evidence and move the verification to ``submitted``."""
        now = now or utcnow()
        verification = await self.guard.resolve(token, now)

        if not consent_given:
            raise ConsentRequiredError("Consent is required to submit evidence")

        status = coerce_status(verification.status)
        previous = await self.latest_submission(verification.id)
        incoming = copy.deepcopy(categories or [])

        if status == VerificationStatus.NEEDS_REVISION:
            flagged = RejectionFeedback.from_dict(verification.rejection_reason)
            merged, new_photos = merge_revision(
                previous.categories if previous else [], incoming, flagged
            )
        else:
            merged = incoming
            new_photos = [
                {"category_id": c.get("category_id"), **p}
                for c in incoming
                for p in c.get("photos", [])
            ]

        missing = missing_required_fields(verification.template_snapshot, merged)
        if missing:
            raise IncompleteSubmissionError("Required fields are missing", missing=missing)

        policy = await self.db.get(Policy, verification.policy_id)
        geo_checks = await self._geofence(verification, policy, new_photos)

        if status == VerificationStatus.PENDING:
            await self.guard.record_first_access(verification, now)

        submission_number = (previous.submission_number + 1) if previous else 1
        await apply_transition(
            self.db,
            verification,
            VerificationStatus.SUBMITTED,
            VerificationActor.CUSTOMER,
            VerificationEventType.EVIDENCE_SUBMITTED,
            values={"submitted_at": to_db(now)},
            now=now,
            event_data={"submission_number": submission_number},
        )

        submission = Submission(
            verification_id=verification.id,
            submission_number=submission_number,
            categories=merged,
            geo_checks=geo_checks,
            consent_given=True,
            submitted_at=to_db(now),
        )
        self.db.add(submission)
        await self.db.flush()

        logger.info(
            "Verification %s submission #%d received",
            verification.verification_ref, submission_number,
        )
        return verification, submission

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def decide(
        self,
        verification_id: str,
        outcome: DecisionOutcome,
        *,
        feedback: Optional[RejectionFeedback] = None,
        confirm_final: bool = False,
        actor: VerificationActor = VerificationActor.VERIFIER,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Verification:
        """Approve or reject a submitted verification.

        Rejections flag individual fields of the latest submission. The first
        three send the verification back for revision; the fourth is
        permanent and requires ``confirm_final``.
        """
        now = now or utcnow()
        verification = await self.get_verification(verification_id)
        current = coerce_status(verification.status)

        if outcome == DecisionOutcome.APPROVE:
            return await apply_transition(
                self.db,
                verification,
                VerificationStatus.APPROVED,
                actor,
                VerificationEventType.APPROVED,
                actor_id=actor_id,
                values={
                    "reviewed_at": to_db(now),
                    "decision": VerificationStatus.APPROVED.value,
                    "reviewer_notes": notes,
                },
                now=now,
            )

        count = verification.rejection_count or 0
        target = rejection_outcome(count)
        state_machine.validate_transition(current, target, actor, verification, now)

        feedback = feedback or RejectionFeedback()
        latest = await self.latest_submission(verification.id)
        validate_selection(
            feedback,
            rejectable_fields(verification.template_snapshot, latest.categories if latest else []),
        )
        ensure_confirmed(count, confirm_final)

        final = target == VerificationStatus.REJECTED
        history = append_history(
            verification.rejection_history,
            feedback,
            cycle=count + 1,
            outcome=target,
            decided_by=actor_id,
            decided_at=as_utc(now).isoformat(),
        )
        await apply_transition(
            self.db,
            verification,
            target,
            actor,
            VerificationEventType.PERMANENTLY_REJECTED if final else VerificationEventType.REVISION_REQUESTED,
            actor_id=actor_id,
            values={
                "rejection_count": count + 1,
                "rejection_reason": feedback.to_dict(),
                "rejection_history": history,
                "reviewed_at": to_db(now),
                "decision": VerificationStatus.REJECTED.value if final else None,
                "reviewer_notes": notes,
            },
            guards=[Verification.rejection_count == count],
            now=now,
            event_data={
                "rejection_count": count + 1,
                "feedback": feedback.to_dict(),
                "submission_number": latest.submission_number if latest else None,
            },
        )
        return verification

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def cancel(
        self,
        verification_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Verification:
        now = now or utcnow()
        verification = await self.get_verification(verification_id)
        return await apply_transition(
            self.db,
            verification,
            VerificationStatus.CANCELLED,
            VerificationActor.ADMIN,
            VerificationEventType.CANCELLED,
            actor_id=actor_id,
            values={"cancelled_at": to_db(now), "cancel_reason": reason},
            now=now,
            event_data={"reason": reason} if reason else None,
        )

    async def change_policy(
        self,
        verification_id: str,
        new_policy_id: str,
        actor_id: Optional[str] = None,
    ) -> Verification:
        """Re-point a verification at another policy, re-snapshotting the form if still pending."""
        verification = await self.get_verification(verification_id)
        target = await self.db.get(Policy, new_policy_id)
        snapshot = None
        if target is not None and coerce_status(verification.status) == VerificationStatus.PENDING:
            snapshot = await self._template_snapshot(target)
        return await self.selector.change_policy(
            verification, new_policy_id, actor_id=actor_id, template_snapshot=snapshot
        )


def submission_payload(submission: Optional[Submission]) -> Optional[dict[str, Any]]:
    if submission is None:
        return None
    return {
        "id": submission.id,
        "submission_number": submission.submission_number,
        "categories": submission.categories or [],
        "geo_checks": submission.geo_checks or [],
        "submitted_at": submission.submitted_at.isoformat() if submission.submitted_at else None,
    }
