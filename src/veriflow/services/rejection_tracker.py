"""Rejection feedback tracking and the bounded revision cycle.

A verifier flags individual fields of the latest submission, each with a
reason. The first three rejections send the verification back to the customer
(``needs_revision``); the fourth is permanent and needs explicit confirmation.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Iterator, Mapping, NewType, Optional

from veriflow.domain.enums import CategoryKind, VerificationStatus
from veriflow.domain.errors import (
    EmptySelectionError,
    FinalConfirmationRequiredError,
    InvalidSelectionError,
)

CategoryId = NewType("CategoryId", str)
FieldId = NewType("FieldId", str)

# Rejections that still allow a revision; the next one is final
MAX_REVISION_CYCLES = 3

OTHER_REASON = "Other"

REJECTION_REASONS: tuple[str, ...] = (
    "Blurry Image",
    "Too Dark",
    "Incomplete Answer",
    "Irrelevant Photo",
    "Wrong Angle",
    "Missing Required Details",
    OTHER_REASON,
)


def resolve_reason(reason: Optional[str], custom_reason: Optional[str] = None) -> str:
    """Return the reason text to store for one flagged field.

    Enumerated reasons are stored as-is. "Other" requires a non-empty custom
    text, which is stored instead of the literal "Other".
    """
    reason = (reason or "").strip()
    custom = (custom_reason or "").strip()

    if not reason:
        if custom:
            return custom
        raise InvalidSelectionError("Rejection reason must not be empty")

    if reason == OTHER_REASON:
        if not custom:
            raise InvalidSelectionError('A custom reason is required when "Other" is selected')
        return custom

    if reason not in REJECTION_REASONS:
        raise InvalidSelectionError(
            f"Unknown rejection reason: {reason!r}",
            allowed=list(REJECTION_REASONS),
        )
    return reason


class RejectionFeedback:
    """Ordered ``category -> field -> reason`` selection for one rejection event."""

    def __init__(self) -> None:
        self._items: dict[CategoryId, dict[FieldId, str]] = {}

    # ------------------------------------------------------------------
    # Selection bookkeeping
    # ------------------------------------------------------------------

    def flag(self, category_id: str, field_id: str, reason: str) -> None:
        if not reason or not reason.strip():
            raise InvalidSelectionError(
                "Rejection reason must not be empty",
                category_id=category_id,
                field_id=field_id,
            )
        self._items.setdefault(CategoryId(category_id), {})[FieldId(field_id)] = reason.strip()

    def unflag(self, category_id: str, field_id: str) -> None:
        fields = self._items.get(CategoryId(category_id))
        if not fields:
            return
        fields.pop(FieldId(field_id), None)
        if not fields:
            del self._items[CategoryId(category_id)]

    def toggle(self, category_id: str, field_id: str, reason: str) -> bool:
        """Flag the field if unflagged, otherwise unflag it. Returns the new state."""
        if self.is_flagged(category_id, field_id):
            self.unflag(category_id, field_id)
            return False
        self.flag(category_id, field_id, reason)
        return True

    def set_reason(
        self,
        category_id: str,
        field_id: str,
        reason: str,
        custom_reason: Optional[str] = None,
    ) -> None:
        self.flag(category_id, field_id, resolve_reason(reason, custom_reason))

    def is_flagged(self, category_id: str, field_id: str) -> bool:
        return FieldId(field_id) in self._items.get(CategoryId(category_id), {})

    def reason_for(self, category_id: str, field_id: str) -> Optional[str]:
        return self._items.get(CategoryId(category_id), {}).get(FieldId(field_id))

    @property
    def total(self) -> int:
        return sum(len(fields) for fields in self._items.values())

    def __len__(self) -> int:
        return self.total

    def __bool__(self) -> bool:
        return self.total > 0

    def __iter__(self) -> Iterator[tuple[CategoryId, FieldId, str]]:
        for category_id, fields in self._items.items():
            for field_id, reason in fields.items():
                yield category_id, field_id, reason

    def fields_in(self, category_id: str) -> dict[FieldId, str]:
        return dict(self._items.get(CategoryId(category_id), {}))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {str(c): {str(f): r for f, r in fields.items()} for c, fields in self._items.items()}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Mapping[str, str]]]) -> "RejectionFeedback":
        feedback = cls()
        for category_id, fields in (data or {}).items():
            for field_id, reason in (fields or {}).items():
                feedback.flag(category_id, field_id, reason)
        return feedback

    @classmethod
    def from_items(cls, items: Iterable[Any]) -> "RejectionFeedback":
        """Build from request items exposing category_id, field_id, reason, custom_reason."""
        feedback = cls()
        for item in items:
            feedback.set_reason(
                item.category_id,
                item.field_id,
                item.reason,
                getattr(item, "custom_reason", None),
            )
        return feedback

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RejectionFeedback):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"RejectionFeedback({self.to_dict()!r})"


# ---------------------------------------------------------------------------
# Rejectable fields
# ---------------------------------------------------------------------------


def identity_category_ids(template_snapshot: Iterable[Mapping[str, Any]]) -> set[str]:
    return {
        cat.get("category_id")
        for cat in template_snapshot or []
        if cat.get("kind", CategoryKind.EVIDENCE.value) == CategoryKind.IDENTITY.value
    }


def rejectable_fields(
    template_snapshot: Iterable[Mapping[str, Any]],
    submission_categories: Iterable[Mapping[str, Any]],
) -> dict[str, set[str]]:
    """Fields of the latest submission a verifier may flag, by category.

    Every submitted photo field and answered question qualifies unless its
    category is tagged as an identity category in the template.
    """
    excluded = identity_category_ids(template_snapshot)
    result: dict[str, set[str]] = {}
    for category in submission_categories or []:
        category_id = category.get("category_id")
        if not category_id or category_id in excluded:
            continue
        fields = {p.get("field_id") for p in category.get("photos", []) if p.get("field_id")}
        fields |= {a.get("question_id") for a in category.get("answers", []) if a.get("question_id")}
        if fields:
            result[category_id] = fields
    return result


def validate_selection(feedback: RejectionFeedback, rejectable: Mapping[str, set[str]]) -> None:
    """Reject empty selections and fields the verifier cannot flag."""
    if not feedback:
        raise EmptySelectionError("Select at least one item to reject")

    unknown = [
        {"category_id": category_id, "field_id": field_id}
        for category_id, field_id, _ in feedback
        if field_id not in rejectable.get(category_id, set())
    ]
    if unknown:
        raise InvalidSelectionError(
            "Selection contains fields that are not rejectable in the latest submission",
            fields=unknown,
        )


# ---------------------------------------------------------------------------
# Escalation rule
# ---------------------------------------------------------------------------


def rejection_outcome(rejection_count: int) -> VerificationStatus:
    """Status produced by rejecting a verification with ``rejection_count`` prior rejections."""
    if (rejection_count or 0) < MAX_REVISION_CYCLES:
        return VerificationStatus.NEEDS_REVISION
    return VerificationStatus.REJECTED


def requires_final_confirmation(rejection_count: int) -> bool:
    return rejection_outcome(rejection_count) == VerificationStatus.REJECTED


def remaining_attempts(rejection_count: int) -> int:
    """Revision rounds the customer still has after the current review."""
    return max(MAX_REVISION_CYCLES - (rejection_count or 0), 0)


def ensure_confirmed(rejection_count: int, confirm_final: bool) -> None:
    if requires_final_confirmation(rejection_count) and not confirm_final:
        raise FinalConfirmationRequiredError(
            f"This verification has already been rejected {rejection_count} times. "
            "Rejecting again is permanent; confirm the final rejection to proceed.",
            rejection_count=rejection_count,
        )


def append_history(
    history: Optional[list],
    feedback: RejectionFeedback,
    *,
    cycle: int,
    outcome: VerificationStatus,
    decided_by: Optional[str],
    decided_at: str,
) -> list:
    """Return a new history list with this cycle's feedback appended."""
    entries = copy.deepcopy(history) if history else []
    entries.append({
        "cycle": cycle,
        "outcome": outcome.value,
        "feedback": feedback.to_dict(),
        "decided_by": decided_by,
        "decided_at": decided_at,
    })
    return entries
