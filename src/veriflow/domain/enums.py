"""Domain enumerations for VeriFlow.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class UserRole(str, Enum):
    """Role of a platform user."""

    SUPER_ADMIN = "super_admin"
    BUSINESS_ADMIN = "business_admin"
    VERIFIER = "verifier"


class PolicyType(str, Enum):
    """Kind of policy a verification is issued for."""

    HOME_INSURANCE = "home_insurance"
    AUTO_INSURANCE = "auto_insurance"
    CREDIT_CARD = "credit_card"


class PolicyStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class VerificationStatus(str, Enum):
    """Stored status of a verification.

    EXPIRED is never persisted; it is derived from link_expiry at access time.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    NEEDS_REVISION = "needs_revision"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class VerificationActor(str, Enum):
    """Who triggered a verification event."""

    CUSTOMER = "customer"
    VERIFIER = "verifier"
    ADMIN = "admin"
    SYSTEM = "system"


class VerificationEventType(str, Enum):
    """Audit trail event types."""

    CREATED = "created"
    LINK_ACCESSED = "link_accessed"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    APPROVED = "approved"
    REVISION_REQUESTED = "revision_requested"
    PERMANENTLY_REJECTED = "permanently_rejected"
    CANCELLED = "cancelled"
    VERIFIER_ASSIGNED = "verifier_assigned"
    VERIFIER_RELEASED = "verifier_released"
    ASSIGNMENT_FAILED = "assignment_failed"
    POLICY_CHANGED = "policy_changed"


class DecisionOutcome(str, Enum):
    """What a verifier decided on a submitted verification."""

    APPROVE = "approve"
    REJECT = "reject"


class CategoryKind(str, Enum):
    """Template category kind.

    Identity categories are validated by a separate mechanism and are never
    offered for per-field rejection.
    """

    EVIDENCE = "evidence"
    IDENTITY = "identity"


class ErrorCode(str, Enum):
    """Structured error codes surfaced to API callers."""

    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    CANCELLED = "CANCELLED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    EMPTY_SELECTION = "EMPTY_SELECTION"
    INVALID_SELECTION = "INVALID_SELECTION"
    FINAL_CONFIRMATION_REQUIRED = "FINAL_CONFIRMATION_REQUIRED"
    GEOFENCE_VIOLATION = "GEOFENCE_VIOLATION"
    INCOMPLETE_SUBMISSION = "INCOMPLETE_SUBMISSION"
    CONSENT_REQUIRED = "CONSENT_REQUIRED"
    ASSIGNMENT_CONFLICT = "ASSIGNMENT_CONFLICT"
