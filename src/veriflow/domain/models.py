"""SQLAlchemy ORM models for VeriFlow.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps, always written as UTC
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from veriflow.infra.database import Base


# ---------------------------------------------------------------------------
# Business / User
# ---------------------------------------------------------------------------


class Business(Base):
    """Organization issuing verifications. Owns policies, templates and staff."""

    __tablename__ = "businesses"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=func.now())


class User(Base):
    """Staff member: super admin, business admin or verifier."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False, default="")
    full_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="verifier")  # UserRole
    # PolicyType the verifier specializes in; NULL means generalist
    specialization = Column(String(30), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=func.now())
    last_login_at = Column(DateTime, nullable=True)


# ---------------------------------------------------------------------------
# Policy / Template
# ---------------------------------------------------------------------------


class Template(Base):
    """Evidence template: ordered categories of photo fields and questions."""

    __tablename__ = "templates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=True, index=True)
    template_name = Column(String(255), nullable=False)
    policy_type = Column(String(30), nullable=False)  # PolicyType
    version = Column(Integer, default=1)
    categories = Column(JSON, default=list)
    validation_rules = Column(JSON, default=dict)  # {"gps_tolerance_meters": 100}
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


class Policy(Base):
    """Policy a verification is issued against. Immutable once referenced."""

    __tablename__ = "policies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    business_id = Column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    external_policy_id = Column(String(100), nullable=True)
    policy_name = Column(String(255), nullable=False)
    policy_type = Column(String(30), nullable=False)  # PolicyType
    template_id = Column(String(36), ForeignKey("templates.id"), nullable=True)
    sla_hours = Column(Integer, nullable=False, default=24)
    status = Column(String(20), nullable=False, default="active")  # PolicyStatus
    created_at = Column(DateTime, default=func.now())


# ---------------------------------------------------------------------------
# Verification Lifecycle
# ---------------------------------------------------------------------------


class Verification(Base):
    """One customer's time-boxed task to submit evidence for a policy.

    status, rejection_count, assigned_verifier_id and link_accessed_at are only
    written through compare-and-swap updates in the services layer.
    """

    __tablename__ = "verifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    verification_ref = Column(String(32), unique=True, nullable=False, index=True)
    policy_id = Column(String(36), ForeignKey("policies.id"), nullable=False, index=True)
    assigned_verifier_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)

    # Status
    status = Column(String(30), nullable=False, default="pending", index=True)

    # Link management
    link_token = Column(String(64), unique=True, nullable=False, index=True)
    link_expiry = Column(DateTime, nullable=False)
    link_accessed_at = Column(DateTime, nullable=True)

    # Customer
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_address = Column(String(500), nullable=True)

    # Location (property policies only): {"lat": float, "lon": float}
    property_coordinates = Column(JSON, nullable=True)

    # Evidence definition and prefill
    template_snapshot = Column(JSON, default=list)
    prefill_data = Column(JSON, default=dict)

    # Review
    rejection_reason = Column(JSON, nullable=True)  # {category_id: {field_id: reason}}
    rejection_count = Column(Integer, nullable=False, default=0)
    rejection_history = Column(JSON, default=list)
    submitted_at = Column(DateTime, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    decision = Column(String(20), nullable=True)  # approved / rejected
    reviewer_notes = Column(Text, nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class Submission(Base):
    """Immutable evidence snapshot. A resubmission is a new row, never an edit."""

    __tablename__ = "submissions"
    __table_args__ = (
        UniqueConstraint("verification_id", "submission_number", name="uq_submission_version"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    verification_id = Column(String(36), ForeignKey("verifications.id"), nullable=False, index=True)
    submission_number = Column(Integer, nullable=False, default=1)
    categories = Column(JSON, default=list)
    geo_checks = Column(JSON, default=list)
    consent_given = Column(Boolean, default=False)
    submitted_at = Column(DateTime, default=func.now())


class VerificationEvent(Base):
    """Immutable audit trail entry for verification access and decisions."""

    __tablename__ = "verification_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    verification_id = Column(String(36), ForeignKey("verifications.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # VerificationEventType
    actor = Column(String(20), nullable=False)  # VerificationActor
    actor_id = Column(String(36), nullable=True)
    assignee_id = Column(String(36), nullable=True, index=True)  # verifier named by an assignment event
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now())
