"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from veriflow.domain.enums import DecisionOutcome, PolicyType, UserRole


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserLogin(BaseModel):
    """Schema for staff login."""

    email: str
    password: str


class UserResponse(BaseModel):
    """Schema for user API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: str | None = None
    role: str
    business_id: str | None = None
    specialization: str | None = None
    phone: str | None = None
    is_active: bool


class TokenResponse(BaseModel):
    """Schema for JWT token responses."""

    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class StaffCreate(BaseModel):
    """Admin-created staff account. Business admins may only add to their own business."""

    full_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    password: str = Field(min_length=8)
    role: UserRole = UserRole.VERIFIER
    specialization: PolicyType | None = None
    phone: str | None = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    service: str
    database: str


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class PolicyCreate(BaseModel):
    policy_name: str = Field(min_length=1)
    policy_type: PolicyType
    external_policy_id: str | None = None
    template_id: str | None = None
    sla_hours: int = Field(default=24, ge=1, le=24 * 30)


class PolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    business_id: str
    policy_name: str
    policy_type: str
    external_policy_id: str | None = None
    template_id: str | None = None
    sla_hours: int
    status: str


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class CoordinatesIn(BaseModel):
    """Latitude/longitude in decimal degrees."""

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class PhotoEvidence(BaseModel):
    field_id: str
    url: str
    gps: CoordinatesIn | None = None
    captured_at: datetime | None = None


class AnswerEvidence(BaseModel):
    question_id: str
    value: Any = None


class SubmissionCategory(BaseModel):
    category_id: str
    photos: list[PhotoEvidence] = Field(default_factory=list)
    answers: list[AnswerEvidence] = Field(default_factory=list)


class SubmitEvidenceRequest(BaseModel):
    """Customer submission. In revision mode only flagged fields are read."""

    categories: list[SubmissionCategory] = Field(default_factory=list)
    consent_given: bool = False


class GeoCheckRequest(BaseModel):
    gps: CoordinatesIn | None = None


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class CustomerInfo(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=4)
    email: str | None = None
    address: str | None = None


class VerificationCreate(BaseModel):
    policy_id: str
    customer: CustomerInfo
    prefill_data: dict = Field(default_factory=dict)
    property_coordinates: CoordinatesIn | None = None
    verifier_id: str | None = None


class FlaggedField(BaseModel):
    """One field the verifier rejects, with a listed reason or "Other" plus text."""

    category_id: str
    field_id: str
    reason: str
    custom_reason: str | None = None


class DecisionRequest(BaseModel):
    outcome: DecisionOutcome
    feedback: list[FlaggedField] = Field(default_factory=list)
    confirm_final: bool = False
    notes: str | None = None

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class CancelRequest(BaseModel):
    reason: str | None = None


class AssignRequest(BaseModel):
    verifier_id: str


class PolicyChangeRequest(BaseModel):
    policy_id: str
