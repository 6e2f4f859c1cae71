"""Shared test infrastructure for the VeriFlow test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- make_business / make_verifier / make_admin: staff factories
- make_template / make_policy: provisioning factories
- make_verification / make_submission: lifecycle factories
- complete_evidence: builder for a full, geotagged payload matching HOME_TEMPLATE
- api_client: httpx AsyncClient bound to the API with get_db overridden
- auth_headers: bearer headers for a staff user
"""

import copy
import uuid
from datetime import timedelta

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from veriflow.infra.database import Base, get_db

import veriflow.domain.models  # noqa: F401

from veriflow.domain.models import (
    Business,
    Policy,
    Submission,
    Template,
    User,
    Verification,
)
from veriflow.infra.clock import to_db, utcnow
from veriflow.services.auth_service import create_access_token

PROPERTY_LAT = 12.9716
PROPERTY_LON = 77.5946

HOME_TEMPLATE = [
    {
        "category_id": "identity",
        "category_name": "Identity",
        "kind": "identity",
        "order": 0,
        "photo_fields": [
            {"field_id": "id_front", "label": "ID (front)", "required": True, "capture_gps": False},
        ],
        "questions": [],
    },
    {
        "category_id": "exterior",
        "category_name": "Exterior",
        "kind": "evidence",
        "order": 1,
        "photo_fields": [
            {"field_id": "front_photo", "label": "Front of property", "required": True, "capture_gps": True},
            {"field_id": "side_photo", "label": "Side view", "required": False, "capture_gps": True},
        ],
        "questions": [
            {
                "question_id": "roof_condition",
                "text": "How is the roof?",
                "type": "select",
                "required": True,
                "options": ["good", "fair", "poor"],
            },
        ],
    },
]


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Staff factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_business(db_session):
    async def _factory(name: str = "Acme Insurance") -> Business:
        business = Business(id=str(uuid.uuid4()), name=name)
        db_session.add(business)
        await db_session.flush()
        return business

    return _factory


@pytest.fixture
def make_verifier(db_session):
    """Factory for verifier users.

    Usage:
        v = await make_verifier(business, specialization="home_insurance")
    """
    async def _factory(
        business: Business,
        specialization: str | None = None,
        is_active: bool = True,
        name: str | None = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        user = User(
            id=user_id,
            business_id=business.id,
            email=f"verifier-{user_id[:8]}@example.com",
            full_name=name or f"Verifier {user_id[:4]}",
            role="verifier",
            specialization=specialization,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


@pytest.fixture
def make_admin(db_session):
    async def _factory(business: Business | None, role: str = "business_admin") -> User:
        user_id = str(uuid.uuid4())
        user = User(
            id=user_id,
            business_id=business.id if business else None,
            email=f"admin-{user_id[:8]}@example.com",
            full_name="Agent Admin",
            phone="+15550001111",
            role=role,
            is_active=True,
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _factory


# ---------------------------------------------------------------------------
# Provisioning factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_template(db_session):
    async def _factory(
        business: Business,
        policy_type: str = "home_insurance",
        categories: list | None = None,
        validation_rules: dict | None = None,
    ) -> Template:
        template = Template(
            id=str(uuid.uuid4()),
            business_id=business.id,
            template_name=f"{policy_type} template",
            policy_type=policy_type,
            categories=copy.deepcopy(categories if categories is not None else HOME_TEMPLATE),
            validation_rules=validation_rules or {},
            is_active=True,
        )
        db_session.add(template)
        await db_session.flush()
        return template

    return _factory


@pytest.fixture
def make_policy(db_session):
    async def _factory(
        business: Business,
        policy_type: str = "home_insurance",
        sla_hours: int = 24,
        template: Template | None = None,
        status: str = "active",
    ) -> Policy:
        policy = Policy(
            id=str(uuid.uuid4()),
            business_id=business.id,
            policy_name=f"{policy_type} policy",
            policy_type=policy_type,
            template_id=template.id if template else None,
            sla_hours=sla_hours,
            status=status,
        )
        db_session.add(policy)
        await db_session.flush()
        return policy

    return _factory


# ---------------------------------------------------------------------------
# Lifecycle factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_verification(db_session):
    """Factory for Verification rows inserted directly in a given state.

    Usage:
        v = await make_verification(policy, status="submitted", rejection_count=2)
    """
    async def _factory(
        policy: Policy,
        status: str = "pending",
        assigned_verifier_id: str | None = None,
        rejection_count: int = 0,
        rejection_reason: dict | None = None,
        expires_in: timedelta = timedelta(hours=24),
        accessed: bool | None = None,
        property_coordinates: dict | None = None,
        template_snapshot: list | None = None,
        customer_phone: str = "+919876543210",
    ) -> Verification:
        now = utcnow()
        if accessed is None:
            accessed = status != "pending"
        verification_id = str(uuid.uuid4())
        verification = Verification(
            id=verification_id,
            verification_ref=f"VER-{now.year}-{uuid.uuid4().int % 1_000_000:06d}",
            policy_id=policy.id,
            assigned_verifier_id=assigned_verifier_id,
            status=status,
            link_token=f"tok-{verification_id[:12]}",
            link_expiry=to_db(now + expires_in),
            link_accessed_at=to_db(now - timedelta(minutes=5)) if accessed else None,
            customer_name="Priya Sharma",
            customer_phone=customer_phone,
            customer_email="priya@example.com",
            customer_address="1 MG Road, Bengaluru",
            property_coordinates=(
                property_coordinates
                if property_coordinates is not None
                else {"lat": PROPERTY_LAT, "lon": PROPERTY_LON}
            ),
            template_snapshot=copy.deepcopy(
                template_snapshot if template_snapshot is not None else HOME_TEMPLATE
            ),
            prefill_data={},
            rejection_reason=rejection_reason,
            rejection_count=rejection_count,
            rejection_history=[],
            created_at=to_db(now),
            updated_at=to_db(now),
        )
        db_session.add(verification)
        await db_session.flush()
        return verification

    return _factory


def _complete_evidence(lat: float = PROPERTY_LAT, lon: float = PROPERTY_LON, tag: str = "v1") -> list:
    """Evidence satisfying every required field of HOME_TEMPLATE."""
    return [
        {
            "category_id": "identity",
            "photos": [{"field_id": "id_front", "url": f"https://blob.example/{tag}/id.jpg"}],
            "answers": [],
        },
        {
            "category_id": "exterior",
            "photos": [
                {
                    "field_id": "front_photo",
                    "url": f"https://blob.example/{tag}/front.jpg",
                    "gps": {"lat": lat, "lon": lon},
                },
            ],
            "answers": [{"question_id": "roof_condition", "value": "good"}],
        },
    ]


@pytest.fixture
def make_submission(db_session):
    async def _factory(
        verification: Verification,
        categories: list | None = None,
        submission_number: int = 1,
    ) -> Submission:
        submission = Submission(
            id=str(uuid.uuid4()),
            verification_id=verification.id,
            submission_number=submission_number,
            categories=categories if categories is not None else _complete_evidence(),
            geo_checks=[],
            consent_given=True,
        )
        db_session.add(submission)
        await db_session.flush()
        return submission

    return _factory


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
async def api_client(db_session):
    """AsyncClient for an app with every router mounted on the test session."""
    from veriflow.app.routes.auth import router as auth_router
    from veriflow.app.routes.policies import router as policies_router
    from veriflow.app.routes.team import router as team_router
    from veriflow.app.routes.verifications import router as verifications_router
    from veriflow.app.routes.verify import router as verify_router

    test_app = FastAPI()
    for router in (auth_router, policies_router, team_router, verifications_router, verify_router):
        test_app.include_router(router)

    async def _override_get_db():
        yield db_session

    test_app.dependency_overrides[get_db] = _override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=test_app), base_url="http://testserver"
    ) as client:
        yield client


@pytest.fixture
def auth_headers():
    """Bearer headers for a staff user."""
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, user.role, user.business_id)}"}

    return _headers


@pytest.fixture
def complete_evidence():
    """Builder for a full evidence payload; pass lat/lon to move the front photo."""
    return _complete_evidence


@pytest.fixture
def home_template():
    return copy.deepcopy(HOME_TEMPLATE)
