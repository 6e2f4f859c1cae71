"""API tests for team management (/api/team)."""

import pytest
from sqlalchemy import select

from veriflow.domain.models import User


@pytest.fixture
async def org(make_business, make_verifier, make_admin, make_policy):
    business = await make_business()
    return {
        "business": business,
        "admin": await make_admin(business),
        "verifier": await make_verifier(business),
        "policy": await make_policy(business),
    }


class TestAddStaff:
    async def test_admin_adds_verifier_to_own_business(self, api_client, auth_headers, db_session, org):
        resp = await api_client.post(
            "/api/team",
            json={
                "full_name": "Ravi Kumar",
                "email": "Ravi@Example.com",
                "password": "long-enough",
                "specialization": "home_insurance",
            },
            headers=auth_headers(org["admin"]),
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["role"] == "verifier"
        assert body["business_id"] == org["business"].id
        assert body["email"] == "ravi@example.com"

        stored = (await db_session.execute(select(User).where(User.id == body["id"]))).scalar_one()
        assert stored.password_hash and stored.password_hash != "long-enough"

    async def test_duplicate_email_conflicts(self, api_client, auth_headers, org):
        resp = await api_client.post(
            "/api/team",
            json={"full_name": "Dup", "email": org["verifier"].email, "password": "long-enough"},
            headers=auth_headers(org["admin"]),
        )
        assert resp.status_code == 409

    async def test_short_password_rejected(self, api_client, auth_headers, org):
        resp = await api_client.post(
            "/api/team",
            json={"full_name": "Short", "email": "s@example.com", "password": "short"},
            headers=auth_headers(org["admin"]),
        )
        assert resp.status_code == 422

    async def test_cannot_create_super_admin(self, api_client, auth_headers, org):
        resp = await api_client.post(
            "/api/team",
            json={"full_name": "Root", "email": "root@example.com", "password": "long-enough", "role": "super_admin"},
            headers=auth_headers(org["admin"]),
        )
        assert resp.status_code == 403

    async def test_verifier_cannot_add_staff(self, api_client, auth_headers, org):
        resp = await api_client.post(
            "/api/team",
            json={"full_name": "X", "email": "x@example.com", "password": "long-enough"},
            headers=auth_headers(org["verifier"]),
        )
        assert resp.status_code == 403


class TestDeactivate:
    async def test_open_work_moves_to_colleague(
        self, api_client, auth_headers, db_session, org, make_verifier, make_verification
    ):
        colleague = await make_verifier(org["business"])
        open_item = await make_verification(
            org["policy"], status="submitted", assigned_verifier_id=org["verifier"].id
        )
        done_item = await make_verification(
            org["policy"], status="approved", assigned_verifier_id=org["verifier"].id
        )

        resp = await api_client.post(
            f"/api/team/{org['verifier'].id}/deactivate", headers=auth_headers(org["admin"])
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["user"]["is_active"] is False
        assert body["released"] == 1
        assert body["reassigned"] == 1

        await db_session.refresh(open_item)
        await db_session.refresh(done_item)
        assert open_item.assigned_verifier_id == colleague.id
        assert done_item.assigned_verifier_id == org["verifier"].id

    async def test_other_business_not_visible(
        self, api_client, auth_headers, db_session, org, make_business, make_admin
    ):
        outsider = await make_admin(await make_business("Other"))
        resp = await api_client.post(
            f"/api/team/{org['verifier'].id}/deactivate", headers=auth_headers(outsider)
        )
        assert resp.status_code == 404
        await db_session.refresh(org["verifier"])
        assert org["verifier"].is_active is True

    async def test_business_admin_cannot_deactivate_super_admin(
        self, api_client, auth_headers, db_session, org, make_admin
    ):
        platform_admin = await make_admin(None, role="super_admin")
        resp = await api_client.post(
            f"/api/team/{platform_admin.id}/deactivate", headers=auth_headers(org["admin"])
        )
        assert resp.status_code == 404
        await db_session.refresh(platform_admin)
        assert platform_admin.is_active is True

    async def test_super_admin_attached_to_business_is_protected(
        self, api_client, auth_headers, db_session, org, make_admin
    ):
        attached = await make_admin(org["business"], role="super_admin")
        resp = await api_client.post(
            f"/api/team/{attached.id}/deactivate", headers=auth_headers(org["admin"])
        )
        assert resp.status_code == 403
        await db_session.refresh(attached)
        assert attached.is_active is True

    async def test_super_admin_deactivates_verifier(
        self, api_client, auth_headers, org, make_admin
    ):
        platform_admin = await make_admin(None, role="super_admin")
        resp = await api_client.post(
            f"/api/team/{org['verifier'].id}/deactivate", headers=auth_headers(platform_admin)
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["is_active"] is False

    async def test_list_team(self, api_client, auth_headers, org):
        resp = await api_client.get("/api/team", headers=auth_headers(org["admin"]))
        assert resp.status_code == 200
        assert {u["id"] for u in resp.json()} == {org["admin"].id, org["verifier"].id}
