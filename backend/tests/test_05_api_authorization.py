"""
Tests 501-564: API Security & Authorization

End-to-end tests through the FastAPI app: authentication vs authorization
outcomes, guard composition, the task routes, the administrative routes,
and the audit trail they leave behind.
"""
import uuid

import pytest
from jose import jwt

from conftest import USERS, audit_entries, auth_headers
from reform_tracker.middleware.auth import get_recorder
from reform_tracker.main import app
from reform_tracker.services.audit_service import AuditRecorder


def _broken_recorder() -> AuditRecorder:
    def broken_factory():
        raise RuntimeError("database unavailable")

    return AuditRecorder(broken_factory, timeout=1.0)


class TestAuthentication:

    # ==================================================================
    # Tests 501-510: Unauthenticated vs forbidden
    # ==================================================================

    async def test_501_health_is_public(self, client):
        r = await client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    async def test_502_no_token_returns_401(self, client):
        r = await client.get("/api/tasks")
        assert r.status_code == 401
        assert r.json()["detail"] == "Authentication required"

    async def test_503_garbage_token_returns_401(self, client):
        r = await client.get("/api/tasks", headers={"Authorization": "Bearer not.a.jwt"})
        assert r.status_code == 401

    async def test_504_wrong_secret_returns_401(self, client):
        token = jwt.encode({"sub": "u-sp"}, "some-other-secret", algorithm="HS256")
        r = await client.get("/api/tasks", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 401

    async def test_505_unknown_subject_returns_401(self, client):
        """A valid token for a user that does not exist is unauthenticated."""
        r = await client.get("/api/tasks", headers=auth_headers(f"ghost-{uuid.uuid4()}"))
        assert r.status_code == 401

    async def test_506_unauthenticated_requests_are_not_audited_as_denials(self, client):
        await client.get("/api/tasks")
        assert await audit_entries(action="access_denied") == []

    async def test_507_current_user_returns_effective_permissions(self, client, member_headers):
        r = await client.get("/api/auth/user", headers=member_headers)
        assert r.status_code == 200
        data = r.json()
        assert data["id"] == "u-member"
        assert data["role"] == "member"
        assert "budget:approve" in data["permissions"]
        assert "tasks:create" not in data["permissions"]

    async def test_508_inactive_user_still_authenticates(self, client, inactive_headers):
        """Inactive principals resolve; the permission check refuses them."""
        r = await client.get("/api/auth/user", headers=inactive_headers)
        assert r.status_code == 200
        assert r.json()["is_active"] is False
        assert r.json()["permissions"] == []

    def test_509_decode_subject(self):
        from reform_tracker.middleware.auth import decode_subject
        from reform_tracker.services.authorization import AuthenticationRequired

        token = auth_headers("u-leader")["Authorization"].split(" ", 1)[1]
        assert decode_subject(token) == "u-leader"

        for bad in (None, "", "not.a.jwt", jwt.encode({"role": "sp"}, "x", algorithm="HS256")):
            with pytest.raises(AuthenticationRequired):
                decode_subject(bad)


class TestPermissionGuards:

    # ==================================================================
    # Tests 511-525: Permission Resolver through the API
    # ==================================================================

    async def test_511_viewer_cannot_create_task(self, client, viewer_headers):
        r = await client.post("/api/tasks", headers=viewer_headers, json={"title": "Beat patrol"})
        assert r.status_code == 403
        assert r.json()["detail"] == "Insufficient permissions"
        # The message does not leak which permission was missing
        assert "tasks:create" not in r.text

        entries = await audit_entries(user_id="u-viewer", action="access_denied")
        assert len(entries) == 1
        assert entries[0].severity == "medium"
        assert entries[0].details["permission"] == "tasks:create"

    async def test_512_viewer_can_list_tasks(self, client, viewer_headers):
        r = await client.get("/api/tasks", headers=viewer_headers)
        assert r.status_code == 200
        assert r.json()["items"] == []

        entries = await audit_entries(user_id="u-viewer", action="permission_granted")
        assert [e.resource for e in entries] == ["tasks:view"]

    async def test_513_inactive_sp_is_refused(self, client, inactive_headers):
        r = await client.get("/api/tasks", headers=inactive_headers)
        assert r.status_code == 403
        assert r.json()["detail"] == "User account inactive"

        entries = await audit_entries(user_id="u-inactive-sp")
        assert len(entries) == 1
        assert entries[0].action == "access_denied"
        assert entries[0].details["reason"] == "account_inactive"

    async def test_514_leader_creates_task(self, client, leader_headers):
        r = await client.post(
            "/api/tasks",
            headers=leader_headers,
            json={"title": "Digitise FIR register", "priority": "high"},
        )
        assert r.status_code == 201
        task = r.json()
        assert task["created_by"] == "u-leader"
        assert task["status"] == "pending"

        created = await audit_entries(action="create_task")
        assert len(created) == 1
        assert created[0].resource_id == str(task["id"])
        assert created[0].severity == "low"
        assert created[0].details["body"]["title"] == "Digitise FIR register"

    async def test_515_member_override_grants_route(self, client):
        """An override alone opens a route the role does not."""
        from reform_tracker.database import AsyncSessionLocal
        from reform_tracker.models import User

        async with AsyncSessionLocal() as db:
            db.add(User(id="u-member-2", role="member", permissions={"tasks:create": True}))
            await db.commit()

        r = await client.post(
            "/api/tasks", headers=auth_headers("u-member-2"), json={"title": "Station audit"}
        )
        assert r.status_code == 201

    async def test_516_member_cannot_assign_to_others(self, client):
        from reform_tracker.database import AsyncSessionLocal
        from reform_tracker.models import User

        async with AsyncSessionLocal() as db:
            db.add(User(id="u-member-3", role="member", permissions={"tasks:create": True}))
            await db.commit()

        r = await client.post(
            "/api/tasks",
            headers=auth_headers("u-member-3"),
            json={"title": "Night shift roster", "assigned_to": "u-viewer"},
        )
        assert r.status_code == 403

    async def test_517_leader_assigns_task(self, client, leader_headers):
        r = await client.post(
            "/api/tasks",
            headers=leader_headers,
            json={"title": "CCTV rollout", "assigned_to": "u-member"},
        )
        assert r.status_code == 201
        granted = await audit_entries(user_id="u-leader", action="permission_granted")
        assert {"tasks:create", "tasks:assign"} <= {e.resource for e in granted}

    async def test_518_update_and_delete_task(self, client, leader_headers, sp_headers):
        r = await client.post("/api/tasks", headers=leader_headers, json={"title": "Draft SOP"})
        task_id = r.json()["id"]

        r = await client.put(
            f"/api/tasks/{task_id}", headers=leader_headers, json={"status": "in_progress"}
        )
        assert r.status_code == 200
        assert r.json()["status"] == "in_progress"

        # team leaders cannot delete
        r = await client.delete(f"/api/tasks/{task_id}", headers=leader_headers)
        assert r.status_code == 403

        r = await client.delete(f"/api/tasks/{task_id}", headers=sp_headers)
        assert r.status_code == 200

        deleted = await audit_entries(action="delete_task")
        assert len(deleted) == 1
        assert deleted[0].severity == "high"

    async def test_519_invalid_status_rejected(self, client, leader_headers):
        r = await client.post(
            "/api/tasks", headers=leader_headers, json={"title": "x", "status": "abandoned"}
        )
        assert r.status_code == 422

    async def test_520_missing_task_is_404(self, client, sp_headers):
        r = await client.put("/api/tasks/9999", headers=sp_headers, json={"title": "x"})
        assert r.status_code == 404

    async def test_521_broken_audit_store_keeps_outcomes(
        self, client, viewer_headers, leader_headers
    ):
        """Audit failures neither block allowed requests nor open denied ones."""
        app.dependency_overrides[get_recorder] = _broken_recorder

        r = await client.post("/api/tasks", headers=viewer_headers, json={"title": "x"})
        assert r.status_code == 403

        r = await client.post("/api/tasks", headers=leader_headers, json={"title": "y"})
        assert r.status_code == 201


class TestAdministration:

    # ==================================================================
    # Tests 531-545: Security-Level Gate composition on admin routes
    # ==================================================================

    async def test_531_sp_lists_users(self, client, sp_headers):
        r = await client.get("/api/admin/users", headers=sp_headers)
        assert r.status_code == 200
        assert r.json()["total"] == len(USERS)

    async def test_532_permission_checked_before_clearance(self, client, viewer_headers):
        """A permission denial stops before the clearance check runs."""
        r = await client.put(
            "/api/admin/users/u-member/role", headers=viewer_headers, json={"role": "viewer"}
        )
        assert r.status_code == 403
        assert r.json()["detail"] == "Insufficient permissions"
        entries = await audit_entries(user_id="u-viewer")
        assert [e.action for e in entries] == ["access_denied"]

    async def test_533_clearance_denied_after_permission_granted(
        self, client, leader_admin_headers
    ):
        """Permission via override, but standard clearance fails the high gate."""
        r = await client.put(
            "/api/admin/users/u-member/role",
            headers=leader_admin_headers,
            json={"role": "team_leader"},
        )
        assert r.status_code == 403
        assert r.json()["detail"] == "Insufficient security clearance"
        assert "high" not in r.json()["detail"]

        denied = await audit_entries(user_id="u-leader-admin", action="security_level_denied")
        assert len(denied) == 1
        assert denied[0].severity == "high"
        assert denied[0].details == {"requiredLevel": "high", "userLevel": "standard"}

        granted = await audit_entries(user_id="u-leader-admin", action="permission_granted")
        assert [e.resource for e in granted] == ["roles:manage"]

    async def test_534_standard_clearance_enough_for_list(self, client, leader_admin_headers):
        r = await client.get("/api/admin/users", headers=leader_admin_headers)
        assert r.status_code == 200

    async def test_535_sp_updates_user_role(self, client, sp_headers):
        r = await client.put(
            "/api/admin/users/u-member/role",
            headers=sp_headers,
            json={"role": "team_leader", "permissions": {"budget:manage": True}},
        )
        assert r.status_code == 200
        data = r.json()
        assert data["role"] == "team_leader"
        assert data["permissions"] == {"budget:manage": True}
        assert "tasks:assign" in data["effective_permissions"]

        entries = await audit_entries(action="update_user_role")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.severity == "high"
        assert entry.user_id == "u-sp"
        assert entry.resource_id == "u-member"
        assert entry.details["previousRole"] == "member"
        assert entry.details["newRole"] == "team_leader"

    async def test_536_role_change_applies_to_next_request(
        self, client, sp_headers, member_headers
    ):
        r = await client.post("/api/tasks", headers=member_headers, json={"title": "x"})
        assert r.status_code == 403

        await client.put(
            "/api/admin/users/u-member/role", headers=sp_headers, json={"role": "team_leader"}
        )
        r = await client.post("/api/tasks", headers=member_headers, json={"title": "x"})
        assert r.status_code == 201

    async def test_537_invalid_role_rejected(self, client, sp_headers):
        r = await client.put(
            "/api/admin/users/u-member/role", headers=sp_headers, json={"role": "commissioner"}
        )
        assert r.status_code == 422

    async def test_538_unknown_override_key_rejected(self, client, sp_headers):
        r = await client.put(
            "/api/admin/users/u-member/role",
            headers=sp_headers,
            json={"role": "member", "permissions": {"vault:open": True}},
        )
        assert r.status_code == 422

    async def test_539_deactivate_user(self, client, sp_headers, leader_headers):
        r = await client.post("/api/admin/users/u-leader/deactivate", headers=sp_headers)
        assert r.status_code == 200

        r = await client.get("/api/tasks", headers=leader_headers)
        assert r.status_code == 403
        assert r.json()["detail"] == "User account inactive"

        entries = await audit_entries(action="deactivate_user")
        assert len(entries) == 1
        assert entries[0].details == {"targetUserId": "u-leader", "isActive": False}

        # the user row is kept
        r = await client.get("/api/admin/users/u-leader", headers=sp_headers)
        assert r.status_code == 200
        assert r.json()["is_active"] is False

    async def test_540_cannot_deactivate_self(self, client, sp_headers):
        r = await client.post("/api/admin/users/u-sp/deactivate", headers=sp_headers)
        assert r.status_code == 400

    async def test_541_deactivate_unknown_user(self, client, sp_headers):
        r = await client.post("/api/admin/users/nobody/deactivate", headers=sp_headers)
        assert r.status_code == 404

    async def test_542_create_user(self, client, sp_headers):
        r = await client.post(
            "/api/admin/users",
            headers=sp_headers,
            json={"id": "u-new", "email": "new@police.example", "role": "viewer",
                  "security_level": "limited"},
        )
        assert r.status_code == 201
        assert r.json()["is_active"] is True

        r = await client.post(
            "/api/admin/users", headers=sp_headers, json={"id": "u-new", "role": "viewer"}
        )
        assert r.status_code == 409

    async def test_543_create_user_bad_level(self, client, sp_headers):
        r = await client.post(
            "/api/admin/users",
            headers=sp_headers,
            json={"id": "u-bad", "role": "viewer", "security_level": "cosmic"},
        )
        assert r.status_code == 422

    # ==================================================================
    # Tests 546-552: Role definitions
    # ==================================================================

    async def test_546_list_roles(self, client, sp_headers):
        r = await client.get("/api/admin/roles", headers=sp_headers)
        assert r.status_code == 200
        roles = {role["name"]: role for role in r.json()["roles"]}
        assert set(roles) == {"sp", "team_leader", "member", "viewer"}
        assert "tasks:create" not in roles["viewer"]["permissions"]

    async def test_547_role_update_is_enforced_immediately(
        self, client, sp_headers, viewer_headers
    ):
        """The persisted roles table is what the guards read."""
        r = await client.post("/api/tasks", headers=viewer_headers, json={"title": "x"})
        assert r.status_code == 403

        r = await client.get("/api/admin/roles", headers=sp_headers)
        viewer = next(role for role in r.json()["roles"] if role["name"] == "viewer")

        r = await client.put(
            "/api/admin/roles/viewer",
            headers=sp_headers,
            json={"permissions": viewer["permissions"] + ["tasks:create"]},
        )
        assert r.status_code == 200

        r = await client.post("/api/tasks", headers=viewer_headers, json={"title": "x"})
        assert r.status_code == 201

        entries = await audit_entries(action="update_role")
        assert entries[0].details == {"role": "viewer", "added": ["tasks:create"], "removed": []}

    async def test_548_role_update_can_revoke(self, client, sp_headers, viewer_headers):
        r = await client.put(
            "/api/admin/roles/viewer", headers=sp_headers, json={"permissions": ["teams:view"]}
        )
        assert r.status_code == 200

        r = await client.get("/api/tasks", headers=viewer_headers)
        assert r.status_code == 403

    async def test_549_super_role_cannot_be_edited(self, client, sp_headers):
        r = await client.put(
            "/api/admin/roles/sp", headers=sp_headers, json={"permissions": ["tasks:view"]}
        )
        assert r.status_code == 422

    async def test_550_role_update_rejects_unknown_keys(self, client, sp_headers):
        r = await client.put(
            "/api/admin/roles/viewer", headers=sp_headers, json={"permissions": ["vault:open"]}
        )
        assert r.status_code == 422

    async def test_551_permission_catalogue(self, client, sp_headers):
        r = await client.get("/api/admin/permissions", headers=sp_headers)
        assert r.status_code == 200
        keys = [p["key"] for p in r.json()["permissions"]]
        assert "budget:approve" in keys
        assert keys == sorted(keys)

    # ==================================================================
    # Tests 553-560: Audit log endpoint and read-access trail
    # ==================================================================

    async def test_553_audit_log_requires_high_clearance(self, client, leader_admin_headers):
        r = await client.get("/api/admin/audit-logs", headers=leader_admin_headers)
        assert r.status_code == 403
        assert r.json()["detail"] == "Insufficient security clearance"

    async def test_554_audit_log_filters_by_severity(self, client, sp_headers, viewer_headers):
        await client.post("/api/tasks", headers=viewer_headers, json={"title": "x"})
        await client.post("/api/admin/users/u-leader/deactivate", headers=sp_headers)

        r = await client.get(
            "/api/admin/audit-logs", headers=sp_headers, params={"severity": "high"}
        )
        assert r.status_code == 200
        items = r.json()["items"]
        assert items
        assert all(item["severity"] == "high" for item in items)
        assert items[0]["action"] == "deactivate_user"

    async def test_555_audit_log_filters_by_user_and_limit(
        self, client, sp_headers, viewer_headers
    ):
        for _ in range(3):
            await client.get("/api/tasks", headers=viewer_headers)

        r = await client.get(
            "/api/admin/audit-logs",
            headers=sp_headers,
            params={"userId": "u-viewer", "limit": 2},
        )
        items = r.json()["items"]
        assert len(items) == 2
        assert all(item["userId"] == "u-viewer" for item in items)
        assert items[0]["id"] > items[1]["id"]

    async def test_556_audit_log_rejects_bad_severity(self, client, sp_headers):
        r = await client.get(
            "/api/admin/audit-logs", headers=sp_headers, params={"severity": "catastrophic"}
        )
        assert r.status_code == 422

    async def test_557_sensitive_reads_are_logged(self, client, sp_headers):
        r = await client.get("/api/admin/users", headers=sp_headers)
        assert r.status_code == 200

        entries = await audit_entries(action="read_access")
        assert len(entries) == 1
        assert entries[0].user_id == "u-sp"
        assert entries[0].resource_id == "/api/admin/users"
        assert entries[0].severity == "low"

    async def test_558_denied_reads_are_not_logged_as_access(self, client, viewer_headers):
        r = await client.get("/api/admin/users", headers=viewer_headers)
        assert r.status_code == 403
        assert await audit_entries(action="read_access") == []

    async def test_559_non_sensitive_reads_not_logged(self, client, viewer_headers):
        await client.get("/api/tasks", headers=viewer_headers)
        assert await audit_entries(action="read_access") == []


class TestClearanceOnlyGuard:

    # ==================================================================
    # Tests 561-564: require_security_level on its own
    # ==================================================================

    @staticmethod
    def _gated_client():
        from fastapi import Depends, FastAPI
        import httpx

        from reform_tracker.middleware.auth import require_security_level

        gated = FastAPI()

        @gated.get("/classified")
        async def classified(principal=Depends(require_security_level("high"))):
            return {"id": principal.id}

        return httpx.AsyncClient(transport=httpx.ASGITransport(app=gated), base_url="http://test")

    async def test_561_high_clearance_passes(self, database, sp_headers):
        async with self._gated_client() as c:
            r = await c.get("/classified", headers=sp_headers)
        assert r.status_code == 200
        assert r.json() == {"id": "u-sp"}

        entries = await audit_entries(user_id="u-sp")
        assert [e.action for e in entries] == ["security_level_granted"]

    async def test_562_standard_clearance_refused(self, database, leader_headers):
        async with self._gated_client() as c:
            r = await c.get("/classified", headers=leader_headers)
        assert r.status_code == 403
        assert r.json()["detail"] == "Insufficient security clearance"

        entries = await audit_entries(user_id="u-leader")
        assert [e.action for e in entries] == ["security_level_denied"]

    async def test_563_missing_token_is_401(self, database):
        async with self._gated_client() as c:
            r = await c.get("/classified")
        assert r.status_code == 401

    async def test_564_inactive_account_refused_despite_clearance(self, database, inactive_headers):
        """A deactivated high-clearance account is refused and audited as inactive."""
        async with self._gated_client() as c:
            r = await c.get("/classified", headers=inactive_headers)
        assert r.status_code == 403
        assert r.json()["detail"] == "User account inactive"

        entries = await audit_entries(user_id="u-inactive-sp")
        assert len(entries) == 1
        assert entries[0].action == "access_denied"
        assert entries[0].severity == "medium"
        assert entries[0].details["reason"] == "account_inactive"
