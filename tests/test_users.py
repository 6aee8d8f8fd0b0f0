"""Usuários, organização, departamentos e configurações da Evolution."""

from __future__ import annotations

from whatscrm.core.database import Department, Organization, User

from conftest import PASSWORD


class TestUsers:
    def test_create_and_list(self, client, admin_headers):
        resp = client.post("/api/users/", headers=admin_headers, json={
            "name": "Carlos", "email": "Carlos@Acme.test", "password": "secret123", "role": "MANAGER",
        })
        assert resp.status_code == 201
        assert resp.json()["email"] == "carlos@acme.test"
        assert resp.json()["role"] == "MANAGER"

        listing = client.get("/api/users/?search=carlos", headers=admin_headers).json()
        assert listing["pagination"]["total"] == 1
        assert listing["users"][0]["name"] == "Carlos"

    def test_duplicate_email(self, client, admin_headers, admin):
        resp = client.post("/api/users/", headers=admin_headers, json={
            "name": "Dup", "email": admin.email, "password": "secret123",
        })
        assert resp.status_code == 409

    def test_users_are_scoped_by_organization(self, client, db, admin_headers):
        other = Organization(name="Other", settings={})
        db.add(other)
        db.commit()
        stranger = User(name="X", email="x@other.test", password="x", organization_id=other.id)
        db.add(stranger)
        db.commit()

        assert client.get(f"/api/users/{stranger.id}", headers=admin_headers).status_code == 404

    def test_cannot_delete_self(self, client, admin, admin_headers):
        resp = client.delete(f"/api/users/{admin.id}", headers=admin_headers)
        assert resp.status_code == 400

    def test_cannot_change_own_status(self, client, admin, admin_headers):
        resp = client.patch(f"/api/users/{admin.id}/status", headers=admin_headers, json={"status": "INACTIVE"})
        assert resp.status_code == 400

    def test_status_toggle(self, client, operator, admin_headers):
        resp = client.patch(f"/api/users/{operator.id}/status", headers=admin_headers, json={"status": "INACTIVE"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "INACTIVE"

    def test_reset_password_returns_temporary_password(self, client, operator, admin_headers):
        resp = client.post(f"/api/users/{operator.id}/reset-password", headers=admin_headers)
        assert resp.status_code == 200
        temporary = resp.json()["temporaryPassword"]
        login = client.post("/api/auth/login", json={"email": operator.email, "password": temporary})
        assert login.status_code == 200

    def test_change_own_password(self, client, operator, operator_headers):
        resp = client.put("/api/users/me/password", headers=operator_headers, json={
            "currentPassword": "wrong", "newPassword": "another1",
        })
        assert resp.status_code == 400

        resp = client.put("/api/users/me/password", headers=operator_headers, json={
            "currentPassword": PASSWORD, "newPassword": "another1",
        })
        assert resp.status_code == 200
        assert client.post("/api/auth/login", json={"email": operator.email, "password": "another1"}).status_code == 200

    def test_permissions(self, client, operator_headers):
        body = client.get("/api/users/me/permissions", headers=operator_headers).json()
        assert body["role"] == "OPERATOR"
        assert body["permissions"]["canSendMessages"] is True
        assert body["permissions"]["canManageUsers"] is False

    def test_stats(self, client, admin_headers, operator):
        body = client.get("/api/users/stats", headers=admin_headers).json()
        assert body["total"] == 2
        assert body["byRole"]["ADMIN"] == 1
        assert body["byRole"]["OPERATOR"] == 1


class TestOrganization:
    def test_current_masks_api_key(self, client, admin_headers, evolution_org):
        body = client.get("/api/organizations/current", headers=admin_headers).json()
        assert body["settings"]["evolution"]["apiKey"] == "***"
        assert body["_count"]["users"] == 1

    def test_update_requires_admin(self, client, operator_headers):
        resp = client.put("/api/organizations/current", headers=operator_headers, json={"name": "Novo"})
        assert resp.status_code == 403

    def test_update(self, client, admin_headers):
        resp = client.put("/api/organizations/current", headers=admin_headers, json={"name": "Acme Ltda"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Acme Ltda"

    def test_stats(self, client, admin_headers, conversation):
        body = client.get("/api/organizations/stats", headers=admin_headers).json()
        assert body["totalContacts"] == 1
        assert body["openConversations"] == 1


class TestDepartments:
    def test_crud_and_members(self, client, db, admin_headers, operator):
        resp = client.post("/api/departments/", headers=admin_headers, json={"name": "Vendas"})
        assert resp.status_code == 201
        department_id = resp.json()["id"]

        resp = client.post(f"/api/departments/{department_id}/users", headers=admin_headers,
                           json={"userIds": [operator.id]})
        assert resp.status_code == 200

        department = db.get(Department, department_id)
        assert [u.id for u in department.users] == [operator.id]

        resp = client.delete(f"/api/departments/{department_id}/users/{operator.id}", headers=admin_headers)
        assert resp.status_code == 200
        db.expire_all()
        assert db.get(Department, department_id).users == []

    def test_operator_cannot_create(self, client, operator_headers):
        resp = client.post("/api/departments/", headers=operator_headers, json={"name": "Suporte"})
        assert resp.status_code == 403


class TestEvolutionSettings:
    def test_save_and_read(self, client, admin_headers, db, organization):
        resp = client.post("/api/settings/evolution", headers=admin_headers, json={
            "baseUrl": "https://evo.acme.test/", "apiKey": "abc",
        })
        assert resp.status_code == 200
        assert resp.json()["baseUrl"] == "https://evo.acme.test"

        body = client.get("/api/settings/evolution", headers=admin_headers).json()
        assert body == {
            "baseUrl": "https://evo.acme.test",
            "apiKey": "***",
            "isConfigured": True,
            "updatedAt": body["updatedAt"],
        }
        db.refresh(organization)
        assert organization.settings["evolution"]["apiKey"] == "abc"

    def test_invalid_url(self, client, admin_headers):
        resp = client.post("/api/settings/evolution", headers=admin_headers, json={
            "baseUrl": "evo.acme.test", "apiKey": "abc",
        })
        assert resp.status_code == 400

    def test_status_when_not_configured(self, client, admin_headers):
        body = client.get("/api/settings/evolution/status", headers=admin_headers).json()
        assert body["configured"] is False

    def test_delete(self, client, admin_headers, evolution_org):
        assert client.delete("/api/settings/evolution", headers=admin_headers).status_code == 200
        assert client.get("/api/settings/test-config", headers=admin_headers).json()["isConfigured"] is False
