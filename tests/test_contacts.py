"""Contatos: CRUD, filtros, tags, CSV e importação."""

from __future__ import annotations

import csv
import io

from whatscrm.core.database import Contact, Organization


class TestContactsCrud:
    def test_create_normalizes_phone(self, client, admin_headers):
        resp = client.post("/api/contacts/", headers=admin_headers, json={
            "phoneNumber": "+55 (11) 98888-7777", "name": "João", "tags": ["lead"],
        })
        assert resp.status_code == 201
        body = resp.json()
        assert body["phoneNumber"] == "5511988887777"
        assert body["_count"] == {"conversations": 0, "messages": 0}

    def test_duplicate_phone(self, client, admin_headers, contact):
        resp = client.post("/api/contacts/", headers=admin_headers, json={"phoneNumber": "+55 11 99999-0000"})
        assert resp.status_code == 409

    def test_same_phone_in_another_org(self, client, db, make_user, auth_header, contact):
        other = Organization(name="Other", settings={})
        db.add(other)
        db.commit()
        user = make_user(org=other)
        resp = client.post("/api/contacts/", headers=auth_header(user), json={"phoneNumber": contact.phone_number})
        assert resp.status_code == 201

    def test_update_conflict(self, client, db, admin_headers, organization, contact):
        second = Contact(organization_id=organization.id, phone_number="5511911112222", tags=[])
        db.add(second)
        db.commit()
        resp = client.put(f"/api/contacts/{second.id}", headers=admin_headers, json={"phoneNumber": contact.phone_number})
        assert resp.status_code == 409

    def test_update_and_delete(self, client, db, admin_headers, contact):
        resp = client.put(f"/api/contacts/{contact.id}", headers=admin_headers, json={"company": "ACME", "tags": ["a"]})
        assert resp.status_code == 200
        assert resp.json()["company"] == "ACME"
        assert resp.json()["tags"] == ["a"]

        assert client.delete(f"/api/contacts/{contact.id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/contacts/{contact.id}", headers=admin_headers).status_code == 404

    def test_detail_includes_history(self, client, admin_headers, contact, conversation):
        body = client.get(f"/api/contacts/{contact.id}", headers=admin_headers).json()
        assert body["_count"]["conversations"] == 1
        assert body["conversations"][0]["id"] == conversation.id
        assert body["messages"] == []


class TestContactsListing:
    def _seed(self, db, organization):
        db.add_all([
            Contact(organization_id=organization.id, phone_number="5511900000001", name="Ana", tags=["vip", "sp"]),
            Contact(organization_id=organization.id, phone_number="5511900000002", name="Bruno", tags=["rj"],
                    company="Padaria"),
            Contact(organization_id=organization.id, phone_number="5511900000003", name="Carla", tags=[],
                    is_active=False),
        ])
        db.commit()

    def test_search(self, client, db, organization, admin_headers):
        self._seed(db, organization)
        body = client.get("/api/contacts/?search=padaria", headers=admin_headers).json()
        assert [c["name"] for c in body["contacts"]] == ["Bruno"]
        assert body["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}

    def test_tag_filter_matches_any(self, client, db, organization, admin_headers):
        self._seed(db, organization)
        body = client.get("/api/contacts/?tags=vip,rj", headers=admin_headers).json()
        assert sorted(c["name"] for c in body["contacts"]) == ["Ana", "Bruno"]
        assert body["pagination"]["total"] == 2

    def test_active_filter(self, client, db, organization, admin_headers):
        self._seed(db, organization)
        body = client.get("/api/contacts/?isActive=false", headers=admin_headers).json()
        assert [c["name"] for c in body["contacts"]] == ["Carla"]

    def test_tags_list(self, client, db, organization, admin_headers):
        self._seed(db, organization)
        assert client.get("/api/contacts/tags/list", headers=admin_headers).json() == ["rj", "sp", "vip"]

    def test_export_csv(self, client, db, organization, admin_headers):
        self._seed(db, organization)
        resp = client.get("/api/contacts/export/csv", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "contatos.csv" in resp.headers["content-disposition"]

        rows = list(csv.reader(io.StringIO(resp.text)))
        assert rows[0][:2] == ["Nome", "Telefone"]
        by_name = {row[0]: row for row in rows[1:]}
        assert by_name["Ana"][4] == "vip; sp"
        assert by_name["Bruno"][3] == "Padaria"


class TestImport:
    def test_import_reports_partial_failures(self, client, db, admin_headers, contact):
        resp = client.post("/api/contacts/import", headers=admin_headers, json={"contacts": [
            {"phoneNumber": "+55 11 97777-0001", "name": "Novo"},
            {"phoneNumber": contact.phone_number},
            {"name": "Sem telefone"},
            {"phoneNumber": "5511977770002", "email": "not-an-email"},
        ]})
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"] == {"total": 4, "imported": 1, "failed": 3}
        errors = [e["error"] for e in body["errors"]]
        assert "Contato já existe" in errors
        assert "Número de telefone obrigatório" in errors
        assert db.query(Contact).filter(Contact.phone_number == "5511977770001").count() == 1

    def test_import_limit(self, client, admin_headers):
        contacts = [{"phoneNumber": f"55119{i:08d}"} for i in range(1001)]
        resp = client.post("/api/contacts/import", headers=admin_headers, json={"contacts": contacts})
        assert resp.status_code == 400
