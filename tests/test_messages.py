"""Envio de mensagens (Evolution mockada no EvolutionClient)."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

from whatscrm.core.database import (
    utcnow, SessionLocal, Contact, Conversation, Message, InstanceStatus, MessageDirection, MessageStatus
)
from whatscrm.core.errors import EvolutionAPIError
from whatscrm.services.evolution_client import EvolutionClient


def _send_text(**kwargs):
    return patch.object(EvolutionClient, "send_text", new_callable=AsyncMock, **kwargs)


class TestSend:
    def test_send_creates_contact_conversation_and_message(self, client, db, admin_headers, connected_instance):
        with _send_text(return_value={"key": {"id": "EXT-1", "fromMe": True}}) as send:
            resp = client.post("/api/messages/send", headers=admin_headers, json={
                "instanceId": connected_instance.id,
                "phoneNumber": "+55 11 95555-1234",
                "content": "Olá!",
            })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["direction"] == "OUTBOUND"
        assert data["status"] == "SENT"
        assert data["externalId"] == "EXT-1"
        send.assert_awaited_once_with("acme-vendas", "5511955551234@s.whatsapp.net", "Olá!")

        contact = db.query(Contact).one()
        assert contact.phone_number == "5511955551234"
        conversation = db.query(Conversation).one()
        assert conversation.last_message_at is not None

    def test_send_reuses_open_conversation(self, client, db, admin_headers, connected_instance, conversation):
        conversation.instance_id = connected_instance.id
        db.commit()
        with _send_text(return_value={"key": {"id": "EXT-2"}}):
            resp = client.post("/api/messages/send", headers=admin_headers, json={
                "instanceId": connected_instance.id, "phoneNumber": "5511999990000", "content": "Oi",
            })
        assert resp.json()["data"]["conversationId"] == conversation.id
        assert db.query(Conversation).count() == 1

    def test_gateway_failure_stores_no_message(self, client, db, admin_headers, connected_instance):
        with _send_text(side_effect=EvolutionAPIError(500, "falhou")):
            resp = client.post("/api/messages/send", headers=admin_headers, json={
                "instanceId": connected_instance.id, "phoneNumber": "5511955551234", "content": "Olá!",
            })
        assert resp.status_code == 502
        assert db.query(Message).count() == 0

        # contato e conversa já estavam gravados e são reaproveitados no reenvio
        with _send_text(return_value={"key": {"id": "EXT-3"}}):
            client.post("/api/messages/send", headers=admin_headers, json={
                "instanceId": connected_instance.id, "phoneNumber": "5511955551234", "content": "Olá!",
            })
        assert db.query(Contact).count() == 1
        assert db.query(Conversation).count() == 1
        assert db.query(Message).count() == 1

    def test_echo_stored_during_send_is_reused(self, client, db, admin_headers, connected_instance):
        def echo(instance_name, jid, text):
            # o webhook grava o eco da Evolution antes de o envio responder
            with SessionLocal() as other:
                conversation = other.query(Conversation).one()
                other.add(Message(
                    organization_id=conversation.organization_id, conversation_id=conversation.id,
                    contact_id=conversation.contact_id, content=text, external_id="EXT-ECO",
                    direction=MessageDirection.OUTBOUND.value, status=MessageStatus.SENT.value,
                ))
                other.commit()
            return {"key": {"id": "EXT-ECO"}}

        with _send_text(side_effect=echo):
            resp = client.post("/api/messages/send", headers=admin_headers, json={
                "instanceId": connected_instance.id, "phoneNumber": "5511955551234", "content": "Olá!",
            })
        assert resp.status_code == 201
        assert resp.json()["data"]["externalId"] == "EXT-ECO"
        assert db.query(Message).count() == 1

    def test_conversation_of_other_contact_is_not_reused(self, client, db, admin_headers, connected_instance,
                                                          conversation):
        with _send_text(return_value={"key": {"id": "EXT-4"}}):
            resp = client.post("/api/messages/send", headers=admin_headers, json={
                "instanceId": connected_instance.id, "phoneNumber": "5511955551234", "content": "Oi",
                "conversationId": conversation.id,
            })
        assert resp.status_code == 201
        assert resp.json()["data"]["conversationId"] != conversation.id
        assert db.query(Message).filter(Message.conversation_id == conversation.id).count() == 0

    def test_disconnected_instance(self, client, admin_headers, make_instance, evolution_org):
        instance = make_instance(status=InstanceStatus.DISCONNECTED)
        resp = client.post("/api/messages/send", headers=admin_headers, json={
            "instanceId": instance.id, "phoneNumber": "5511955551234", "content": "Olá!",
        })
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Instância não encontrada ou não conectada"

    def test_empty_content(self, client, admin_headers, connected_instance):
        resp = client.post("/api/messages/send", headers=admin_headers, json={
            "instanceId": connected_instance.id, "phoneNumber": "5511955551234", "content": "",
        })
        assert resp.status_code == 400


class TestBulk:
    def test_bulk_collects_failures(self, client, db, admin_headers, connected_instance):
        responses = [{"key": {"id": "B1"}}, EvolutionAPIError(400, "número inexistente"), {"key": {"id": "B3"}}]
        with _send_text(side_effect=responses):
            resp = client.post("/api/messages/bulk", headers=admin_headers, json={
                "instanceId": connected_instance.id,
                "phoneNumbers": ["5511900000001", "5511900000002", "5511900000003"],
                "content": "Promoção",
            })
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"] == {"total": 3, "sent": 2, "failed": 1}
        assert body["errors"] == [{"phoneNumber": "5511900000002", "error": "número inexistente"}]
        assert db.query(Message).count() == 2

    def test_bulk_limit(self, client, admin_headers, connected_instance):
        resp = client.post("/api/messages/bulk", headers=admin_headers, json={
            "instanceId": connected_instance.id,
            "phoneNumbers": [f"55119{i:08d}" for i in range(101)],
            "content": "x",
        })
        assert resp.status_code == 400


class TestSchedule:
    def test_past_date_rejected(self, client, admin_headers, connected_instance):
        resp = client.post("/api/messages/schedule", headers=admin_headers, json={
            "instanceId": connected_instance.id,
            "phoneNumber": "5511955551234",
            "content": "Lembrete",
            "scheduledAt": (utcnow() - timedelta(hours=1)).isoformat(),
        })
        assert resp.status_code == 400

    def test_schedule_stores_pending(self, client, admin_headers, connected_instance):
        with _send_text() as send:
            resp = client.post("/api/messages/schedule", headers=admin_headers, json={
                "instanceId": connected_instance.id,
                "phoneNumber": "5511955551234",
                "content": "Lembrete",
                "scheduledAt": (utcnow() + timedelta(days=1)).isoformat() + "Z",
            })
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["status"] == "PENDING"
        assert data["metadata"]["phoneNumber"] == "5511955551234"
        send.assert_not_awaited()


class TestHistory:
    def test_pagination_newest_page_first(self, client, db, admin_headers, conversation):
        start = utcnow() - timedelta(hours=1)
        for i in range(5):
            db.add(Message(
                organization_id=conversation.organization_id,
                conversation_id=conversation.id,
                contact_id=conversation.contact_id,
                content=str(i),
                direction=MessageDirection.INBOUND.value,
                created_at=start + timedelta(minutes=i),
            ))
        db.commit()

        first = client.get(f"/api/messages/conversation/{conversation.id}?limit=2", headers=admin_headers).json()
        assert [m["content"] for m in first["messages"]] == ["3", "4"]
        assert first["pagination"] == {"page": 1, "limit": 2, "total": 5, "pages": 3}

        last = client.get(f"/api/messages/conversation/{conversation.id}?limit=2&page=3", headers=admin_headers).json()
        assert [m["content"] for m in last["messages"]] == ["0"]

    def test_unknown_conversation(self, client, admin_headers):
        assert client.get("/api/messages/conversation/nope", headers=admin_headers).status_code == 404
