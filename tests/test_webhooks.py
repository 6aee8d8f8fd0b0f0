"""Webhook da Evolution: normalização, idempotência e status das mensagens."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from whatscrm.core.database import Contact, Conversation, Instance, Message, MessageStatus
from whatscrm.services.webhook_service import (
    WebhookService, extract_content, extract_sender_jid, map_update_status, normalize_event_name
)


def _upsert(key_id="MSG-1", jid="5511988887777@s.whatsapp.net", text="Oi, tudo bem?", from_me=False, **extra):
    return {
        "event": "messages.upsert",
        "instance": "acme-vendas",
        "data": {
            "key": {"remoteJid": jid, "fromMe": from_me, "id": key_id},
            "pushName": "Cliente Novo",
            "message": {"conversation": text},
            "messageTimestamp": 1700000000,
            **extra,
        },
    }


def _update(key_id, status):
    return {"event": "messages.update", "data": {"keyId": key_id, "status": status}}


class TestWebhookRoute:
    def test_unknown_instance(self, client):
        resp = client.post("/api/webhooks/evolution/nao-existe", json=_upsert())
        assert resp.status_code == 404

    def test_invalid_json(self, client, connected_instance):
        resp = client.post("/api/webhooks/evolution/acme-vendas", content=b"{not json",
                           headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_body_that_is_not_utf8(self, client, connected_instance):
        resp = client.post("/api/webhooks/evolution/acme-vendas", content=b'{"event": "\xff\xfe"}',
                           headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    def test_inbound_message_creates_contact_and_conversation(self, client, db, connected_instance):
        resp = client.post("/api/webhooks/evolution/acme-vendas", json=_upsert())
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

        contact = db.query(Contact).one()
        assert contact.phone_number == "5511988887777"
        assert contact.name == "Cliente Novo"
        message = db.query(Message).one()
        assert message.direction == "INBOUND"
        assert message.status == "DELIVERED"
        assert message.external_id == "MSG-1"
        assert message.content == "Oi, tudo bem?"
        assert db.query(Conversation).one().instance_id == connected_instance.id

    def test_redelivery_is_idempotent(self, client, db, connected_instance):
        for _ in range(3):
            assert client.post("/api/webhooks/evolution/acme-vendas", json=_upsert()).status_code == 200
        assert db.query(Message).count() == 1

    def test_event_name_variants(self, client, db, connected_instance):
        payload = _upsert()
        payload["event"] = "MESSAGES_UPSERT"
        client.post("/api/webhooks/evolution/acme-vendas", json=payload)
        payload = _upsert(key_id="MSG-2")
        payload["event"] = "messages-upsert"
        client.post("/api/webhooks/evolution/acme-vendas", json=payload)
        assert db.query(Message).count() == 2

    def test_group_messages_are_ignored(self, client, db, connected_instance):
        client.post("/api/webhooks/evolution/acme-vendas", json=_upsert(jid="120363@g.us"))
        assert db.query(Message).count() == 0

    def test_status_never_goes_backwards(self, client, db, connected_instance):
        client.post("/api/webhooks/evolution/acme-vendas", json=_upsert(key_id="OUT-1", from_me=True))
        message = db.query(Message).one()
        assert message.status == "SENT"

        client.post("/api/webhooks/evolution/acme-vendas", json=_update("OUT-1", "READ"))
        client.post("/api/webhooks/evolution/acme-vendas", json=_update("OUT-1", "DELIVERY_ACK"))
        db.refresh(message)
        assert message.status == "READ"

        client.post("/api/webhooks/evolution/acme-vendas", json=_update("OUT-1", "ERROR"))
        db.refresh(message)
        assert message.status == "READ"

    def test_failure_applies_before_delivery(self, client, db, connected_instance):
        client.post("/api/webhooks/evolution/acme-vendas", json=_upsert(key_id="OUT-2", from_me=True))
        client.post("/api/webhooks/evolution/acme-vendas", json=_update("OUT-2", 0))
        assert db.query(Message).one().status == "FAILED"

    def test_connection_update(self, client, db, make_instance, evolution_org):
        instance = make_instance()
        instance.qr_code = "data:image/png;base64,AAA"
        instance.status = "QRCODE"
        db.commit()

        client.post("/api/webhooks/evolution/acme-vendas", json={
            "event": "connection.update", "data": {"instance": "acme-vendas", "state": "open"},
        })
        db.refresh(instance)
        assert instance.status == "CONNECTED"
        assert instance.qr_code is None

    def test_qrcode_updated(self, client, db, make_instance, evolution_org):
        instance = make_instance()
        client.post("/api/webhooks/evolution/acme-vendas", json={
            "event": "qrcode.updated", "data": {"qrcode": {"base64": "data:image/png;base64,QR"}},
        })
        db.refresh(instance)
        assert instance.status == "QRCODE"
        assert instance.qr_code == "data:image/png;base64,QR"

    def test_handler_error_returns_500(self, client, connected_instance):
        with patch.object(WebhookService, "handle_messages_upsert", side_effect=RuntimeError("db down")):
            resp = client.post("/api/webhooks/evolution/acme-vendas", json=_upsert())
        assert resp.status_code == 500
        assert resp.json()["detail"] == "Erro interno do servidor"

    def test_test_endpoint(self, client):
        assert client.get("/api/webhooks/test").json()["message"] == "Webhook funcionando"


class TestWebhookService:
    @pytest.mark.asyncio
    async def test_contacts_update(self, db, connected_instance, contact):
        instance = db.get(Instance, connected_instance.id)
        await WebhookService(db).process_event(instance, "contacts.update", [
            {"remoteJid": "5511999990000@s.whatsapp.net", "pushName": "Maria Souza", "profilePicUrl": "http://pic"},
        ])
        db.refresh(contact)
        assert contact.name == "Maria Souza"
        assert contact.avatar == "http://pic"

    @pytest.mark.asyncio
    async def test_contacts_upsert(self, db, connected_instance, contact):
        instance = db.get(Instance, connected_instance.id)
        await WebhookService(db).process_event(instance, "contacts.upsert", [
            {"id": "5511999990000@s.whatsapp.net", "pushName": "Maria S."},
        ])
        db.refresh(contact)
        assert contact.name == "Maria S."

    @pytest.mark.asyncio
    async def test_batch_upsert(self, db, connected_instance):
        instance = db.get(Instance, connected_instance.id)
        batch = {"messages": [_upsert(key_id="A")["data"], _upsert(key_id="B")["data"]]}
        event = await WebhookService(db).process_event(instance, "MESSAGES_UPSERT", batch)
        assert event == "MESSAGES_UPSERT"
        assert db.query(Message).count() == 2
        assert db.query(Contact).count() == 1


class TestParsing:
    def test_normalize_event_name(self):
        assert normalize_event_name("messages.upsert") == "MESSAGES_UPSERT"
        assert normalize_event_name("Connection-Update") == "CONNECTION_UPDATE"
        assert normalize_event_name(None) == ""

    def test_sender_prefers_phone_jid(self):
        key = {"remoteJid": "12345@lid", "remoteJidAlt": "5511988887777@s.whatsapp.net"}
        assert extract_sender_jid(key) == "5511988887777@s.whatsapp.net"
        assert extract_sender_jid({"remoteJid": "12345@lid"}) == "12345@lid"

    def test_extract_content(self):
        assert extract_content({"extendedTextMessage": {"text": "link"}}) == ("link", "TEXT", None, None)
        assert extract_content({"imageMessage": {"url": "http://img", "mimetype": "image/jpeg"}}) == \
            ("[Imagem]", "IMAGE", "http://img", "image/jpeg")
        assert extract_content({"audioMessage": {}})[1] == "AUDIO"
        assert extract_content({"documentMessage": {"fileName": "nota.pdf"}})[0] == "nota.pdf"
        assert extract_content({"locationMessage": {"degreesLatitude": -23.5, "degreesLongitude": -46.6}})[0] == \
            "[Localização] -23.5,-46.6"
        assert extract_content({"reactionMessage": {"text": "👍"}}) is None
        assert extract_content({"protocolMessage": {}}) is None
        assert extract_content({"stickerMessage": {}})[0] == "[Mensagem não suportada]"

    def test_map_update_status(self):
        assert map_update_status("READ") == MessageStatus.READ.value
        assert map_update_status("PLAYED") == MessageStatus.READ.value
        assert map_update_status("DELIVERY_ACK") == MessageStatus.DELIVERED.value
        assert map_update_status("SERVER_ACK") == MessageStatus.SENT.value
        assert map_update_status(3) == MessageStatus.DELIVERED.value
        assert map_update_status(0) == MessageStatus.FAILED.value
