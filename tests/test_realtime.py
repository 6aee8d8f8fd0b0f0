"""Tempo real: WebSocket do front, listener Socket.IO da Evolution e rotas /websockets."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from whatscrm.core import security
from whatscrm.core.database import SessionLocal, Message
from whatscrm.core.errors import ServiceError
from whatscrm.services.evolution_client import EvolutionClient
from whatscrm.services.evolution_socket_manager import EvolutionSocketManager, evolution_socket_manager
from whatscrm.services.webhook_service import WebhookService
from whatscrm.services.websocket_manager import ConnectionManager, manager


class TestFrontWebSocket:
    def test_rejects_missing_token(self, client):
        with pytest.raises(Exception):
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()

    def test_ping_pong(self, client, admin):
        token = security.create_user_token(admin)
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_text("não é json")
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
            assert manager.room_size(admin.organization_id) == 1

    def test_receives_org_events(self, client, admin, admin_headers, contact):
        token = security.create_user_token(admin)
        with client.websocket_connect(f"/ws?token={token}") as ws:
            resp = client.post("/api/conversations/", headers=admin_headers, json={"contactId": contact.id})
            assert resp.status_code == 201
            event = ws.receive_json()
        assert event["event"] == "conversation-updated"
        assert event["data"]["contactId"] == contact.id


class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_broadcast_drops_broken_connections(self):
        rooms = ConnectionManager()
        healthy, broken = AsyncMock(), AsyncMock()
        broken.send_json.side_effect = RuntimeError("closed")
        rooms.join("org-1", healthy)
        rooms.join("org-1", broken)
        rooms.join("org-2", AsyncMock())

        await rooms.broadcast("org-1", "new-message", {"id": "m1"})

        healthy.send_json.assert_awaited_once_with({"event": "new-message", "data": {"id": "m1"}})
        assert rooms.room_size("org-1") == 1
        assert rooms.room_size("org-2") == 1


class TestEvolutionSocketManager:
    @pytest.mark.asyncio
    async def test_event_goes_through_webhook_pipeline(self, db, connected_instance):
        sockets = EvolutionSocketManager(session_factory=SessionLocal)
        event = await sockets.handle_event("acme-vendas", "messages.upsert", {
            "key": {"remoteJid": "5511977776666@s.whatsapp.net", "fromMe": False, "id": "WS-1"},
            "message": {"conversation": "via socket"},
        })
        assert event == "MESSAGES_UPSERT"
        assert db.query(Message).filter(Message.external_id == "WS-1").count() == 1

    @pytest.mark.asyncio
    async def test_unknown_instance_is_ignored(self):
        sockets = EvolutionSocketManager(session_factory=SessionLocal)
        assert await sockets.handle_event("fantasma", "connection.update", {"state": "open"}) is None

    @pytest.mark.asyncio
    async def test_errors_are_logged_not_raised(self, connected_instance):
        sockets = EvolutionSocketManager(session_factory=SessionLocal)
        with patch.object(WebhookService, "process_event", new_callable=AsyncMock, side_effect=RuntimeError("x")):
            assert await sockets.handle_event("acme-vendas", "messages.upsert", {}) is None

    @pytest.mark.asyncio
    async def test_connect_requires_configuration(self, db, organization):
        sockets = EvolutionSocketManager(session_factory=SessionLocal)
        with pytest.raises(ServiceError) as exc:
            await sockets.connect_instance("acme-vendas", organization.id, db)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_status_without_socket(self):
        sockets = EvolutionSocketManager(session_factory=SessionLocal)
        assert sockets.get_status("acme-vendas") == {"connected": False}
        assert sockets.is_connected("acme-vendas") is False
        assert await sockets.disconnect_instance("acme-vendas") == {"connected": False}

    def test_async_transport_installed(self):
        # Sem aiohttp o AsyncClient do socketio não abre conexão
        from engineio import async_client
        assert async_client.aiohttp is not None


class TestWebSocketRoutes:
    def test_configure(self, client, admin_headers, connected_instance):
        with patch.object(EvolutionClient, "set_websocket", new_callable=AsyncMock,
                          return_value={"websocket": {"enabled": True}}) as set_websocket, \
                patch.object(evolution_socket_manager, "connect_instance", new_callable=AsyncMock,
                             return_value={"connected": True}) as connect:
            resp = client.post(f"/api/websockets/{connected_instance.id}/configure", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["connection"] == {"connected": True}
        name, websocket = set_websocket.await_args.args
        assert name == "acme-vendas"
        assert websocket["enabled"] is True
        assert connect.await_args.args[0] == "acme-vendas"

    def test_status_tolerates_gateway_errors(self, client, admin_headers, connected_instance):
        from whatscrm.core.errors import EvolutionAPIError
        with patch.object(EvolutionClient, "find_websocket", new_callable=AsyncMock,
                          side_effect=EvolutionAPIError(404, "not found")):
            resp = client.get(f"/api/websockets/{connected_instance.id}/status", headers=admin_headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["configured"] is False
        assert body["connected"] is False
        assert body["evolution"] is None

    def test_requires_admin(self, client, operator_headers, connected_instance):
        resp = client.post(f"/api/websockets/{connected_instance.id}/disconnect", headers=operator_headers)
        assert resp.status_code == 403
