"""Kanbans: quadros, cards, movimentação e automações das colunas."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx

from whatscrm.core.database import (
    utcnow, Kanban, KanbanActionExecution, KanbanCard, Conversation, User, UserRole
)
from whatscrm.services.evolution_client import EvolutionClient
from whatscrm.services.kanban_action_service import check_conditions, replace_variables


def _board(client, headers, columns=("Novo", "Em andamento", "Concluído")):
    resp = client.post("/api/kanbans/", headers=headers, json={
        "name": "Funil de vendas",
        "columns": [{"name": name} for name in columns],
    })
    assert resp.status_code == 201
    return resp.json()


def _card(client, headers, board, column_index=0, **extra):
    resp = client.post(f"/api/kanbans/{board['id']}/cards", headers=headers, json={
        "columnId": board["columns"][column_index]["id"], "title": "Lead ACME", **extra,
    })
    assert resp.status_code == 201
    return resp.json()


def _action(client, headers, column_id, **fields):
    payload = {"columnId": column_id, "name": "Ação", "type": "NOTIFY_USER", "trigger": "ON_ENTER_COLUMN", **fields}
    resp = client.post("/api/kanban-actions/", headers=headers, json=payload)
    assert resp.status_code == 201
    return resp.json()


class TestBoards:
    def test_create_orders_columns(self, client, operator_headers):
        board = _board(client, operator_headers)
        assert [(c["name"], c["order"]) for c in board["columns"]] == [
            ("Novo", 0), ("Em andamento", 1), ("Concluído", 2),
        ]

    def test_requires_a_column(self, client, admin_headers):
        resp = client.post("/api/kanbans/", headers=admin_headers, json={"name": "Vazio", "columns": []})
        assert resp.status_code == 400

    def test_viewer_has_no_access(self, client, make_user, auth_header):
        viewer = make_user(UserRole.VIEWER)
        assert client.get("/api/kanbans/", headers=auth_header(viewer)).status_code == 403

    def test_delete_is_soft(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        assert client.delete(f"/api/kanbans/{board['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/kanbans/{board['id']}", headers=admin_headers).status_code == 404
        assert db.get(Kanban, board["id"]).is_active is False

    def test_update_replaces_columns(self, client, admin_headers):
        board = _board(client, admin_headers)
        resp = client.put(f"/api/kanbans/{board['id']}", headers=admin_headers, json={
            "name": "Funil 2", "columns": [{"name": "A"}, {"name": "B"}],
        })
        assert resp.json()["name"] == "Funil 2"
        assert [c["name"] for c in resp.json()["columns"]] == ["A", "B"]

    def test_list_counts_cards(self, client, admin_headers):
        board = _board(client, admin_headers)
        _card(client, admin_headers, board)
        body = client.get("/api/kanbans/", headers=admin_headers).json()
        assert body[0]["_count"] == {"cards": 1}


class TestCards:
    def test_card_order_and_activity(self, client, admin_headers):
        board = _board(client, admin_headers)
        first = _card(client, admin_headers, board)
        second = _card(client, admin_headers, board, title="Outro")
        assert (first["order"], second["order"]) == (0, 1)

        stats = client.get("/api/kanbans/stats", headers=admin_headers).json()
        assert stats["totalCards"] == 2
        assert stats["totalColumns"] == 3
        assert {a["action"] for a in stats["recentActivity"]} == {"created"}

    def test_move_renumbers_target_column(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        target = board["columns"][1]["id"]
        _card(client, admin_headers, board, column_index=1, title="A")
        _card(client, admin_headers, board, column_index=1, title="B")
        moving = _card(client, admin_headers, board, title="Movido")

        resp = client.put(f"/api/kanbans/cards/{moving['id']}/move", headers=admin_headers,
                          json={"columnId": target, "order": 1})
        assert resp.status_code == 200
        assert resp.json()["columnId"] == target

        db.expire_all()
        orders = {c.title: c.order for c in db.query(KanbanCard).filter(KanbanCard.column_id == target)}
        assert orders == {"A": 0, "Movido": 1, "B": 2}

    def test_move_to_column_of_other_board(self, client, admin_headers):
        board = _board(client, admin_headers)
        other = _board(client, admin_headers)
        card = _card(client, admin_headers, board)
        resp = client.put(f"/api/kanbans/cards/{card['id']}/move", headers=admin_headers,
                          json={"columnId": other["columns"][0]["id"], "order": 0})
        assert resp.status_code == 404

    def test_card_links_must_belong_to_org(self, client, admin_headers):
        board = _board(client, admin_headers)
        resp = client.post(f"/api/kanbans/{board['id']}/cards", headers=admin_headers, json={
            "columnId": board["columns"][0]["id"], "title": "X", "contactId": "nope",
        })
        assert resp.status_code == 404

    def test_update_and_delete_card(self, client, admin_headers, contact):
        board = _board(client, admin_headers)
        card = _card(client, admin_headers, board)
        resp = client.put(f"/api/kanbans/cards/{card['id']}", headers=admin_headers,
                          json={"description": "quente", "contactId": contact.id})
        assert resp.json()["contact"]["id"] == contact.id
        assert client.delete(f"/api/kanbans/cards/{card['id']}", headers=admin_headers).status_code == 200


class TestActions:
    def test_move_fires_leave_and_enter(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        source, target = board["columns"][0]["id"], board["columns"][1]["id"]
        _action(client, admin_headers, source, name="Saída", trigger="ON_LEAVE_COLUMN")
        _action(client, admin_headers, target, name="Entrada", trigger="ON_ENTER_COLUMN")
        card = _card(client, admin_headers, board)

        client.put(f"/api/kanbans/cards/{card['id']}/move", headers=admin_headers, json={"columnId": target})

        executions = db.query(KanbanActionExecution).all()
        assert sorted(e.action.name for e in executions) == ["Entrada", "Saída"]
        assert {e.status for e in executions} == {"SUCCESS"}

    def test_reorder_in_same_column_fires_nothing(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, trigger="ON_ENTER_COLUMN")
        card = _card(client, admin_headers, board)
        client.put(f"/api/kanbans/cards/{card['id']}/move", headers=admin_headers, json={"columnId": column})
        assert db.query(KanbanActionExecution).count() == 0

    def test_failed_action_does_not_block_card(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, type="SEND_MESSAGE", trigger="ON_CARD_CREATE")
        card = _card(client, admin_headers, board)

        execution = db.query(KanbanActionExecution).one()
        assert execution.status == "FAILED"
        assert execution.error == "Card não possui contato associado"
        assert db.get(KanbanCard, card["id"]) is not None

    def test_conditions_skip_action(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, trigger="ON_CARD_CREATE", conditions={"hasContact": True})
        _card(client, admin_headers, board)
        assert db.query(KanbanActionExecution).count() == 0

    def test_send_message_action(self, client, db, admin_headers, connected_instance, contact):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, type="SEND_MESSAGE", trigger="ON_CARD_CREATE",
                config={"message": "Oi {{contact.name}}, card {{card.title}}"})
        with patch.object(EvolutionClient, "send_text", new_callable=AsyncMock,
                          return_value={"key": {"id": "K1"}}) as send:
            _card(client, admin_headers, board, contactId=contact.id)

        send.assert_awaited_once_with("acme-vendas", "5511999990000@s.whatsapp.net", "Oi Maria, card Lead ACME")
        execution = db.query(KanbanActionExecution).one()
        assert execution.status == "SUCCESS"
        assert execution.result["text"] == "Oi Maria, card Lead ACME"

    def test_update_status_action(self, client, db, admin_headers, conversation):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, type="UPDATE_STATUS", trigger="ON_CARD_CREATE",
                config={"status": "WAITING"})
        _card(client, admin_headers, board, conversationId=conversation.id)
        db.expire_all()
        assert db.get(Conversation, conversation.id).status == "WAITING"

    def test_webhook_action(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, type="WEBHOOK_CALL", trigger="ON_CARD_CREATE",
                config={"url": "https://hooks.acme.test/kanban", "method": "post"})

        response = httpx.Response(200, json={"ok": True}, request=httpx.Request("POST", "https://hooks.acme.test"))
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock, return_value=response) as request:
            _card(client, admin_headers, board)

        method, url = request.await_args.args
        assert (method, url) == ("POST", "https://hooks.acme.test/kanban")
        assert request.await_args.kwargs["json"]["card"]["title"] == "Lead ACME"
        execution = db.query(KanbanActionExecution).one()
        assert execution.result["response"] == {"ok": True}

    def test_manual_execute_and_stats(self, client, db, admin_headers):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        _action(client, admin_headers, column, type="CREATE_TASK", trigger="ON_TIME_DELAY",
                config={"title": "Follow-up {{card.title}}", "dueInHours": 2})
        card = _card(client, admin_headers, board)

        resp = client.post(f"/api/kanban-actions/execute/{card['id']}", headers=admin_headers,
                           json={"trigger": "ON_TIME_DELAY"})
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["executions"][0]["result"]["task"]["title"] == "Follow-up Lead ACME"

        stats = client.get("/api/kanban-actions/stats", headers=admin_headers).json()
        assert stats["totalActions"] == 1
        assert stats["executionsByStatus"]["SUCCESS"] == 1
        assert client.get("/api/kanban-actions/stats/overview", headers=admin_headers).json() == stats

    def test_crud(self, client, admin_headers):
        board = _board(client, admin_headers)
        column = board["columns"][0]["id"]
        action = _action(client, admin_headers, column)
        assert action["kanbanId"] == board["id"]

        resp = client.put(f"/api/kanban-actions/{action['id']}", headers=admin_headers,
                          json={"isActive": False, "trigger": "ON_LEAVE_COLUMN"})
        assert resp.json()["isActive"] is False
        assert resp.json()["trigger"] == "ON_LEAVE_COLUMN"

        listed = client.get(f"/api/kanban-actions/column/{column}", headers=admin_headers).json()
        assert [a["id"] for a in listed] == [action["id"]]

        assert client.delete(f"/api/kanban-actions/{action['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/kanban-actions/{action['id']}", headers=admin_headers).status_code == 404

    def test_templates(self, client, admin_headers):
        templates = client.get("/api/kanban-actions/templates/available", headers=admin_headers).json()
        assert {t["type"] for t in templates} >= {"SEND_MESSAGE", "WEBHOOK_CALL"}


class TestHelpers:
    def _card(self, **kwargs):
        card = KanbanCard(title="Lead", description=None, **kwargs)
        return card

    def test_check_conditions(self):
        now = utcnow()
        assert check_conditions(self._card(), {})
        assert not check_conditions(self._card(), {"hasContact": True})
        assert check_conditions(self._card(contact_id="c1"), {"hasContact": True})
        assert not check_conditions(self._card(updated_at=now - timedelta(hours=1)), {"timeInColumn": 24})
        assert check_conditions(self._card(updated_at=now - timedelta(hours=30)), {"timeInColumn": 24})

    def test_replace_variables_blank_for_missing(self):
        card = self._card()
        card.created_by = User(name="Ana")
        assert replace_variables("{{card.title}}/{{contact.name}}/{{createdBy.name}}", card) == "Lead//Ana"
