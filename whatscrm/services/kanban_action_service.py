# Em whatscrm/services/kanban_action_service.py
"""
Automações das colunas do kanban.

Cada coluna pode ter ações disparadas na criação do card, na entrada, na saída
ou por tempo parado. Toda execução vira um KanbanActionExecution (RUNNING -> SUCCESS/FAILED).
"""
import traceback
from datetime import timedelta
from typing import Dict, Any, List, Optional

import httpx
from fastapi import Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from whatscrm.core.database import (
    get_db, utcnow, Instance, Kanban, KanbanAction, KanbanActionExecution, KanbanCard, KanbanColumn,
    ConversationStatus, ExecutionStatus, InstanceStatus, KanbanActionType
)
from whatscrm.core.errors import ServiceError
from whatscrm.core.shared import print_error, print_info, print_success
from whatscrm.schemas import dump, KanbanCardOut
from whatscrm.services.messaging_service import MessagingService
from whatscrm.services.websocket_manager import manager

ACTION_TEMPLATES = [
    {
        "name": "Mensagem de boas-vindas",
        "description": "Envia uma mensagem automática quando o card entra na coluna",
        "type": KanbanActionType.SEND_MESSAGE.value,
        "trigger": "ON_ENTER_COLUMN",
        "config": {
            "message": "Olá {{contact.name}}! Seu atendimento {{card.title}} está em andamento. Em breve entraremos em contato."
        },
        "conditions": {"hasContact": True},
    },
    {
        "name": "Notificar gerente",
        "description": "Avisa a equipe quando um card é criado",
        "type": KanbanActionType.NOTIFY_USER.value,
        "trigger": "ON_CARD_CREATE",
        "config": {"message": "Novo card criado: {{card.title}}", "userId": None},
        "conditions": {},
    },
    {
        "name": "Tarefa de follow-up",
        "description": "Cria uma tarefa de acompanhamento quando o card fica parado",
        "type": KanbanActionType.CREATE_TASK.value,
        "trigger": "ON_TIME_DELAY",
        "config": {"title": "Follow-up: {{card.title}}", "dueInHours": 24},
        "conditions": {"timeInColumn": 24},
    },
    {
        "name": "Marcar em andamento",
        "description": "Atualiza a conversa para IN_PROGRESS quando o card entra na coluna",
        "type": KanbanActionType.UPDATE_STATUS.value,
        "trigger": "ON_ENTER_COLUMN",
        "config": {"status": ConversationStatus.IN_PROGRESS.value},
        "conditions": {"hasConversation": True},
    },
    {
        "name": "Notificação por email",
        "description": "Envia um email de acompanhamento",
        "type": KanbanActionType.SEND_EMAIL.value,
        "trigger": "ON_ENTER_COLUMN",
        "config": {"email": "", "subject": "Acompanhamento: {{card.title}}", "message": ""},
        "conditions": {},
    },
    {
        "name": "Webhook do CRM",
        "description": "Chama um webhook externo quando o card muda de coluna",
        "type": KanbanActionType.WEBHOOK_CALL.value,
        "trigger": "ON_ENTER_COLUMN",
        "config": {"url": "", "method": "POST", "headers": {}},
        "conditions": {},
    },
]


def replace_variables(text: str, card: KanbanCard) -> str:
    contact = card.contact
    conversation = card.conversation
    campaign = card.campaign
    created_by = card.created_by
    values = {
        "{{card.title}}": card.title,
        "{{card.description}}": card.description,
        "{{contact.name}}": contact.name if contact else None,
        "{{contact.phone}}": contact.phone_number if contact else None,
        "{{conversation.title}}": conversation.title if conversation else None,
        "{{campaign.name}}": campaign.name if campaign else None,
        "{{createdBy.name}}": created_by.name if created_by else None,
    }
    for variable, value in values.items():
        text = text.replace(variable, value or "")
    return text


def check_conditions(card: KanbanCard, conditions: Dict[str, Any]) -> bool:
    """Ex.: {"hasContact": true, "timeInColumn": 24}"""
    if not conditions:
        return True
    if conditions.get("hasContact") and not card.contact_id:
        return False
    if conditions.get("hasConversation") and not card.conversation_id:
        return False
    if conditions.get("hasCampaign") and not card.campaign_id:
        return False

    hours = conditions.get("timeInColumn")
    if hours:
        since = card.updated_at or card.created_at or utcnow()
        if utcnow() - since < timedelta(hours=float(hours)):
            return False
    return True


class KanbanActionService:
    def __init__(self, db: Session = Depends(get_db)):
        self.db = db

    # --- CRUD ---

    def get_column(self, column_id: str, organization_id: str) -> KanbanColumn:
        column = self.db.query(KanbanColumn).join(Kanban, KanbanColumn.kanban_id == Kanban.id).filter(
            KanbanColumn.id == column_id,
            Kanban.organization_id == organization_id
        ).first()
        if column is None:
            raise ServiceError(404, "Coluna não encontrada")
        return column

    def get_action(self, action_id: str, organization_id: str) -> KanbanAction:
        action = self.db.query(KanbanAction).join(Kanban, KanbanAction.kanban_id == Kanban.id).filter(
            KanbanAction.id == action_id,
            Kanban.organization_id == organization_id
        ).first()
        if action is None:
            raise ServiceError(404, "Ação não encontrada")
        return action

    def list_column_actions(self, column_id: str, organization_id: str) -> List[KanbanAction]:
        column = self.get_column(column_id, organization_id)
        return self.db.query(KanbanAction).filter(
            KanbanAction.column_id == column.id
        ).order_by(KanbanAction.created_at).all()

    def create_action(self, organization_id: str, data) -> KanbanAction:
        column = self.get_column(data.column_id, organization_id)
        action = KanbanAction(
            name=data.name,
            description=data.description,
            type=data.type.value,
            trigger=data.trigger.value,
            conditions=data.conditions,
            config=data.config,
            is_active=data.is_active,
            column_id=column.id,
            kanban_id=column.kanban_id,
        )
        self.db.add(action)
        self.db.commit()
        self.db.refresh(action)
        print_success(f"Ação criada: {action.name} ({action.type}/{action.trigger})")
        return action

    def update_action(self, action_id: str, organization_id: str, data) -> KanbanAction:
        action = self.get_action(action_id, organization_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None:
                continue
            setattr(action, field, value.value if hasattr(value, "value") else value)
        self.db.commit()
        self.db.refresh(action)
        return action

    def delete_action(self, action_id: str, organization_id: str):
        action = self.get_action(action_id, organization_id)
        self.db.delete(action)
        self.db.commit()

    def get_stats(self, organization_id: str) -> Dict[str, Any]:
        actions = self.db.query(KanbanAction).join(Kanban, KanbanAction.kanban_id == Kanban.id).filter(
            Kanban.organization_id == organization_id
        )
        action_ids = [a.id for a in actions.all()]
        rows = self.db.query(KanbanActionExecution.status, func.count(KanbanActionExecution.id)).filter(
            KanbanActionExecution.action_id.in_(action_ids)
        ).group_by(KanbanActionExecution.status).all() if action_ids else []
        by_status = dict(rows)
        return {
            "totalActions": len(action_ids),
            "activeActions": actions.filter(KanbanAction.is_active.is_(True)).count(),
            "totalExecutions": sum(by_status.values()),
            "executionsByStatus": {s.value: by_status.get(s.value, 0) for s in ExecutionStatus},
        }

    # --- Execução ---

    async def execute_column_actions(
            self, card: KanbanCard, trigger: str, column_id: Optional[str] = None
    ) -> List[KanbanActionExecution]:
        """Roda as ações ativas da coluna (a atual do card, por padrão) para o gatilho. Falhas ficam na execução."""
        actions = self.db.query(KanbanAction).filter(
            KanbanAction.column_id == (column_id or card.column_id),
            KanbanAction.trigger == trigger,
            KanbanAction.is_active.is_(True)
        ).order_by(KanbanAction.created_at).all()

        executions = []
        for action in actions:
            if not check_conditions(card, action.conditions or {}):
                print_info(f"Ação '{action.name}' ignorada: condições não atendidas (card {card.id})")
                continue
            executions.append(await self.execute_action(action, card))
        return executions

    async def execute_action(self, action: KanbanAction, card: KanbanCard) -> KanbanActionExecution:
        execution = KanbanActionExecution(
            action_id=action.id,
            card_id=card.id,
            status=ExecutionStatus.RUNNING.value,
        )
        self.db.add(execution)
        self.db.commit()
        execution_id = execution.id

        try:
            result = await self._run(action, card)
        except Exception as e:
            print_error(f"Erro ao executar ação '{action.name}' para card {card.id}: {e}")
            traceback.print_exc()
            self.db.rollback()
            execution = self.db.get(KanbanActionExecution, execution_id)
            execution.status = ExecutionStatus.FAILED.value
            execution.error = str(getattr(e, "detail", None) or e)
            self.db.commit()
            return execution

        execution.status = ExecutionStatus.SUCCESS.value
        execution.result = result
        self.db.commit()
        print_success(f"Ação '{action.name}' executada para card {card.title}")
        return execution

    async def _run(self, action: KanbanAction, card: KanbanCard) -> Dict[str, Any]:
        handlers = {
            KanbanActionType.SEND_MESSAGE.value: self._send_message,
            KanbanActionType.NOTIFY_USER.value: self._notify_user,
            KanbanActionType.CREATE_TASK.value: self._create_task,
            KanbanActionType.UPDATE_STATUS.value: self._update_status,
            KanbanActionType.SEND_EMAIL.value: self._send_email,
            KanbanActionType.WEBHOOK_CALL.value: self._webhook_call,
        }
        handler = handlers.get(action.type)
        if handler is None:
            raise ServiceError(400, f"Tipo de ação não suportado: {action.type}")
        return await handler(action.config or {}, card, action)

    # --- Tipos de ação ---

    async def _send_message(self, config: Dict[str, Any], card: KanbanCard, action: KanbanAction):
        if not card.contact:
            raise ServiceError(400, "Card não possui contato associado")

        organization_id = card.kanban.organization_id
        instance_id = config.get("instanceId") or (card.conversation.instance_id if card.conversation else None)
        query = self.db.query(Instance).filter(
            Instance.organization_id == organization_id,
            Instance.status == InstanceStatus.CONNECTED.value
        )
        if instance_id:
            query = query.filter(Instance.id == instance_id)
        instance = query.first()
        if instance is None:
            raise ServiceError(400, "Nenhuma instância conectada encontrada")

        text = replace_variables(config.get("message") or "Notificação automática do Kanban", card)
        message = await MessagingService(self.db).send_text(
            instance, card.contact.phone_number, text,
            sent_by_id=card.created_by_id, conversation_id=card.conversation_id
        )
        return {"message": "Mensagem enviada com sucesso", "messageId": message.id, "text": text}

    async def _notify_user(self, config: Dict[str, Any], card: KanbanCard, action: KanbanAction):
        text = replace_variables(config.get("message") or "Atualização no card {{card.title}}", card)
        payload = {
            "actionId": action.id,
            "cardId": card.id,
            "kanbanId": card.kanban_id,
            "userId": config.get("userId"),
            "message": text,
        }
        await manager.broadcast(card.kanban.organization_id, "kanban-notification", payload)
        return {"message": "Usuário notificado", "notification": payload}

    async def _create_task(self, config: Dict[str, Any], card: KanbanCard, action: KanbanAction):
        due_in_hours = float(config.get("dueInHours") or 24)
        task = {
            "title": replace_variables(config.get("title") or config.get("taskTitle") or card.title, card),
            "cardId": card.id,
            "dueAt": (utcnow() + timedelta(hours=due_in_hours)).isoformat(),
        }
        print_info(f"Tarefa criada para card {card.title}: {task['title']}")
        return {"message": "Tarefa criada", "task": task}

    async def _update_status(self, config: Dict[str, Any], card: KanbanCard, action: KanbanAction):
        new_status = config.get("status") or config.get("newStatus")
        if new_status not in {s.value for s in ConversationStatus}:
            raise ServiceError(400, f"Status inválido: {new_status}")
        if not card.conversation:
            raise ServiceError(400, "Card não possui conversa associada")
        card.conversation.status = new_status
        self.db.commit()
        return {"message": "Status atualizado", "conversationId": card.conversation_id, "newStatus": new_status}

    async def _send_email(self, config: Dict[str, Any], card: KanbanCard, action: KanbanAction):
        # Sem SMTP: o email fica registrado como enfileirado
        email = {
            "to": config.get("email"),
            "subject": replace_variables(config.get("subject") or "", card),
            "message": replace_variables(config.get("message") or "", card),
        }
        print_info(f"Email enfileirado para {email['to']}: {email['subject']}")
        return {"message": "Email enfileirado", "email": email, "queued": True}

    async def _webhook_call(self, config: Dict[str, Any], card: KanbanCard, action: KanbanAction):
        url = config.get("url") or config.get("webhookUrl")
        if not url:
            raise ServiceError(400, "URL do webhook não configurada")
        method = (config.get("method") or "POST").upper()
        payload = {
            "action": action.name,
            "card": dump(KanbanCardOut, card),
            "timestamp": utcnow().isoformat(),
        }
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.request(method, url, json=payload, headers=config.get("headers") or {})
        resp.raise_for_status()
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        return {"message": "Webhook chamado com sucesso", "statusCode": resp.status_code, "response": body}


# --- Função Fábrica (Factory) ---
def get_kanban_action_service(
    service: KanbanActionService = Depends(KanbanActionService)
) -> KanbanActionService:
    return service
