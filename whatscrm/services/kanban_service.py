# Em whatscrm/services/kanban_service.py
"""
Camada de serviço dos kanbans: quadros, colunas, cards e histórico de atividades.
As automações das colunas ficam no KanbanActionService.
"""
from typing import Optional, List, Dict, Any

from fastapi import Depends
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from whatscrm.core.database import (
    get_db, Campaign, Contact, Conversation, Kanban, KanbanCard, KanbanCardActivity, KanbanColumn,
    KanbanTrigger
)
from whatscrm.core.errors import ServiceError
from whatscrm.core.shared import print_error, print_info, print_success
from whatscrm.services.kanban_action_service import KanbanActionService

DEFAULT_COLUMN_COLOR = "#6B7280"


class KanbanService:
    def __init__(self, db: Session = Depends(get_db)):
        self.db = db
        self.actions = KanbanActionService(db)

    # --- Quadros ---

    def list_kanbans(self, organization_id: str, search: Optional[str] = None) -> List[Kanban]:
        query = self.db.query(Kanban).filter(
            Kanban.organization_id == organization_id,
            Kanban.is_active.is_(True)
        )
        if search:
            like = f"%{search}%"
            query = query.filter(or_(Kanban.name.ilike(like), Kanban.description.ilike(like)))
        return query.order_by(Kanban.created_at.desc()).all()

    def card_count(self, kanban_id: str) -> int:
        return self.db.query(KanbanCard).filter(KanbanCard.kanban_id == kanban_id).count()

    def get_kanban(self, kanban_id: str, organization_id: str) -> Kanban:
        kanban = self.db.query(Kanban).filter(
            Kanban.id == kanban_id,
            Kanban.organization_id == organization_id,
            Kanban.is_active.is_(True)
        ).first()
        if kanban is None:
            raise ServiceError(404, "Kanban não encontrado")
        return kanban

    def create_kanban(self, organization_id: str, created_by_id: str, data) -> Kanban:
        if not data.columns:
            raise ServiceError(400, "O kanban precisa de pelo menos uma coluna")

        kanban = Kanban(
            name=data.name,
            description=data.description,
            color=data.color,
            organization_id=organization_id,
            created_by_id=created_by_id,
        )
        kanban.columns = self._build_columns(data.columns)
        self.db.add(kanban)
        self.db.commit()
        self.db.refresh(kanban)
        print_success(f"Kanban criado: {kanban.name} (ID: {kanban.id})")
        return kanban

    def update_kanban(self, kanban_id: str, organization_id: str, data) -> Kanban:
        kanban = self.get_kanban(kanban_id, organization_id)
        for field in ("name", "description", "color"):
            value = getattr(data, field)
            if value is not None:
                setattr(kanban, field, value)

        if data.columns:
            # Substitui as colunas (e os cards delas) pela nova lista
            kanban.columns = self._build_columns(data.columns)

        self.db.commit()
        self.db.refresh(kanban)
        print_info(f"Kanban atualizado: {kanban.name} (ID: {kanban.id})")
        return kanban

    def delete_kanban(self, kanban_id: str, organization_id: str):
        kanban = self.get_kanban(kanban_id, organization_id)
        kanban.is_active = False
        self.db.commit()
        print_info(f"Kanban desativado: {kanban.name} (ID: {kanban.id})")

    @staticmethod
    def _build_columns(columns) -> List[KanbanColumn]:
        return [
            KanbanColumn(name=column.name, color=column.color or DEFAULT_COLUMN_COLOR, order=index)
            for index, column in enumerate(columns)
        ]

    def get_stats(self, organization_id: str) -> Dict[str, Any]:
        active_kanbans = self.db.query(Kanban.id).filter(
            Kanban.organization_id == organization_id,
            Kanban.is_active.is_(True)
        )
        recent = self.db.query(KanbanCardActivity).join(KanbanCard).filter(
            KanbanCard.kanban_id.in_(active_kanbans)
        ).order_by(KanbanCardActivity.created_at.desc()).limit(10).all()

        return {
            "totalKanbans": active_kanbans.count(),
            "totalColumns": self.db.query(KanbanColumn).filter(KanbanColumn.kanban_id.in_(active_kanbans)).count(),
            "totalCards": self.db.query(KanbanCard).filter(KanbanCard.kanban_id.in_(active_kanbans)).count(),
            "recentActivity": recent,
        }

    # --- Cards ---

    def get_card(self, card_id: str, organization_id: str) -> KanbanCard:
        card = self.db.query(KanbanCard).join(Kanban, KanbanCard.kanban_id == Kanban.id).filter(
            KanbanCard.id == card_id,
            Kanban.organization_id == organization_id,
            Kanban.is_active.is_(True)
        ).first()
        if card is None:
            raise ServiceError(404, "Card não encontrado")
        return card

    def _get_column(self, column_id: str, kanban_id: str) -> KanbanColumn:
        column = self.db.query(KanbanColumn).filter(
            KanbanColumn.id == column_id,
            KanbanColumn.kanban_id == kanban_id
        ).first()
        if column is None:
            raise ServiceError(404, "Coluna não encontrada")
        return column

    def _check_links(self, organization_id: str, contact_id=None, conversation_id=None, campaign_id=None):
        """Contato, conversa e campanha vinculados precisam ser da mesma organização."""
        for model, value, message in (
                (Contact, contact_id, "Contato não encontrado"),
                (Conversation, conversation_id, "Conversa não encontrada"),
                (Campaign, campaign_id, "Campanha não encontrada")):
            if value and not self.db.query(model.id).filter(
                    model.id == value, model.organization_id == organization_id).first():
                raise ServiceError(404, message)

    def _log_activity(self, card: KanbanCard, action: str, details: Dict[str, Any], user_id: Optional[str]):
        self.db.add(KanbanCardActivity(card_id=card.id, action=action, details=details, user_id=user_id))

    async def create_card(self, kanban_id: str, organization_id: str, user_id: str, data) -> KanbanCard:
        kanban = self.get_kanban(kanban_id, organization_id)
        column = self._get_column(data.column_id, kanban.id)
        self._check_links(organization_id, data.contact_id, data.conversation_id, data.campaign_id)

        max_order = self.db.query(func.max(KanbanCard.order)).filter(KanbanCard.column_id == column.id).scalar()
        card = KanbanCard(
            title=data.title,
            description=data.description,
            order=0 if max_order is None else max_order + 1,
            column_id=column.id,
            kanban_id=kanban.id,
            contact_id=data.contact_id,
            conversation_id=data.conversation_id,
            campaign_id=data.campaign_id,
            created_by_id=user_id,
        )
        self.db.add(card)
        self.db.flush()
        self._log_activity(card, "created", {"title": data.title, "description": data.description}, user_id)
        self.db.commit()
        self.db.refresh(card)
        print_success(f"Card criado: {card.title} (ID: {card.id})")

        await self._fire(card, KanbanTrigger.ON_CARD_CREATE.value)
        return card

    async def move_card(self, card_id: str, organization_id: str, user_id: str, column_id: str, order: int) -> KanbanCard:
        card = self.get_card(card_id, organization_id)
        target = self._get_column(column_id, card.kanban_id)
        from_column_id = card.column_id
        from_column_name = card.column.name

        # Reordena a coluna de destino com o card na posição pedida
        siblings = [c for c in target.cards if c.id != card.id]
        position = min(order, len(siblings))
        siblings.insert(position, card)
        card.column = target
        for index, sibling in enumerate(siblings):
            sibling.order = index

        self._log_activity(card, "moved", {
            "fromColumnId": from_column_id,
            "toColumnId": target.id,
            "fromColumn": from_column_name,
            "toColumn": target.name,
        }, user_id)
        self.db.commit()
        self.db.refresh(card)
        print_info(f"Card movido: {card.title} ({from_column_name} -> {target.name})")

        if from_column_id != target.id:
            await self._fire(card, KanbanTrigger.ON_LEAVE_COLUMN.value, column_id=from_column_id)
            await self._fire(card, KanbanTrigger.ON_ENTER_COLUMN.value)
        self.db.refresh(card)
        return card

    def update_card(self, card_id: str, organization_id: str, user_id: str, data) -> KanbanCard:
        card = self.get_card(card_id, organization_id)
        changes = data.model_dump(exclude_unset=True)
        self._check_links(organization_id, changes.get("contact_id"), changes.get("conversation_id"),
                          changes.get("campaign_id"))
        for field, value in changes.items():
            setattr(card, field, value)
        self._log_activity(card, "updated", changes, user_id)
        self.db.commit()
        self.db.refresh(card)
        return card

    def delete_card(self, card_id: str, organization_id: str):
        card = self.get_card(card_id, organization_id)
        self.db.delete(card)
        self.db.commit()
        print_info(f"Card removido: {card.title} (ID: {card_id})")

    async def _fire(self, card: KanbanCard, trigger: str, column_id: Optional[str] = None):
        # Automação com erro nunca desfaz a operação do card
        try:
            await self.actions.execute_column_actions(card, trigger, column_id=column_id)
        except Exception as e:
            self.db.rollback()
            print_error(f"Erro ao executar ações automáticas ({trigger}) do card {card.id}: {e}")


# --- Função Fábrica (Factory) ---
def get_kanban_service(
    service: KanbanService = Depends(KanbanService)
) -> KanbanService:
    return service
