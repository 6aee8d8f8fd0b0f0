# Em whatscrm/routers/kanbans.py
from typing import Optional

from fastapi import APIRouter, Depends, status

from whatscrm.core import security
from whatscrm.core.database import User, UserRole
from whatscrm.schemas import (
    dump, dump_list, KanbanOut, KanbanDetail, KanbanCardOut, KanbanActivityOut,
    KanbanCreateRequest, KanbanUpdateRequest, CardCreateRequest, CardMoveRequest, CardUpdateRequest
)
from whatscrm.services.kanban_service import KanbanService, get_kanban_service

require_board_access = security.require_role(UserRole.ADMIN, UserRole.MANAGER, UserRole.OPERATOR)

router = APIRouter(
    prefix="/kanbans",
    tags=["Kanbans"],
    dependencies=[Depends(require_board_access)]
)


@router.get("/")
async def list_kanbans(
        search: Optional[str] = None,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    result = []
    for kanban in service.list_kanbans(current_user.organization_id, search):
        data = dump(KanbanOut, kanban)
        data["_count"] = {"cards": service.card_count(kanban.id)}
        result.append(data)
    return result


@router.get("/stats")
async def kanban_stats(
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    stats = service.get_stats(current_user.organization_id)
    stats["recentActivity"] = dump_list(KanbanActivityOut, stats["recentActivity"])
    return stats


# --- Cards ---

@router.put("/cards/{card_id}/move")
async def move_card(
        card_id: str,
        body: CardMoveRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    card = await service.move_card(card_id, current_user.organization_id, current_user.id, body.column_id, body.order)
    return dump(KanbanCardOut, card)


@router.put("/cards/{card_id}")
async def update_card(
        card_id: str,
        body: CardUpdateRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    return dump(KanbanCardOut, service.update_card(card_id, current_user.organization_id, current_user.id, body))


@router.delete("/cards/{card_id}")
async def delete_card(
        card_id: str,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    service.delete_card(card_id, current_user.organization_id)
    return {"message": "Card removido com sucesso"}


# --- Quadros ---

@router.get("/{kanban_id}")
async def get_kanban(
        kanban_id: str,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    return dump(KanbanDetail, service.get_kanban(kanban_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_kanban(
        body: KanbanCreateRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    kanban = service.create_kanban(current_user.organization_id, current_user.id, body)
    return dump(KanbanDetail, kanban)


@router.put("/{kanban_id}")
async def update_kanban(
        kanban_id: str,
        body: KanbanUpdateRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    return dump(KanbanDetail, service.update_kanban(kanban_id, current_user.organization_id, body))


@router.delete("/{kanban_id}")
async def delete_kanban(
        kanban_id: str,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    service.delete_kanban(kanban_id, current_user.organization_id)
    return {"message": "Kanban excluído com sucesso"}


@router.post("/{kanban_id}/cards", status_code=status.HTTP_201_CREATED)
async def create_card(
        kanban_id: str,
        body: CardCreateRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanService = Depends(get_kanban_service)
):
    card = await service.create_card(kanban_id, current_user.organization_id, current_user.id, body)
    return dump(KanbanCardOut, card)
