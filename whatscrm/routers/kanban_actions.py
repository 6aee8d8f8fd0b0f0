# Em whatscrm/routers/kanban_actions.py
from fastapi import APIRouter, Depends, status

from whatscrm.core import security
from whatscrm.core.database import User, UserRole
from whatscrm.schemas import (
    dump, dump_list, KanbanActionOut, KanbanExecutionOut,
    KanbanActionCreateRequest, KanbanActionUpdateRequest, ExecuteActionsRequest
)
from whatscrm.services.kanban_action_service import (
    ACTION_TEMPLATES, KanbanActionService, get_kanban_action_service
)
from whatscrm.services.kanban_service import KanbanService, get_kanban_service

require_board_access = security.require_role(UserRole.ADMIN, UserRole.MANAGER, UserRole.OPERATOR)

router = APIRouter(
    prefix="/kanban-actions",
    tags=["Ações do Kanban"],
    dependencies=[Depends(require_board_access)]
)


# --- Rotas com caminho fixo ---

@router.get("/stats")
@router.get("/stats/overview", include_in_schema=False)
async def action_stats(
        current_user: User = Depends(require_board_access),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    return service.get_stats(current_user.organization_id)


@router.get("/templates/available")
async def available_templates():
    return ACTION_TEMPLATES


@router.get("/column/{column_id}")
async def column_actions(
        column_id: str,
        current_user: User = Depends(require_board_access),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    return dump_list(KanbanActionOut, service.list_column_actions(column_id, current_user.organization_id))


@router.post("/execute/{card_id}")
async def execute_card_actions(
        card_id: str,
        body: ExecuteActionsRequest,
        current_user: User = Depends(require_board_access),
        kanbans: KanbanService = Depends(get_kanban_service),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    card = kanbans.get_card(card_id, current_user.organization_id)
    executions = await service.execute_column_actions(card, body.trigger.value)
    return {"executions": dump_list(KanbanExecutionOut, executions), "total": len(executions)}


# --- CRUD ---

@router.get("/{action_id}")
async def get_action(
        action_id: str,
        current_user: User = Depends(require_board_access),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    return dump(KanbanActionOut, service.get_action(action_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_action(
        body: KanbanActionCreateRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    return dump(KanbanActionOut, service.create_action(current_user.organization_id, body))


@router.put("/{action_id}")
async def update_action(
        action_id: str,
        body: KanbanActionUpdateRequest,
        current_user: User = Depends(require_board_access),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    return dump(KanbanActionOut, service.update_action(action_id, current_user.organization_id, body))


@router.delete("/{action_id}")
async def delete_action(
        action_id: str,
        current_user: User = Depends(require_board_access),
        service: KanbanActionService = Depends(get_kanban_action_service)
):
    service.delete_action(action_id, current_user.organization_id)
    return {"message": "Ação excluída com sucesso"}
