# Em whatscrm/routers/conversations.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import (
    get_db, Contact, Conversation, Instance, Message, User,
    ConversationStatus, Priority, UserRole
)
from whatscrm.core.shared import pagination, print_info
from whatscrm.schemas import (
    dump, dump_list, ConversationOut, MessageOut,
    ConversationCreateRequest, ConversationUpdateRequest, AssignRequest
)
from whatscrm.services.metrics_service import MetricsService, PERIOD_DAYS, period_start
from whatscrm.services.websocket_manager import manager

router = APIRouter(
    prefix="/conversations",
    tags=["Conversas"],
    dependencies=[Depends(security.get_current_user)]
)

SUPERVISORS = (UserRole.SUPER_ADMIN.value, UserRole.ADMIN.value, UserRole.MANAGER.value)
ASSIGNABLE_ROLES = (UserRole.OPERATOR.value, UserRole.MANAGER.value, UserRole.ADMIN.value)


def _get_conversation(db: Session, conversation_id: str, organization_id: str) -> Conversation:
    conversation = db.query(Conversation).filter(
        Conversation.id == conversation_id,
        Conversation.organization_id == organization_id
    ).first()
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversa não encontrada")
    return conversation


def _summary(db: Session, conversation: Conversation) -> dict:
    data = dump(ConversationOut, conversation)
    last = db.query(Message).filter(
        Message.conversation_id == conversation.id
    ).order_by(Message.created_at.desc()).first()
    data["lastMessage"] = dump(MessageOut, last) if last else None
    data["_count"] = {"messages": db.query(Message).filter(Message.conversation_id == conversation.id).count()}
    return data


async def _notify(conversation: Conversation) -> dict:
    data = dump(ConversationOut, conversation)
    await manager.broadcast(conversation.organization_id, "conversation-updated", data)
    return data


# --- Rotas com caminho fixo ---

@router.get("/")
async def list_conversations(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        status_filter: Optional[ConversationStatus] = Query(None, alias="status"),
        priority: Optional[Priority] = None,
        assigned_to: Optional[str] = Query(None, alias="assignedTo"),
        instance_id: Optional[str] = Query(None, alias="instanceId"),
        search: Optional[str] = None,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    query = db.query(Conversation).filter(Conversation.organization_id == current_user.organization_id)
    if status_filter:
        query = query.filter(Conversation.status == status_filter.value)
    if priority:
        query = query.filter(Conversation.priority == priority.value)
    if assigned_to:
        query = query.filter(Conversation.assigned_to_id == assigned_to)
    if instance_id:
        query = query.filter(Conversation.instance_id == instance_id)
    if search:
        like = f"%{search}%"
        query = query.join(Contact, Conversation.contact_id == Contact.id).filter(or_(
            Conversation.title.ilike(like),
            Contact.name.ilike(like),
            Contact.phone_number.ilike(like),
        ))

    total = query.count()
    conversations = query.order_by(
        Conversation.last_message_at.desc(), Conversation.created_at.desc()
    ).offset((page - 1) * limit).limit(limit).all()
    return {
        "conversations": [_summary(db, c) for c in conversations],
        "pagination": pagination(page, limit, total),
    }


@router.get("/stats/overview")
async def conversations_overview(
        period: str = Query("7d"),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    if period not in PERIOD_DAYS:
        period = "7d"
    organization_id = current_user.organization_id
    start = period_start(period)

    base = db.query(Conversation).filter(Conversation.organization_id == organization_id)
    in_period = base.filter(Conversation.created_at >= start)

    by_status = {s.value: 0 for s in ConversationStatus}
    by_priority = {p.value: 0 for p in Priority}
    for conversation in in_period.all():
        by_status[conversation.status] = by_status.get(conversation.status, 0) + 1
        by_priority[conversation.priority] = by_priority.get(conversation.priority, 0) + 1

    average, responses = MetricsService(db).response_time(organization_id, start)
    return {
        "period": period,
        "totalConversations": in_period.count(),
        "openConversations": base.filter(Conversation.status == ConversationStatus.OPEN.value).count(),
        "inProgressConversations": base.filter(Conversation.status == ConversationStatus.IN_PROGRESS.value).count(),
        "closedConversations": base.filter(
            Conversation.status == ConversationStatus.CLOSED.value,
            Conversation.updated_at >= start
        ).count(),
        "waitingConversations": base.filter(Conversation.status == ConversationStatus.WAITING.value).count(),
        "conversationsByStatus": by_status,
        "conversationsByPriority": by_priority,
        "averageResponseTime": average,
        "responseCount": responses,
    }


# --- CRUD ---

@router.get("/{conversation_id}")
async def get_conversation(
        conversation_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    conversation = _get_conversation(db, conversation_id, current_user.organization_id)
    recent = db.query(Message).filter(
        Message.conversation_id == conversation.id
    ).order_by(Message.created_at.desc()).limit(50).all()

    data = dump(ConversationOut, conversation)
    data["messages"] = dump_list(MessageOut, reversed(recent))
    return data


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_conversation(
        body: ConversationCreateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    organization_id = current_user.organization_id
    contact = db.query(Contact).filter(
        Contact.id == body.contact_id, Contact.organization_id == organization_id
    ).first()
    if contact is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contato não encontrado")
    if body.instance_id and not db.query(Instance.id).filter(
            Instance.id == body.instance_id, Instance.organization_id == organization_id
    ).first():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instância não encontrada")

    conversation = Conversation(
        organization_id=organization_id,
        contact_id=contact.id,
        instance_id=body.instance_id,
        title=body.title or f"Conversa com {contact.name or contact.phone_number}",
        priority=body.priority.value,
        tags=body.tags,
        notes=body.notes,
        status=ConversationStatus.OPEN.value,
        created_by_id=current_user.id,
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return await _notify(conversation)


@router.put("/{conversation_id}")
async def update_conversation(
        conversation_id: str,
        body: ConversationUpdateRequest,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    conversation = _get_conversation(db, conversation_id, current_user.organization_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        if value is None and field in ("status", "priority", "tags"):
            continue
        setattr(conversation, field, value.value if hasattr(value, "value") else value)
    db.commit()
    db.refresh(conversation)
    return await _notify(conversation)


@router.post("/{conversation_id}/assign")
async def assign_conversation(
        conversation_id: str,
        body: AssignRequest,
        current_user: User = Depends(security.require_role(UserRole.ADMIN, UserRole.MANAGER)),
        db: Session = Depends(get_db)
):
    conversation = _get_conversation(db, conversation_id, current_user.organization_id)

    if body.user_id:
        assignee = db.query(User).filter(
            User.id == body.user_id,
            User.organization_id == current_user.organization_id,
            User.role.in_(ASSIGNABLE_ROLES)
        ).first()
        if assignee is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Operador não encontrado")
        conversation.assigned_to_id = assignee.id
        conversation.status = ConversationStatus.IN_PROGRESS.value
    else:
        conversation.assigned_to_id = None
        conversation.status = ConversationStatus.OPEN.value

    db.commit()
    db.refresh(conversation)
    print_info(f"Conversa {conversation.id} atribuída a {conversation.assigned_to_id} por {current_user.email}")
    return await _notify(conversation)


@router.post("/{conversation_id}/close")
async def close_conversation(
        conversation_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    conversation = _get_conversation(db, conversation_id, current_user.organization_id)
    if conversation.assigned_to_id != current_user.id and current_user.role not in SUPERVISORS:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Sem permissão para fechar esta conversa")

    conversation.status = ConversationStatus.CLOSED.value
    db.commit()
    db.refresh(conversation)
    return await _notify(conversation)


@router.post("/{conversation_id}/reopen")
async def reopen_conversation(
        conversation_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    conversation = _get_conversation(db, conversation_id, current_user.organization_id)
    conversation.status = ConversationStatus.OPEN.value
    db.commit()
    db.refresh(conversation)
    return await _notify(conversation)


@router.delete("/{conversation_id}")
async def delete_conversation(
        conversation_id: str,
        current_user: User = Depends(security.require_role(UserRole.ADMIN)),
        db: Session = Depends(get_db)
):
    conversation = _get_conversation(db, conversation_id, current_user.organization_id)
    db.delete(conversation)
    db.commit()
    await manager.broadcast(current_user.organization_id, "conversation-updated", {
        "id": conversation_id, "deleted": True
    })
    return {"message": "Conversa excluída com sucesso"}
