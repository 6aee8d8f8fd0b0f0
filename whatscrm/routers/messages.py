# Em whatscrm/routers/messages.py
import asyncio
import traceback
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from whatscrm.core import config, security
from whatscrm.core.database import get_db, utcnow, Conversation, Message, User
from whatscrm.core.errors import EvolutionAPIError, ServiceError
from whatscrm.core.shared import clean_phone, pagination, print_error, print_info
from whatscrm.schemas import (
    dump, dump_list, ContactBrief, MessageOut,
    SendMessageRequest, BulkMessageRequest, ScheduleMessageRequest
)
from whatscrm.services.messaging_service import MessagingService, get_messaging_service
from whatscrm.services.websocket_manager import manager

router = APIRouter(
    prefix="/messages",
    tags=["Mensagens"],
    dependencies=[Depends(security.get_current_user)]
)

MAX_BULK = 100


async def _broadcast_new_message(message: Message):
    await manager.broadcast(message.organization_id, "new-message", {
        "message": dump(MessageOut, message),
        "conversationId": message.conversation_id,
        "contact": dump(ContactBrief, message.contact),
    })


@router.post("/send", status_code=status.HTTP_201_CREATED)
async def send_message(
        body: SendMessageRequest,
        current_user: User = Depends(security.get_current_user),
        service: MessagingService = Depends(get_messaging_service)
):
    instance = service.get_connected_instance(current_user.organization_id, body.instance_id)
    message = await service.send_text(
        instance,
        body.phone_number,
        body.content,
        sent_by_id=current_user.id,
        conversation_id=body.conversation_id,
        message_type=body.type.value,
        media_url=body.media_url,
    )
    await _broadcast_new_message(message)
    return {"message": "Mensagem enviada com sucesso", "data": dump(MessageOut, message)}


@router.get("/conversation/{conversation_id}")
async def conversation_messages(
        conversation_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=200),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    conversation = db.query(Conversation.id).filter(
        Conversation.id == conversation_id,
        Conversation.organization_id == current_user.organization_id
    ).first()
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversa não encontrada")

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()
    # página 1 = mensagens mais recentes; dentro da página, da mais antiga para a mais nova
    page_items = query.order_by(Message.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "messages": dump_list(MessageOut, reversed(page_items)),
        "pagination": pagination(page, limit, total),
    }


@router.post("/bulk")
async def send_bulk(
        body: BulkMessageRequest,
        current_user: User = Depends(security.get_current_user),
        service: MessagingService = Depends(get_messaging_service)
):
    if len(body.phone_numbers) > MAX_BULK:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Máximo de {MAX_BULK} números por envio em massa"
        )
    instance = service.get_connected_instance(current_user.organization_id, body.instance_id)

    results, errors = [], []
    for index, raw_phone in enumerate(body.phone_numbers):
        phone = clean_phone(raw_phone)
        try:
            message = await service.send_text(instance, phone, body.content, sent_by_id=current_user.id)
            results.append({"phoneNumber": phone, "messageId": message.id, "success": True})
            await _broadcast_new_message(message)
        except (EvolutionAPIError, ServiceError) as e:
            print_error(f"Erro no envio em massa para {raw_phone}: {e.detail}")
            errors.append({"phoneNumber": raw_phone, "error": e.detail})
        except Exception as e:
            print_error(f"Erro inesperado no envio em massa para {raw_phone}: {e}")
            traceback.print_exc()
            errors.append({"phoneNumber": raw_phone, "error": str(e)})

        if index < len(body.phone_numbers) - 1:
            await asyncio.sleep(config.BULK_SEND_DELAY_SECONDS)

    print_info(f"Envio em massa por {current_user.email}: {len(results)} enviadas, {len(errors)} falhas")
    return {
        "results": results,
        "errors": errors,
        "summary": {"total": len(body.phone_numbers), "sent": len(results), "failed": len(errors)},
    }


@router.post("/schedule", status_code=status.HTTP_201_CREATED)
async def schedule_message(
        body: ScheduleMessageRequest,
        current_user: User = Depends(security.get_current_user),
        service: MessagingService = Depends(get_messaging_service)
):
    scheduled_at = body.scheduled_at
    if scheduled_at.tzinfo is not None:
        scheduled_at = scheduled_at.astimezone(timezone.utc).replace(tzinfo=None)
    if scheduled_at <= utcnow():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A data de agendamento deve ser futura")
    if not clean_phone(body.phone_number):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Número de telefone inválido")

    instance = service.get_connected_instance(current_user.organization_id, body.instance_id)
    message = service.schedule_text(
        instance, body.phone_number, body.content, scheduled_at, sent_by_id=current_user.id
    )
    return {"message": "Mensagem agendada com sucesso", "data": dump(MessageOut, message)}


@router.get("/{message_id}")
async def get_message(
        message_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    message = db.query(Message).filter(
        Message.id == message_id,
        Message.organization_id == current_user.organization_id
    ).first()
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mensagem não encontrada")
    return dump(MessageOut, message)
