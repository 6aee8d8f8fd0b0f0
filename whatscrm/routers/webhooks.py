# Em whatscrm/routers/webhooks.py
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from whatscrm.core.database import get_db, utcnow, Instance
from whatscrm.core.shared import print_info, print_warning
from whatscrm.services.webhook_service import WebhookService, normalize_event_name

# Rota pública: a Evolution não envia token
router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"]
)


@router.post("/evolution/{instance_name}", summary="Recebe eventos da Evolution API")
async def evolution_webhook(instance_name: str, request: Request, db: Session = Depends(get_db)):
    instance = db.query(Instance).filter(Instance.instance_name == instance_name).first()
    if instance is None:
        print_warning(f"Webhook para instância desconhecida: {instance_name}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instância não encontrada")

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload inválido")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload inválido")

    event = normalize_event_name(body.get("event"))
    print_info(f"⚡ Webhook {instance_name}: {event}")

    # Erros sobem: o 500 faz a Evolution reenviar o evento
    await WebhookService(db).process_event(instance, event, body.get("data"))
    return {"success": True}


@router.get("/test")
async def webhook_test():
    return {"message": "Webhook funcionando", "timestamp": utcnow().isoformat()}
