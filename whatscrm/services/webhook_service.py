# Em whatscrm/services/webhook_service.py
"""
Normalização dos eventos da Evolution API.

Os mesmos handlers atendem o webhook HTTP (/api/webhooks/evolution/{instanceName})
e o listener Socket.IO (evolution_socket_manager). A Evolution entrega "pelo menos uma vez":
o mesmo messages.upsert pode chegar repetido (ou pelos dois caminhos), então a gravação
é idempotente pelo key.id da mensagem (Message.external_id).
"""
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from whatscrm.core import config
from whatscrm.core.database import (
    utcnow, Contact, Instance, Message,
    InstanceStatus, MessageDirection, MessageStatus, MessageType
)
from whatscrm.core.shared import (
    print_error, print_info, print_success, print_warning, phone_from_jid, is_group_jid
)
from whatscrm.schemas import dump, MessageOut, ContactBrief
from whatscrm.services.evolution_client import (
    get_evolution_client, map_connection_state, extract_qr_code
)
from whatscrm.services.messaging_service import MessagingService
from whatscrm.services.websocket_manager import manager

WEBHOOK_EVENTS = [
    "APPLICATION_STARTUP",
    "QRCODE_UPDATED",
    "MESSAGES_SET",
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "MESSAGES_DELETE",
    "SEND_MESSAGE",
    "CONTACTS_SET",
    "CONTACTS_UPSERT",
    "CONTACTS_UPDATE",
    "PRESENCE_UPDATE",
    "CHATS_SET",
    "CHATS_UPSERT",
    "CHATS_UPDATE",
    "CHATS_DELETE",
    "GROUPS_UPSERT",
    "GROUP_UPDATE",
    "GROUP_PARTICIPANTS_UPDATE",
    "CONNECTION_UPDATE",
    "LABELS_EDIT",
    "LABELS_ASSOCIATION",
    "CALL",
    "TYPEBOT_START",
    "TYPEBOT_CHANGE_STATUS",
]

# Ordem dos status: nunca voltamos (um DELIVERED atrasado não desfaz um READ)
STATUS_RANK = {
    MessageStatus.FAILED.value: 0,
    MessageStatus.PENDING.value: 1,
    MessageStatus.SENT.value: 2,
    MessageStatus.DELIVERED.value: 3,
    MessageStatus.READ.value: 4,
}

# Falha só vale para mensagens ainda não entregues
_FAILABLE = (MessageStatus.PENDING.value, MessageStatus.SENT.value)

# Códigos numéricos do Baileys (Evolution v1)
_NUMERIC_ACK = {0: "ERROR", 1: "PENDING", 2: "SERVER_ACK", 3: "DELIVERY_ACK", 4: "READ", 5: "PLAYED"}


# ===================================================================
# Helpers de formato
# ===================================================================

def normalize_event_name(event: Optional[str]) -> str:
    """'messages.upsert' / 'MESSAGES_UPSERT' / 'messages-upsert' -> 'MESSAGES_UPSERT'"""
    return str(event or "").strip().upper().replace(".", "_").replace("-", "_")


def _items(data: Any, list_key: str) -> List[Dict[str, Any]]:
    """A Evolution manda às vezes um objeto, às vezes {messages: [...]}, às vezes uma lista."""
    if isinstance(data, list):
        return [d for d in data if isinstance(d, dict)]
    if isinstance(data, dict):
        nested = data.get(list_key)
        if isinstance(nested, list):
            return [d for d in nested if isinstance(d, dict)]
        return [data]
    return []


def extract_sender_jid(key: Dict[str, Any]) -> Optional[str]:
    """
    Prioriza o JID de telefone (@s.whatsapp.net).
    Mensagens de contas com LID trazem o número real em remoteJidAlt.
    """
    candidates = [key.get("remoteJid"), key.get("remoteJidAlt")]
    for jid in candidates:
        if jid and jid.endswith("@s.whatsapp.net"):
            return jid
    return next((jid for jid in candidates if jid), None)


def extract_content(message: Dict[str, Any]) -> Optional[Tuple[str, str, Optional[str], Optional[str]]]:
    """
    Retorna (content, type, media_url, media_type) ou None para mensagens que não viram registro
    (reações, protocolMessage de apagar/editar).
    """
    if not isinstance(message, dict):
        return None
    if "reactionMessage" in message or "protocolMessage" in message:
        return None

    if message.get("conversation"):
        return message["conversation"], MessageType.TEXT.value, None, None

    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return extended["text"], MessageType.TEXT.value, None, None

    image = message.get("imageMessage")
    if image is not None:
        return image.get("caption") or "[Imagem]", MessageType.IMAGE.value, image.get("url"), image.get("mimetype") or "image"

    video = message.get("videoMessage")
    if video is not None:
        return video.get("caption") or "[Vídeo]", MessageType.VIDEO.value, video.get("url"), video.get("mimetype") or "video"

    audio = message.get("audioMessage")
    if audio is not None:
        return "[Áudio]", MessageType.AUDIO.value, audio.get("url"), audio.get("mimetype") or "audio"

    document = message.get("documentMessage") or (message.get("documentWithCaptionMessage") or {}).get("message", {}).get("documentMessage")
    if document is not None:
        content = document.get("fileName") or document.get("caption") or "[Documento]"
        return content, MessageType.DOCUMENT.value, document.get("url"), document.get("mimetype") or "document"

    location = message.get("locationMessage")
    if location is not None:
        content = f"[Localização] {location.get('degreesLatitude')},{location.get('degreesLongitude')}"
        return content, MessageType.LOCATION.value, None, None

    contact = message.get("contactMessage")
    if contact is not None:
        return contact.get("displayName") or "[Contato]", MessageType.CONTACT.value, None, None

    return "[Mensagem não suportada]", MessageType.TEXT.value, None, None


def map_update_status(raw: Any) -> str:
    if isinstance(raw, int):
        raw = _NUMERIC_ACK.get(raw, "SERVER_ACK")
    raw = str(raw or "").upper()
    if raw in ("READ", "PLAYED"):
        return MessageStatus.READ.value
    if raw in ("DELIVERY_ACK", "DELIVERED_ACK", "DELIVERED"):
        return MessageStatus.DELIVERED.value
    if raw == "ERROR":
        return MessageStatus.FAILED.value
    return MessageStatus.SENT.value


def _timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return utcnow()


# ===================================================================
# Serviço
# ===================================================================

class WebhookService:
    def __init__(self, db: Session):
        self.db = db
        self.messaging = MessagingService(db)

    # --- connection.update / qrcode.updated ---
    def handle_connection_update(self, instance: Instance, data: Dict[str, Any]) -> Instance:
        state = (data or {}).get("state") or (data or {}).get("status")
        new_status = map_connection_state(state, default=instance.status)

        instance.status = new_status
        if new_status == InstanceStatus.CONNECTED.value:
            instance.qr_code = None
        self.db.commit()
        print_info(f"Status da instância {instance.instance_name} -> {new_status} (state={state})")
        return instance

    def handle_qrcode_updated(self, instance: Instance, data: Dict[str, Any]) -> Instance:
        qr_code = extract_qr_code(data or {})
        if qr_code:
            instance.qr_code = qr_code
            instance.status = InstanceStatus.QRCODE.value
            self.db.commit()
        return instance

    # --- messages.upsert ---
    def handle_messages_upsert(self, instance: Instance, data: Any) -> List[Message]:
        stored = []
        for item in _items(data, "messages"):
            message = self._upsert_message(instance, item)
            if message is not None:
                stored.append(message)
        return stored

    def _upsert_message(self, instance: Instance, item: Dict[str, Any]) -> Optional[Message]:
        key = item.get("key") or {}
        external_id = key.get("id")
        jid = extract_sender_jid(key)

        if not jid or is_group_jid(jid):
            return None

        extracted = extract_content(item.get("message") or {})
        if extracted is None:
            return None
        content, msg_type, media_url, media_type = extracted

        organization_id = instance.organization_id
        if external_id:
            existing = self.db.query(Message.id).filter(
                Message.organization_id == organization_id,
                Message.external_id == external_id
            ).first()
            if existing:
                print_info(f"Mensagem {external_id} já registrada (reentrega), ignorando")
                return None

        from_me = bool(key.get("fromMe"))
        phone = phone_from_jid(jid)
        push_name = None if from_me else item.get("pushName")
        created_at = _timestamp(item.get("messageTimestamp")) if item.get("messageTimestamp") else utcnow()

        try:
            contact = self.messaging.find_or_create_contact(organization_id, phone, push_name)
            conversation = self.messaging.find_or_create_conversation(organization_id, contact, instance.id)

            message = Message(
                organization_id=organization_id,
                conversation_id=conversation.id,
                contact_id=contact.id,
                instance_id=instance.id,
                content=content,
                type=msg_type,
                direction=MessageDirection.OUTBOUND.value if from_me else MessageDirection.INBOUND.value,
                status=MessageStatus.SENT.value if from_me else MessageStatus.DELIVERED.value,
                media_url=media_url,
                media_type=media_type,
                external_id=external_id,
                message_metadata={
                    "key": key,
                    "pushName": item.get("pushName"),
                    "messageTimestamp": item.get("messageTimestamp"),
                },
                created_at=created_at,
            )
            self.db.add(message)
            conversation.last_message_at = utcnow()
            self.db.commit()
        except IntegrityError:
            # A mesma mensagem chegou ao mesmo tempo pelo webhook e pelo socket
            self.db.rollback()
            print_warning(f"Mensagem {external_id} gravada por outra entrega, ignorando")
            return None

        self.db.refresh(message)
        print_success(f"Mensagem {message.id} ({msg_type}) registrada na conversa {conversation.id}")
        return message

    # --- messages.update ---
    def handle_messages_update(self, instance: Instance, data: Any) -> List[Message]:
        updated = []
        for item in _items(data, "messages"):
            key = item.get("key") or {}
            external_id = key.get("id") or item.get("keyId")
            raw_status = item.get("status")
            if raw_status is None:
                raw_status = (item.get("update") or {}).get("status")
            if not external_id:
                continue

            message = self.db.query(Message).filter(
                Message.organization_id == instance.organization_id,
                Message.external_id == external_id
            ).first()
            if message is None:
                continue

            new_status = map_update_status(raw_status)
            if new_status == MessageStatus.FAILED.value:
                advance = message.status in _FAILABLE
            else:
                advance = STATUS_RANK[new_status] > STATUS_RANK.get(message.status, 0)
            if advance:
                message.status = new_status
                updated.append(message)

        if updated:
            self.db.commit()
        return updated

    # --- contacts.update ---
    def handle_contacts_update(self, instance: Instance, data: Any) -> List[Contact]:
        updated = []
        for item in _items(data, "contacts"):
            jid = item.get("remoteJid") or item.get("id")
            if not jid or is_group_jid(jid):
                continue
            contact = self.db.query(Contact).filter(
                Contact.organization_id == instance.organization_id,
                Contact.phone_number == phone_from_jid(jid)
            ).first()
            if contact is None:
                continue

            name = item.get("pushName") or item.get("name")
            if name:
                contact.name = name
            if item.get("profilePicUrl"):
                contact.avatar = item["profilePicUrl"]
            contact.last_interaction = utcnow()
            updated.append(contact)

        if updated:
            self.db.commit()
        return updated

    def handle_group_update(self, instance: Instance, data: Any):
        for group in _items(data, "groups"):
            print_info(f"Grupo {group.get('id')} atualizado: {group.get('subject')}")

    # --- Dispatcher ---
    async def process_event(self, instance: Instance, event: str, data: Any) -> str:
        """Processa o evento e avisa a sala da organização. Erros sobem (o webhook responde 500)."""
        event_type = normalize_event_name(event)
        organization_id = instance.organization_id

        if event_type == "CONNECTION_UPDATE":
            self.handle_connection_update(instance, data or {})
            await manager.broadcast(organization_id, "instance-status", {
                "instanceId": instance.id, "status": instance.status, "qrCode": instance.qr_code
            })
        elif event_type == "QRCODE_UPDATED":
            self.handle_qrcode_updated(instance, data or {})
            await manager.broadcast(organization_id, "instance-status", {
                "instanceId": instance.id, "status": instance.status, "qrCode": instance.qr_code
            })
        elif event_type in ("MESSAGES_UPSERT", "SEND_MESSAGE"):
            for message in self.handle_messages_upsert(instance, data):
                await manager.broadcast(organization_id, "new-message", {
                    "message": dump(MessageOut, message),
                    "conversationId": message.conversation_id,
                    "contact": dump(ContactBrief, message.contact),
                })
        elif event_type == "MESSAGES_UPDATE":
            for message in self.handle_messages_update(instance, data):
                await manager.broadcast(organization_id, "message-status", {
                    "messageId": message.id, "conversationId": message.conversation_id, "status": message.status
                })
        elif event_type in ("CONTACTS_UPDATE", "CONTACTS_UPSERT"):
            self.handle_contacts_update(instance, data)
        elif event_type in ("GROUP_UPDATE", "GROUPS_UPDATE"):
            self.handle_group_update(instance, data)
        else:
            print_info(f"Evento não processado: {event_type}")

        await manager.broadcast(organization_id, "evolution-event", {
            "event": event_type,
            "instance": instance.instance_name,
            "data": data,
        })
        return event_type


def build_webhook_url(instance_name: str) -> str:
    return f"{config.WEBHOOK_BASE_URL.rstrip('/')}/api/webhooks/evolution/{instance_name}"


async def configure_webhook(db: Session, instance: Instance) -> Dict[str, Any]:
    """Aponta o webhook da instância na Evolution para este backend."""
    webhook_url = build_webhook_url(instance.instance_name)
    print_info(f"🔗 Configurando webhook para {instance.instance_name}: {webhook_url}")
    client = get_evolution_client(db, instance.organization_id)
    try:
        data = await client.set_webhook(instance.instance_name, {
            "enabled": True,
            "url": webhook_url,
            "byEvents": False,
            "base64": False,
            "events": WEBHOOK_EVENTS,
        })
    except Exception as e:
        print_error(f"Erro ao configurar webhook para {instance.instance_name}: {e}")
        traceback.print_exc()
        raise
    print_success(f"Webhook configurado: {webhook_url}")
    return {"success": True, "url": webhook_url, "data": data}


async def check_webhook(db: Session, instance: Instance) -> Dict[str, Any]:
    client = get_evolution_client(db, instance.organization_id)
    data = await client.find_webhook(instance.instance_name)
    return {"success": True, "expectedUrl": build_webhook_url(instance.instance_name), "data": data}
