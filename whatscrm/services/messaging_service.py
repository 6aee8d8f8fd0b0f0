# Em whatscrm/services/messaging_service.py
"""
Camada de serviço de mensagens: busca/cria contato e conversa e envia texto pela Evolution.
Usada pelas rotas de mensagens, pelas campanhas, pelas ações do kanban e pelo webhook.
"""
from typing import Optional

from fastapi import Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from whatscrm.core.database import (
    get_db, utcnow, Contact, Conversation, Instance, Message,
    ConversationStatus, InstanceStatus, MessageDirection, MessageStatus, MessageType
)
from whatscrm.core.errors import ServiceError
from whatscrm.core.shared import clean_phone, print_info, print_success, print_warning
from whatscrm.services.evolution_client import get_evolution_client


class MessagingService:
    def __init__(self, db: Session = Depends(get_db)):
        self.db = db

    # --- Contato / Conversa ---

    def find_or_create_contact(self, organization_id: str, phone: str, name: Optional[str] = None) -> Contact:
        contact = self.db.query(Contact).filter(
            Contact.organization_id == organization_id,
            Contact.phone_number == phone
        ).first()

        if contact is None:
            contact = Contact(
                organization_id=organization_id,
                phone_number=phone,
                name=name or f"Contato {phone}",
                tags=[],
            )
            self.db.add(contact)
            self.db.flush()
            print_info(f"👤 Novo contato {phone} na organização {organization_id}")

        contact.last_interaction = utcnow()
        return contact

    def find_or_create_conversation(
            self,
            organization_id: str,
            contact: Contact,
            instance_id: Optional[str],
            created_by_id: Optional[str] = None,
            conversation_id: Optional[str] = None
    ) -> Conversation:
        conversation = None
        if conversation_id:
            conversation = self.db.query(Conversation).filter(
                Conversation.id == conversation_id,
                Conversation.organization_id == organization_id,
                Conversation.contact_id == contact.id
            ).first()

        if conversation is None:
            query = self.db.query(Conversation).filter(
                Conversation.organization_id == organization_id,
                Conversation.contact_id == contact.id,
                Conversation.status != ConversationStatus.CLOSED.value
            )
            if instance_id:
                query = query.filter(Conversation.instance_id == instance_id)
            conversation = query.order_by(Conversation.created_at.desc()).first()

        if conversation is None:
            conversation = Conversation(
                organization_id=organization_id,
                contact_id=contact.id,
                instance_id=instance_id,
                created_by_id=created_by_id,
                title=f"Conversa com {contact.name or contact.phone_number}",
                status=ConversationStatus.OPEN.value,
                tags=[],
            )
            self.db.add(conversation)
            self.db.flush()
        return conversation

    # --- Instância ---

    def get_connected_instance(self, organization_id: str, instance_id: str) -> Instance:
        instance = self.db.query(Instance).filter(
            Instance.id == instance_id,
            Instance.organization_id == organization_id,
            Instance.status == InstanceStatus.CONNECTED.value
        ).first()
        if instance is None:
            raise ServiceError(400, "Instância não encontrada ou não conectada")
        return instance

    # --- Envio ---

    async def send_text(
            self,
            instance: Instance,
            phone_number: str,
            content: str,
            sent_by_id: Optional[str] = None,
            conversation_id: Optional[str] = None,
            message_type: str = MessageType.TEXT.value,
            media_url: Optional[str] = None,
            contact_name: Optional[str] = None
    ) -> Message:
        """
        Envia o texto pela Evolution e grava a mensagem OUTBOUND.
        Contato e conversa são gravados antes do envio; se a Evolution falhar a mensagem
        não é gravada (EvolutionAPIError sobe para quem chamou).
        """
        organization_id = instance.organization_id
        phone = clean_phone(phone_number)
        if not phone:
            raise ServiceError(400, "Número de telefone inválido")

        client = get_evolution_client(self.db, organization_id)

        contact = self.find_or_create_contact(organization_id, phone, contact_name)
        conversation = self.find_or_create_conversation(
            organization_id, contact, instance.id, sent_by_id, conversation_id
        )
        # Nenhuma transação fica aberta enquanto a Evolution responde
        self.db.commit()
        contact_id, conversation_id = contact.id, conversation.id

        print_info(f"📤 Enviando mensagem para {phone} via instância {instance.instance_name}")
        response = await client.send_text(instance.instance_name, f"{phone}@s.whatsapp.net", content)

        key = response.get("key") if isinstance(response, dict) else None
        external_id = (key or {}).get("id")
        now = utcnow()
        existing = self._message_by_external_id(organization_id, external_id)
        if existing is not None:
            print_info(f"Mensagem {external_id} já registrada pelo eco da Evolution")
            return existing

        message = Message(
            organization_id=organization_id,
            conversation_id=conversation_id,
            contact_id=contact_id,
            instance_id=instance.id,
            sent_by_id=sent_by_id,
            content=content,
            type=message_type,
            direction=MessageDirection.OUTBOUND.value,
            status=MessageStatus.SENT.value,
            media_url=media_url,
            external_id=external_id,
            message_metadata=response if isinstance(response, dict) else {},
        )
        self.db.add(message)
        conversation.last_message_at = now
        contact.last_interaction = now
        try:
            self.db.commit()
        except IntegrityError:
            # O eco (webhook ou socket) gravou a mesma mensagem durante o envio
            self.db.rollback()
            existing = self._message_by_external_id(organization_id, external_id)
            if existing is None:
                raise
            print_warning(f"Mensagem {external_id} gravada pelo eco da Evolution, reaproveitando")
            return existing
        self.db.refresh(message)

        print_success(f"Mensagem {message.id} enviada para {phone}")
        return message

    def _message_by_external_id(self, organization_id: str, external_id: Optional[str]) -> Optional[Message]:
        if not external_id:
            return None
        return self.db.query(Message).filter(
            Message.organization_id == organization_id,
            Message.external_id == external_id
        ).first()

    def schedule_text(
            self,
            instance: Instance,
            phone_number: str,
            content: str,
            scheduled_at,
            sent_by_id: Optional[str] = None
    ) -> Message:
        """Grava uma mensagem PENDING com metadata.scheduledAt (nada é despachado automaticamente)."""
        organization_id = instance.organization_id
        phone = clean_phone(phone_number)
        contact = self.find_or_create_contact(organization_id, phone)
        conversation = self.find_or_create_conversation(organization_id, contact, instance.id, sent_by_id)

        message = Message(
            organization_id=organization_id,
            conversation_id=conversation.id,
            contact_id=contact.id,
            instance_id=instance.id,
            sent_by_id=sent_by_id,
            content=content,
            type=MessageType.TEXT.value,
            direction=MessageDirection.OUTBOUND.value,
            status=MessageStatus.PENDING.value,
            message_metadata={"scheduledAt": scheduled_at.isoformat(), "phoneNumber": phone},
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message


# --- Função Fábrica (Factory) ---
def get_messaging_service(
    service: MessagingService = Depends(MessagingService)
) -> MessagingService:
    return service
