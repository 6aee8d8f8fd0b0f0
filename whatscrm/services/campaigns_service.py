# Em whatscrm/services/campaigns_service.py
"""
Camada de serviço das campanhas: personalização do template e disparo sequencial.
"""
import asyncio
import traceback
from typing import Dict, Any, List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from whatscrm.core import config
from whatscrm.core.database import (
    get_db, utcnow, Campaign, Contact, Instance, CampaignStatus, InstanceStatus
)
from whatscrm.core.errors import ServiceError
from whatscrm.core.shared import clean_phone, print_error, print_info, print_success
from whatscrm.services.evolution_client import get_evolution_client
from whatscrm.services.messaging_service import MessagingService

EXECUTABLE_STATUSES = (CampaignStatus.DRAFT.value, CampaignStatus.SCHEDULED.value)


def personalize_message(template: str, contact: Optional[Contact], phone: Optional[str] = None) -> str:
    """Substitui {{nome}}, {{telefone}}, {{email}} e {{empresa}} pelos dados do contato (ou pelo número alvo)."""
    name = getattr(contact, "name", None)
    phone = getattr(contact, "phone_number", None) or phone
    email = getattr(contact, "email", None)
    company = getattr(contact, "company", None)
    return (
        (template or "")
        .replace("{{nome}}", name or "Cliente")
        .replace("{{telefone}}", phone or "")
        .replace("{{email}}", email or "")
        .replace("{{empresa}}", company or "")
    )


class CampaignsService:
    def __init__(self, db: Session = Depends(get_db)):
        self.db = db
        self.messaging = MessagingService(db)

    def _instance_for(self, campaign: Campaign) -> Instance:
        if not campaign.instance_id:
            raise ServiceError(400, "Campanha sem instância definida")
        instance = self.db.query(Instance).filter(
            Instance.id == campaign.instance_id,
            Instance.organization_id == campaign.organization_id
        ).first()
        if instance is None or instance.status != InstanceStatus.CONNECTED.value:
            raise ServiceError(400, "Instância não encontrada ou não conectada")
        return instance

    async def execute(self, campaign: Campaign) -> Dict[str, Any]:
        if campaign.status not in EXECUTABLE_STATUSES:
            raise ServiceError(400, "Campanha não pode ser executada")

        instance = self._instance_for(campaign)
        # Falha cedo se a Evolution não estiver configurada
        get_evolution_client(self.db, campaign.organization_id)

        campaign.status = CampaignStatus.RUNNING.value
        self.db.commit()
        print_info(f"🚀 Executando campanha {campaign.id} ({len(campaign.target_contacts or [])} contatos)")

        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        targets = [p for p in (campaign.target_contacts or []) if clean_phone(p)]

        for index, raw_phone in enumerate(targets):
            phone = clean_phone(raw_phone)
            contact = self.db.query(Contact).filter(
                Contact.organization_id == campaign.organization_id,
                Contact.phone_number == phone
            ).first()
            content = personalize_message(campaign.message_template, contact, phone)
            try:
                message = await self.messaging.send_text(
                    instance, phone, content, sent_by_id=campaign.created_by_id
                )
                message.message_metadata = {**(message.message_metadata or {}), "campaignId": campaign.id}
                self.db.commit()
                results.append({"phoneNumber": phone, "messageId": message.id, "success": True})
            except Exception as e:
                self.db.rollback()
                print_error(f"Erro ao enviar mensagem da campanha para {phone}: {e}")
                traceback.print_exc()
                errors.append({"phoneNumber": phone, "error": getattr(e, "detail", str(e))})

            if index < len(targets) - 1:
                await asyncio.sleep(config.BULK_SEND_DELAY_SECONDS)

        campaign.status = CampaignStatus.COMPLETED.value
        campaign.sent_count = len(results)
        campaign.delivered_count = len(results)
        campaign.sent_at = utcnow()
        self.db.commit()
        self.db.refresh(campaign)

        print_success(f"Campanha {campaign.id} concluída: {len(results)} enviadas, {len(errors)} falhas")
        return {"campaign": campaign, "results": results, "errors": errors}

    def cancel(self, campaign: Campaign) -> Campaign:
        if campaign.status not in EXECUTABLE_STATUSES:
            raise ServiceError(400, "Apenas campanhas em rascunho ou agendadas podem ser canceladas")
        campaign.status = CampaignStatus.CANCELLED.value
        self.db.commit()
        self.db.refresh(campaign)
        return campaign


# --- Função Fábrica (Factory) ---
def get_campaigns_service(
    service: CampaignsService = Depends(CampaignsService)
) -> CampaignsService:
    return service
