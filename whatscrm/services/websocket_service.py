# Em whatscrm/services/websocket_service.py
from typing import Dict, Any

from sqlalchemy.orm import Session

from whatscrm.core.database import Instance
from whatscrm.core.shared import print_info, print_error
from whatscrm.services.evolution_client import get_evolution_client
from whatscrm.services.webhook_service import WEBHOOK_EVENTS


async def configure_websocket(db: Session, instance: Instance) -> Dict[str, Any]:
    """Liga o WebSocket da Evolution para a instância (mesmos eventos do webhook)."""
    client = get_evolution_client(db, instance.organization_id)
    print_info(f"Configurando WebSocket na Evolution para {instance.instance_name}")
    try:
        return await client.set_websocket(instance.instance_name, {
            "enabled": True,
            "events": WEBHOOK_EVENTS,
        })
    except Exception as e:
        print_error(f"Erro ao configurar WebSocket para {instance.instance_name}: {e}")
        raise


async def check_websocket(db: Session, instance: Instance) -> Dict[str, Any]:
    client = get_evolution_client(db, instance.organization_id)
    return await client.find_websocket(instance.instance_name)
