# Em whatscrm/routers/websockets.py
"""Liga/desliga o listener Socket.IO da Evolution por instância."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, Instance, User, UserRole
from whatscrm.core.errors import EvolutionAPIError
from whatscrm.core.shared import print_warning
from whatscrm.services.evolution_socket_manager import evolution_socket_manager
from whatscrm.services.websocket_service import configure_websocket, check_websocket

require_admin = security.require_role(UserRole.ADMIN)

router = APIRouter(
    prefix="/websockets",
    tags=["WebSocket Evolution"],
    dependencies=[Depends(require_admin)]
)


def _get_instance(db: Session, instance_id: str, organization_id: str) -> Instance:
    instance = db.query(Instance).filter(
        Instance.id == instance_id,
        Instance.organization_id == organization_id
    ).first()
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instância não encontrada")
    return instance


@router.post("/{instance_id}/configure")
async def configure(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    evolution = await configure_websocket(db, instance)
    connection = await evolution_socket_manager.connect_instance(
        instance.instance_name, instance.organization_id, db
    )
    return {
        "message": "WebSocket configurado",
        "instanceName": instance.instance_name,
        "evolution": evolution,
        "connection": connection,
    }


@router.get("/{instance_id}/status")
async def websocket_status(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    try:
        evolution = await check_websocket(db, instance)
    except EvolutionAPIError as e:
        print_warning(f"Não foi possível consultar o WebSocket de {instance.instance_name}: {e.detail}")
        evolution = None

    enabled = bool(isinstance(evolution, dict) and (evolution.get("enabled") or (evolution.get("websocket") or {}).get("enabled")))
    return {
        "instanceName": instance.instance_name,
        "configured": enabled,
        "connected": evolution_socket_manager.is_connected(instance.instance_name),
        "socket": evolution_socket_manager.get_status(instance.instance_name),
        "evolution": evolution,
    }


@router.post("/{instance_id}/disconnect")
async def disconnect(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    await evolution_socket_manager.disconnect_instance(instance.instance_name)
    return {"message": "WebSocket desconectado", "instanceName": instance.instance_name}
