# Em whatscrm/routers/instances.py
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import (
    get_db, Campaign, Conversation, Instance, Message, User, InstanceStatus, UserRole
)
from whatscrm.core.errors import EvolutionAPIError
from whatscrm.core.shared import print_error, print_info, print_success, print_warning
from whatscrm.schemas import (
    dump, InstanceOut, InstanceCreateRequest, InstanceUpdateRequest, InstanceSettingsRequest
)
from whatscrm.services.evolution_client import (
    get_evolution_client, get_evolution_config, EvolutionClient, extract_qr_code, map_connection_state
)
from whatscrm.services.webhook_service import configure_webhook, check_webhook
from whatscrm.services.websocket_manager import manager

router = APIRouter(
    prefix="/instances",
    tags=["Instâncias"],
    dependencies=[Depends(security.get_current_user)]
)

require_admin = security.require_role(UserRole.ADMIN)

REMOTE_PREFIX = "evolution-"
BOOLEAN_SETTINGS = ("reject_call", "groups_ignore", "always_online", "read_messages", "sync_full_history", "read_status")


# --- Helpers ---

def _get_instance(db: Session, instance_id: str, organization_id: str) -> Instance:
    instance = db.query(Instance).filter(
        Instance.id == instance_id,
        Instance.organization_id == organization_id
    ).first()
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instância não encontrada")
    return instance


def _instance_payload(db: Session, instance: Instance) -> dict:
    data = dump(InstanceOut, instance)
    data["_count"] = {
        "conversations": db.query(Conversation).filter(Conversation.instance_id == instance.id).count(),
        "messages": db.query(Message).filter(Message.instance_id == instance.id).count(),
    }
    return data


def _remote_name(item: Dict[str, Any]) -> Optional[str]:
    # v2: {name, connectionStatus}; v1: {instance: {instanceName, status}}
    nested = item.get("instance") if isinstance(item.get("instance"), dict) else {}
    return item.get("name") or item.get("instanceName") or nested.get("instanceName")


def _remote_state(item: Dict[str, Any]) -> Optional[str]:
    nested = item.get("instance") if isinstance(item.get("instance"), dict) else {}
    return item.get("connectionStatus") or item.get("state") or nested.get("state") or nested.get("status")


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


async def _sync_instances(db: Session, client: EvolutionClient, organization_id: str) -> Tuple[int, List[dict]]:
    """Atualiza o status local a partir do fetchInstances. Retorna (atualizadas, só na Evolution)."""
    remote = await client.fetch_instances()
    local = {
        i.instance_name: i
        for i in db.query(Instance).filter(Instance.organization_id == organization_id).all()
    }
    # nomes usados por outras organizações não aparecem como "só na Evolution"
    taken = {name for (name,) in db.query(Instance.instance_name).all()}

    updated = 0
    remote_only = []
    for item in remote:
        if not isinstance(item, dict):
            continue
        name = _remote_name(item)
        if not name:
            continue
        mapped = map_connection_state(_remote_state(item))

        instance = local.get(name)
        if instance is not None:
            if mapped and instance.status != mapped:
                instance.status = mapped
                if mapped == InstanceStatus.CONNECTED.value:
                    instance.qr_code = None
                updated += 1
        elif name not in taken:
            remote_only.append({
                "id": f"{REMOTE_PREFIX}{name}",
                "name": name,
                "instanceName": name,
                "status": mapped or InstanceStatus.UNKNOWN.value,
                "organizationId": organization_id,
                "isFromEvolution": True,
            })

    if updated:
        db.commit()
    print_info(f"Sincronização com a Evolution: {updated} atualizadas, {len(remote_only)} só na Evolution")
    return updated, remote_only


async def _broadcast_status(instance: Instance):
    await manager.broadcast(instance.organization_id, "instance-status", {
        "instanceId": instance.id, "status": instance.status, "qrCode": instance.qr_code
    })


# --- Rotas com caminho fixo ---

@router.get("/", summary="Lista instâncias (sync=true consulta a Evolution)")
async def list_instances(
        sync: bool = Query(False),
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    organization_id = current_user.organization_id
    remote_only = []
    if sync and get_evolution_config(db, organization_id):
        try:
            _, remote_only = await _sync_instances(db, get_evolution_client(db, organization_id), organization_id)
        except EvolutionAPIError as e:
            print_warning(f"Não foi possível sincronizar com a Evolution: {e.detail}")

    instances = db.query(Instance).filter(
        Instance.organization_id == organization_id
    ).order_by(Instance.created_at.desc()).all()
    return [_instance_payload(db, i) for i in instances] + remote_only


@router.post("/sync")
async def sync_instances(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    client = get_evolution_client(db, current_user.organization_id)
    updated, remote_only = await _sync_instances(db, client, current_user.organization_id)
    return {"updated": updated, "remoteOnly": remote_only}


# --- CRUD ---

@router.get("/{instance_id}")
async def get_instance(
        instance_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    return _instance_payload(db, _get_instance(db, instance_id, current_user.organization_id))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_instance(
        body: InstanceCreateRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance_name = body.instance_name.strip()
    if db.query(Instance.id).filter(Instance.instance_name == instance_name).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Nome da instância já está em uso")

    client = get_evolution_client(db, current_user.organization_id)
    try:
        await client.create_instance(instance_name)
    except EvolutionAPIError as e:
        print_error(f"Erro ao criar instância {instance_name} na Evolution: {e.status_code} {e.detail}")
        if e.status_code == 409 or "already in use" in str(e.detail).lower():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Instância já existe na Evolution API")
        if e.status_code == 401:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="API Key inválida")
        if e.status_code == 400:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Dados inválidos para criação da instância: {e.detail}"
            )
        raise

    instance = Instance(
        name=body.name,
        instance_name=instance_name,
        description=body.description,
        status=InstanceStatus.DISCONNECTED.value,
        webhook_events=body.webhook_events or ["messages.upsert", "connection.update"],
        settings={},
        organization_id=current_user.organization_id,
    )
    db.add(instance)
    db.commit()
    db.refresh(instance)
    print_success(f"Instância {instance_name} criada por {current_user.email}")
    return _instance_payload(db, instance)


@router.put("/{instance_id}")
async def update_instance(
        instance_id: str,
        body: InstanceUpdateRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        if field == "name" and not value:
            continue
        setattr(instance, field, value)
    db.commit()
    db.refresh(instance)
    return _instance_payload(db, instance)


@router.delete("/{instance_id}")
async def delete_instance(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    organization_id = current_user.organization_id

    # Instância que só existe na Evolution (listada com sync=true)
    if instance_id.startswith(REMOTE_PREFIX):
        instance_name = instance_id[len(REMOTE_PREFIX):]
        # Nome com registro local (desta ou de outra organização) só sai pelo id real
        if db.query(Instance.id).filter(Instance.instance_name == instance_name).first():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Instância não encontrada")
        await get_evolution_client(db, organization_id).delete_instance(instance_name)
        print_info(f"Instância {instance_name} removida da Evolution por {current_user.email}")
        return {"message": "Instância removida da Evolution API"}

    instance = _get_instance(db, instance_id, organization_id)
    if get_evolution_config(db, organization_id):
        try:
            await get_evolution_client(db, organization_id).delete_instance(instance.instance_name)
        except EvolutionAPIError as e:
            print_warning(f"Evolution não removeu {instance.instance_name} ({e.status_code}): {e.detail}")

    # Histórico fica; só perde o vínculo com a instância
    for model in (Conversation, Message, Campaign):
        db.query(model).filter(model.instance_id == instance.id).update(
            {model.instance_id: None}, synchronize_session=False
        )
    db.delete(instance)
    db.commit()
    print_info(f"Instância {instance.instance_name} excluída por {current_user.email}")
    return {"message": "Instância excluída com sucesso"}


# --- Conexão ---

@router.post("/{instance_id}/connect")
async def connect_instance(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    client = get_evolution_client(db, current_user.organization_id)

    try:
        data = await client.connect(instance.instance_name)
    except EvolutionAPIError as e:
        instance.status = InstanceStatus.ERROR.value
        db.commit()
        await _broadcast_status(instance)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Erro ao conectar instância na Evolution API: {e.detail}"
        )

    data = data if isinstance(data, dict) else {}
    state = (data.get("instance") or {}).get("state") if isinstance(data.get("instance"), dict) else None
    qr_code = extract_qr_code(data, client.base_url)

    if map_connection_state(state) == InstanceStatus.CONNECTED.value:
        instance.status = InstanceStatus.CONNECTED.value
        instance.qr_code = None
    elif qr_code:
        instance.status = InstanceStatus.QRCODE.value
        instance.qr_code = qr_code
    else:
        instance.status = InstanceStatus.CONNECTING.value
    db.commit()
    await _broadcast_status(instance)

    return {
        "message": "QR Code gerado" if qr_code else "Conexão iniciada",
        "status": instance.status,
        "qrCode": instance.qr_code,
        "pairingCode": data.get("pairingCode"),
    }


@router.get("/{instance_id}/status")
async def instance_status(
        instance_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    data = await get_evolution_client(db, current_user.organization_id).connection_state(instance.instance_name)

    data = data if isinstance(data, dict) else {}
    nested = data.get("instance") if isinstance(data.get("instance"), dict) else {}
    state = nested.get("state") or data.get("state")
    new_status = map_connection_state(state, default=instance.status)

    if new_status != instance.status:
        instance.status = new_status
        if new_status == InstanceStatus.CONNECTED.value:
            instance.qr_code = None
        db.commit()
        await _broadcast_status(instance)
    return {"status": instance.status, "state": state}


@router.post("/{instance_id}/disconnect")
async def disconnect_instance(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    await get_evolution_client(db, current_user.organization_id).logout(instance.instance_name)

    instance.status = InstanceStatus.DISCONNECTED.value
    instance.qr_code = None
    db.commit()
    await _broadcast_status(instance)
    return {"message": "Instância desconectada com sucesso", "status": instance.status}


# --- Configurações na Evolution ---

@router.get("/{instance_id}/settings")
async def get_instance_settings(
        instance_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    settings = await get_evolution_client(db, current_user.organization_id).find_settings(instance.instance_name)
    return {"settings": settings, "instanceName": instance.instance_name}


@router.put("/{instance_id}/settings")
async def update_instance_settings(
        instance_id: str,
        body: InstanceSettingsRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    data = body.model_dump(exclude_none=True)
    for field in BOOLEAN_SETTINGS:
        if field in data:
            data[field] = _to_bool(data[field])
    payload = InstanceSettingsRequest(**data).model_dump(by_alias=True, exclude_none=True)

    client = get_evolution_client(db, current_user.organization_id)
    print_info(f"Atualizando configurações de {instance.instance_name}: {payload}")
    result = await client.set_settings(instance.instance_name, payload)

    instance.settings = {**(instance.settings or {}), **payload}
    db.commit()
    return {
        "message": "Configurações atualizadas com sucesso",
        "settings": result,
        "instanceName": instance.instance_name,
    }


@router.post("/{instance_id}/webhook")
async def set_instance_webhook(
        instance_id: str,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    return await configure_webhook(db, instance)


@router.get("/{instance_id}/webhook")
async def get_instance_webhook(
        instance_id: str,
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    instance = _get_instance(db, instance_id, current_user.organization_id)
    return await check_webhook(db, instance)
