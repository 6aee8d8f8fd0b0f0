# Em whatscrm/routers/settings.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from whatscrm.core import security
from whatscrm.core.database import get_db, utcnow, User, UserRole
from whatscrm.core.errors import EvolutionAPIError
from whatscrm.core.shared import print_info, print_warning
from whatscrm.schemas import EvolutionSettingsRequest
from whatscrm.services.evolution_client import EvolutionClient, get_evolution_config

router = APIRouter(
    prefix="/settings",
    tags=["Configurações"],
    dependencies=[Depends(security.get_current_user)]
)

require_admin = security.require_role(UserRole.ADMIN)


def _stored_evolution(user: User) -> dict:
    return (user.organization.settings or {}).get("evolution") or {}


@router.get("/evolution")
async def get_evolution_settings(current_user: User = Depends(security.get_current_user)):
    evolution = _stored_evolution(current_user)
    return {
        "baseUrl": evolution.get("baseUrl") or "",
        "apiKey": "***" if evolution.get("apiKey") else "",
        "isConfigured": bool(evolution.get("baseUrl") and evolution.get("apiKey")),
        "updatedAt": evolution.get("updatedAt"),
    }


@router.post("/evolution")
async def save_evolution_settings(
        body: EvolutionSettingsRequest,
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    base_url = body.base_url.strip()
    if not base_url.startswith(("http://", "https://")):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="URL inválida (use http:// ou https://)")

    organization = current_user.organization
    evolution = {
        "baseUrl": base_url.rstrip("/"),
        "apiKey": body.api_key.strip(),
        "updatedAt": utcnow().isoformat(),
        "updatedBy": current_user.id,
    }
    # JSON só é persistido quando o dict é substituído
    organization.settings = {**(organization.settings or {}), "evolution": evolution}
    db.commit()
    print_info(f"Configuração da Evolution salva para {organization.name} por {current_user.email}")
    return {
        "message": "Configurações salvas com sucesso",
        "baseUrl": evolution["baseUrl"],
        "isConfigured": True,
        "updatedAt": evolution["updatedAt"],
    }


@router.get("/test-config")
async def test_config(current_user: User = Depends(security.get_current_user)):
    evolution = _stored_evolution(current_user)
    has_url = bool(evolution.get("baseUrl"))
    has_key = bool(evolution.get("apiKey"))
    return {
        "hasBaseUrl": has_url,
        "hasApiKey": has_key,
        "isConfigured": has_url and has_key,
        "baseUrl": evolution.get("baseUrl") or None,
    }


@router.get("/evolution/status")
async def evolution_status(
        current_user: User = Depends(security.get_current_user),
        db: Session = Depends(get_db)
):
    evolution_config = get_evolution_config(db, current_user.organization_id)
    if not evolution_config:
        return {"connected": False, "configured": False, "error": "Evolution API não configurada"}

    client = EvolutionClient(evolution_config["baseUrl"], evolution_config["apiKey"], timeout=10)
    try:
        instances = await client.fetch_instances()
    except EvolutionAPIError as e:
        print_warning(f"Evolution API indisponível para {current_user.organization.name}: {e.detail}")
        return {"connected": False, "configured": True, "error": e.detail, "statusCode": e.status_code}
    return {"connected": True, "configured": True, "instanceCount": len(instances)}


@router.delete("/evolution")
async def delete_evolution_settings(
        current_user: User = Depends(require_admin),
        db: Session = Depends(get_db)
):
    organization = current_user.organization
    settings = dict(organization.settings or {})
    settings.pop("evolution", None)
    organization.settings = settings
    db.commit()
    return {"message": "Configurações da Evolution removidas"}
