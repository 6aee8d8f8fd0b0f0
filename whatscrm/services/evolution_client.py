# Em whatscrm/services/evolution_client.py
"""
Cliente HTTP da Evolution API (gateway do WhatsApp).

Cada organização guarda as próprias credenciais em organization.settings["evolution"];
as variáveis EVOLUTION_API_URL / EVOLUTION_API_KEY servem de fallback global.
"""
import re
from typing import Optional, Dict, Any, List

import httpx
from sqlalchemy.orm import Session

from whatscrm.core import config
from whatscrm.core.database import Organization, InstanceStatus
from whatscrm.core.errors import EvolutionAPIError, ServiceError
from whatscrm.core.shared import print_error, print_info

NOT_CONFIGURED_MSG = "Evolution API não configurada. Configure primeiro nas configurações do sistema."

# connectionState / fetchInstances -> status interno
CONNECTION_STATE_MAP = {
    "open": InstanceStatus.CONNECTED.value,
    "close": InstanceStatus.DISCONNECTED.value,
    "closed": InstanceStatus.DISCONNECTED.value,
    "connecting": InstanceStatus.CONNECTING.value,
}

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")


def map_connection_state(state: Optional[str], default: Optional[str] = None) -> Optional[str]:
    if not state:
        return default
    return CONNECTION_STATE_MAP.get(str(state).lower(), default)


def extract_qr_code(data: Dict[str, Any], base_url: str = "") -> Optional[str]:
    """
    A Evolution devolve o QR em chaves diferentes conforme a versão.
    Normaliza para data URL (base64) ou URL absoluta.
    """
    if not isinstance(data, dict):
        return None

    qr = None
    for key in ("base64", "qrcode", "qrCode", "qr", "qrcodeUrl", "qrUrl"):
        value = data.get(key)
        if isinstance(value, dict):
            value = value.get("base64") or value.get("code")
        if value:
            qr = str(value)
            break

    if not qr:
        return None
    if qr.startswith("data:") or qr.startswith("http"):
        return qr
    if _BASE64_RE.match(qr):
        return f"data:image/png;base64,{qr}"
    # URL relativa
    return f"{base_url}{'' if qr.startswith('/') else '/'}{qr}"


def get_evolution_config(db: Session, organization_id: str) -> Optional[Dict[str, str]]:
    organization = db.query(Organization).filter(Organization.id == organization_id).first()
    evolution = ((organization.settings or {}) if organization else {}).get("evolution") or {}

    base_url = evolution.get("baseUrl") or config.EVOLUTION_API_URL
    api_key = evolution.get("apiKey") or config.EVOLUTION_API_KEY
    if not base_url or not api_key:
        return None
    return {"baseUrl": base_url.rstrip("/"), "apiKey": api_key}


class EvolutionClient:
    def __init__(self, base_url: str, api_key: str, timeout: float = 20.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {"apikey": self.api_key, "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, json: Any = None, params: Dict[str, Any] = None):
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, headers=self.headers, json=json, params=params)
        except httpx.HTTPError as e:
            print_error(f"Falha de conexão com a Evolution API ({method} {path}): {e}")
            raise EvolutionAPIError(502, "Não foi possível conectar com a Evolution API")

        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text}

        if resp.status_code >= 400:
            raise EvolutionAPIError(resp.status_code, _error_detail(data, resp.text), payload=data)
        if isinstance(data, dict) and isinstance(data.get("error"), str):
            raise EvolutionAPIError(400, _error_detail(data, resp.text), payload=data)
        return data

    # --- Instâncias ---
    async def create_instance(self, instance_name: str) -> Dict[str, Any]:
        payload = {
            "instanceName": instance_name.strip(),
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS"
        }
        print_info(f"🔌 Criando instância '{instance_name}' na Evolution")
        return await self._request("POST", "/instance/create", json=payload)

    async def connect(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/instance/connect/{instance_name}")

    async def connection_state(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/instance/connectionState/{instance_name}")

    async def logout(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/instance/logout/{instance_name}")

    async def delete_instance(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/instance/delete/{instance_name}")

    async def fetch_instances(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/instance/fetchInstances")
        if isinstance(data, dict):
            data = data.get("instances") or data.get("data") or []
        return data if isinstance(data, list) else []

    # --- Mensagens ---
    async def send_text(self, instance_name: str, number: str, text: str) -> Dict[str, Any]:
        payload = {"number": number, "text": text}
        return await self._request("POST", f"/message/sendText/{instance_name}", json=payload)

    # --- Settings ---
    async def find_settings(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/settings/find/{instance_name}")

    async def set_settings(self, instance_name: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/settings/set/{instance_name}", json=settings)

    # --- Webhook / WebSocket ---
    async def set_webhook(self, instance_name: str, webhook: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/webhook/set/{instance_name}", json={"webhook": webhook})

    async def find_webhook(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/webhook/find/{instance_name}")

    async def set_websocket(self, instance_name: str, websocket: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/websocket/set/{instance_name}", json={"websocket": websocket})

    async def find_websocket(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("GET", f"/websocket/find/{instance_name}")


def _error_detail(data: Any, fallback: str) -> str:
    if isinstance(data, dict):
        response = data.get("response")
        if isinstance(response, dict) and response.get("message"):
            message = response["message"]
            return ", ".join(map(str, message)) if isinstance(message, list) else str(message)
        for key in ("message", "error"):
            if data.get(key):
                return str(data[key])
    return fallback or "Erro desconhecido na Evolution API"


def get_evolution_client(db: Session, organization_id: str) -> EvolutionClient:
    """Cliente da organização; 400 se a Evolution ainda não foi configurada."""
    evolution_config = get_evolution_config(db, organization_id)
    if not evolution_config:
        raise ServiceError(400, NOT_CONFIGURED_MSG)
    return EvolutionClient(evolution_config["baseUrl"], evolution_config["apiKey"])
