# Em whatscrm/services/evolution_socket_manager.py
"""
Listener Socket.IO da Evolution API.

Em paralelo ao webhook HTTP, o backend pode se conectar ao namespace /{instanceName}
da Evolution e receber os mesmos eventos. Tudo é processado pelo WebhookService,
então uma mensagem que chega pelos dois caminhos é gravada uma vez só.
"""
import traceback
from typing import Dict, Any, Optional

import socketio

from whatscrm.core.database import SessionLocal, Instance
from whatscrm.core.errors import ServiceError
from whatscrm.core.shared import print_info, print_warning, print_error, print_success
from whatscrm.services.evolution_client import get_evolution_config, NOT_CONFIGURED_MSG
from whatscrm.services.webhook_service import WebhookService, normalize_event_name


class EvolutionSocketManager:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        # instanceName -> cliente Socket.IO
        self.instance_sockets: Dict[str, socketio.AsyncClient] = {}
        self.urls: Dict[str, str] = {}

    def is_connected(self, instance_name: str) -> bool:
        sio = self.instance_sockets.get(instance_name)
        return bool(sio and sio.connected)

    def get_status(self, instance_name: str) -> Dict[str, Any]:
        sio = self.instance_sockets.get(instance_name)
        if sio is None:
            return {"connected": False}
        return {
            "connected": sio.connected,
            "id": sio.get_sid(f"/{instance_name}") if sio.connected else None,
            "url": self.urls.get(instance_name),
        }

    async def handle_event(self, instance_name: str, event: str, data: Any) -> Optional[str]:
        """Processa um evento do socket como se tivesse chegado pelo webhook."""
        event_type = normalize_event_name(event)
        print_info(f"WS Evolution evento recebido ({instance_name}): {event} -> {event_type}")

        db = self.session_factory()
        try:
            instance = db.query(Instance).filter(Instance.instance_name == instance_name).first()
            if instance is None:
                print_warning(f"Instância {instance_name} não existe mais, ignorando evento {event_type}")
                return None
            return await WebhookService(db).process_event(instance, event_type, data)
        except Exception as e:
            # O socket não tem reentrega: registra e segue
            db.rollback()
            print_error(f"Erro ao processar evento WS Evolution ({instance_name}): {e}")
            traceback.print_exc()
            return None
        finally:
            db.close()

    def _build_client(self, instance_name: str) -> socketio.AsyncClient:
        namespace = f"/{instance_name}"
        sio = socketio.AsyncClient(reconnection=True)

        async def on_connect():
            print_success(f"WS Evolution conectado ({instance_name})")

        async def on_disconnect(*args):
            print_warning(f"WS Evolution desconectado ({instance_name})")

        async def on_any(event, data=None):
            await self.handle_event(instance_name, event, data)

        sio.on("connect", on_connect, namespace=namespace)
        sio.on("disconnect", on_disconnect, namespace=namespace)
        sio.on("*", on_any, namespace=namespace)
        return sio

    async def connect_instance(self, instance_name: str, organization_id: str, db) -> Dict[str, Any]:
        evolution_config = get_evolution_config(db, organization_id)
        if not evolution_config:
            raise ServiceError(400, NOT_CONFIGURED_MSG)

        if self.is_connected(instance_name):
            print_info(f"WS já conectado para {instance_name}")
            return self.get_status(instance_name)

        base_url = evolution_config["baseUrl"]
        self.urls[instance_name] = f"{base_url}/{instance_name}"
        print_info(f"Conectando ao WebSocket Evolution: {self.urls[instance_name]}")

        sio = self._build_client(instance_name)
        self.instance_sockets[instance_name] = sio
        try:
            await sio.connect(
                base_url,
                headers={"apikey": evolution_config["apiKey"]},
                transports=["websocket"],
                namespaces=[f"/{instance_name}"],
                wait_timeout=3,
            )
        except socketio.exceptions.ConnectionError as e:
            print_error(f"Falha ao conectar no WS da Evolution ({instance_name}): {e}")
        return self.get_status(instance_name)

    async def disconnect_instance(self, instance_name: str) -> Dict[str, Any]:
        sio = self.instance_sockets.pop(instance_name, None)
        self.urls.pop(instance_name, None)
        if sio is not None:
            await sio.disconnect()
            print_info(f"WS Evolution desconectado e removido ({instance_name})")
        return {"connected": False}

    async def disconnect_all(self):
        for instance_name in list(self.instance_sockets):
            await self.disconnect_instance(instance_name)


# Instância global
evolution_socket_manager = EvolutionSocketManager()
