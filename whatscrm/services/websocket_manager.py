# Em whatscrm/services/websocket_manager.py
from typing import Dict, List, Any

from fastapi import WebSocket

from whatscrm.core.shared import print_info, print_warning


def org_room(organization_id: str) -> str:
    return f"org-{organization_id}"


class ConnectionManager:
    def __init__(self):
        # Conexões agrupadas por sala da organização
        # Formato: { "org-<id>": [websocket1, websocket2] }
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, organization_id: str, websocket: WebSocket):
        """ Aceita e coloca a conexão na sala da organização. """
        await websocket.accept()
        self.join(organization_id, websocket)

    def join(self, organization_id: str, websocket: WebSocket):
        room = org_room(organization_id)
        connections = self.active_connections.setdefault(room, [])
        if websocket not in connections:
            connections.append(websocket)
        print_info(f"Cliente entrou na sala {room} ({len(connections)} conexões)")

    def disconnect(self, organization_id: str, websocket: WebSocket):
        """ Remove a conexão da sala. """
        room = org_room(organization_id)
        connections = self.active_connections.get(room)
        if connections and websocket in connections:
            connections.remove(websocket)
            print_info(f"Cliente saiu da sala {room}")
            if not connections:
                del self.active_connections[room]

    def room_size(self, organization_id: str) -> int:
        return len(self.active_connections.get(org_room(organization_id), []))

    async def broadcast(self, organization_id: str, event: str, data: Any):
        """ Envia {event, data} para todas as conexões da organização. """
        room = org_room(organization_id)
        broken = []
        for connection in list(self.active_connections.get(room, [])):
            try:
                await connection.send_json({"event": event, "data": data})
            except Exception as e:
                print_warning(f"Erro ao enviar para {room}: {e}")
                broken.append(connection)
        for connection in broken:
            self.disconnect(organization_id, connection)


# Instância global do gerenciador
manager = ConnectionManager()
