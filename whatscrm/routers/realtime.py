# Em whatscrm/routers/realtime.py
import json

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from whatscrm.core import security
from whatscrm.core.database import SessionLocal
from whatscrm.core.shared import print_error, print_info
from whatscrm.services.websocket_manager import manager

router = APIRouter(
    tags=["WebSocket"]
)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Canal de tempo real do front. Autentica pelo ?token= e entra na sala org-{organizationId}.
    """
    db = SessionLocal()
    try:
        user = security.authenticate_token(db, websocket.query_params.get("token"))
        organization_id, user_email = user.organization_id, user.email
    except HTTPException as e:
        print_info(f"WebSocket recusado: {e.detail}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        db.close()

    await manager.connect(organization_id, websocket)
    print_info(f"🔌 WebSocket conectado: {user_email}")
    try:
        while True:
            try:
                data = json.loads(await websocket.receive_text())
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        manager.disconnect(organization_id, websocket)
    except Exception as e:
        print_error(f"Erro no WebSocket de {user_email}: {e}")
        manager.disconnect(organization_id, websocket)
