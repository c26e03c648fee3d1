import json
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from ..auth import user_from_token
from ..errors import Unauthenticated
from ..ws_manager import manager

router = APIRouter()

@router.websocket('/realtime')
async def realtime_ws(websocket: WebSocket, token: str = Query(None)):
    try:
        user = user_from_token(token)
    except Unauthenticated:
        await websocket.close(code=1008)
        return
    session = await manager.connect(user['id'], websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                session.push({'type': 'error', 'error': 'validation_error', 'detail': 'Invalid JSON'})
                continue
            await manager.handle(session, data)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(session)
