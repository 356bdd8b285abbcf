"""
WS /ws -- realtime gateway for riders and drivers.

The caller's identity comes from the auth gateway headers (``X-User-Id``,
``X-User-Role``) or, for clients that cannot set websocket headers, the
``user_id`` / ``role`` query parameters.  Each inbound command gets one
``<type>_confirmed`` / ``<type>_failed`` reply; server events arrive as
``{"type": event, "data": {...}}`` at any time.
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.api.dependencies import parse_identity
from src.domain.enums import Role
from src.realtime.commands import CommandHandler
from src.realtime.sessions import WebSocketSession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    identity = parse_identity(
        websocket.headers.get("x-user-id") or websocket.query_params.get("user_id"),
        websocket.headers.get("x-user-role") or websocket.query_params.get("role"),
    )
    if identity is None:
        await websocket.close(code=1008)
        return

    services = websocket.app.state.services
    handler = CommandHandler(services)
    session = WebSocketSession(websocket, identity)

    await websocket.accept()
    services.registry.register(session.key, session)
    if identity.role is Role.DRIVER:
        services.presence.on_connect(identity.id)
    logger.info("Session %s connected as %s", session.id, session.key)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await session.send({"type": "error", "data": {"message": "Invalid JSON"}})
                continue
            await session.send(await handler.handle(session, message))
    except (WebSocketDisconnect, ConnectionError):
        pass
    finally:
        services.channel.drop(session)
        if services.registry.unregister(session.key, session):
            if identity.role is Role.DRIVER:
                services.presence.on_disconnect(identity.id)
        logger.info("Session %s disconnected", session.id)
