"""
WebSocket endpoint for real-time token updates.
"""

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.logging_config import create_logger
from ..services.broadcaster import BroadcastService

logger = create_logger(__name__)

router = APIRouter()


async def handle_message(broadcaster: BroadcastService, client_id: str, raw: str) -> None:
    """Apply one inbound client message."""
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        await broadcaster.send_event(client_id, "error", {"message": "Invalid JSON"})
        return

    if not isinstance(message, dict):
        await broadcaster.send_event(client_id, "error", {"message": "Message must be an object"})
        return

    message_type = message.get("type")

    if message_type == "ping":
        await broadcaster.send_event(client_id, "pong", None)
        return

    if message_type in ("subscribe", "unsubscribe"):
        addresses = message.get("addresses")
        if not isinstance(addresses, list) or not all(isinstance(a, str) for a in addresses):
            await broadcaster.send_event(client_id, "error", {"message": "addresses must be a list of strings"})
            return

        _, unknown = broadcaster.resolve_addresses(addresses)
        if unknown:
            await broadcaster.send_event(client_id, "error", {
                "message": "Unknown token addresses",
                "addresses": unknown
            })
            return

        if message_type == "subscribe":
            subscriptions = broadcaster.subscribe(client_id, addresses)
        else:
            subscriptions = broadcaster.unsubscribe(client_id, addresses)

        await broadcaster.send_event(client_id, "subscription_ack", {
            "action": message_type,
            "subscriptions": subscriptions
        })
        return

    await broadcaster.send_event(client_id, "error", {"message": f"Unknown message type: {message_type}"})


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    broadcaster: BroadcastService = websocket.app.state.broadcaster
    client_id = await broadcaster.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            await handle_message(broadcaster, client_id, data)
    except WebSocketDisconnect:
        logger.debug("WebSocket closed by client", extra={"client_id": client_id})
    finally:
        broadcaster.disconnect(client_id)
