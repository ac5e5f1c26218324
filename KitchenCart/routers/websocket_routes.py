"""
WebSocket routes for two-factor prompts
"""

import json
import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from KitchenCart.exceptions import KitchenCartException
from KitchenCart.services.system.two_factor_service import get_two_factor_service
from KitchenCart.services.system.websocket_service import TWO_FACTOR_CHANNEL, websocket_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/two-factor/{user_id}")
async def websocket_two_factor_endpoint(websocket: WebSocket, user_id: str):
    """Per-user channel: receives two_fa_required and code_result, accepts submit_code and cancel"""
    try:
        await websocket_manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id)

        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                await handle_two_factor_message(websocket, message, user_id)
            except json.JSONDecodeError:
                await websocket_manager.send_to_connection(websocket, {
                    "type": "error",
                    "message": "Invalid JSON format"
                })
            except KitchenCartException as e:
                await websocket_manager.send_to_connection(websocket, {
                    "type": "error",
                    "message": e.message
                })
            except Exception as e:
                logger.error(f"Error handling two-factor WebSocket message: {e}")
                await websocket_manager.send_to_connection(websocket, {
                    "type": "error",
                    "message": "Internal server error"
                })

    except WebSocketDisconnect:
        websocket_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"Two-factor WebSocket error: {e}")
        websocket_manager.disconnect(websocket)


async def handle_two_factor_message(websocket: WebSocket, message: dict, user_id: str):
    """Handle messages from a two-factor client"""
    message_type = message.get("type")
    identifier = message.get("sessionToken") or message.get("requestId")

    if message_type == "ping":
        await websocket_manager.send_to_connection(websocket, {"type": "pong"})

    elif message_type == "submit_code":
        if not identifier:
            await websocket_manager.send_to_connection(websocket, {
                "type": "error", "message": "sessionToken or requestId is required"
            })
            return
        result = await get_two_factor_service().submit_two_factor_code(
            identifier, message.get("code", ""), user_id=user_id
        )
        await websocket_manager.send_to_connection(websocket, {
            "type": "code_submitted",
            "success": result["success"],
            "canRetry": result["can_retry"],
            "attemptsRemaining": result["attempts_remaining"],
            **({"error": result["error"]} if "error" in result else {}),
        })

    elif message_type == "cancel":
        if not identifier:
            await websocket_manager.send_to_connection(websocket, {
                "type": "error", "message": "sessionToken or requestId is required"
            })
            return
        result = await get_two_factor_service().cancel(identifier, user_id=user_id)
        await websocket_manager.send_to_connection(websocket, {
            "type": "cancelled",
            "success": result["success"],
            **({"error": result["error"]} if "error" in result else {}),
        })

    else:
        await websocket_manager.send_to_connection(websocket, {
            "type": "error",
            "message": f"Unknown message type: {message_type}"
        })
