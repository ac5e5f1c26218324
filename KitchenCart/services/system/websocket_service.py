"""
WebSocket service for two-factor prompts and code results
"""

import json
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Set, Any, Optional
from fastapi import WebSocket
from datetime import datetime

from KitchenCart.models.two_factor_models import TwoFactorRequestModel, TwoFactorType
from KitchenCart.suppliers.two_factor import TwoFactorNotifier

logger = logging.getLogger(__name__)

TWO_FACTOR_CHANNEL = "two_factor"


class WebSocketManager:
    """Manages WebSocket connections for real-time updates"""

    def __init__(self):
        # Store active connections by connection type
        self.connections: Dict[str, Set[WebSocket]] = {
            TWO_FACTOR_CHANNEL: set(),  # Per-user verification prompts
            "general": set(),
        }
        self.connection_info: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, connection_type: str = "general", user_id: str = None):
        """Connect a new WebSocket client"""
        await websocket.accept()

        if connection_type not in self.connections:
            self.connections[connection_type] = set()

        self.connections[connection_type].add(websocket)
        self.connection_info[websocket] = {
            "type": connection_type,
            "user_id": user_id,
            "connected_at": datetime.utcnow(),
            "last_ping": datetime.utcnow(),
        }

        logger.info(f"WebSocket connected: {connection_type} (user: {user_id})")

        await self.send_to_connection(
            websocket,
            {
                "type": "connection",
                "status": "connected",
                "connection_type": connection_type,
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    def disconnect(self, websocket: WebSocket):
        """Disconnect a WebSocket client"""
        connection_info = self.connection_info.get(websocket, {})
        connection_type = connection_info.get("type", "unknown")
        user_id = connection_info.get("user_id", "unknown")

        for conn_set in self.connections.values():
            conn_set.discard(websocket)

        self.connection_info.pop(websocket, None)

        logger.info(f"WebSocket disconnected: {connection_type} (user: {user_id})")

    async def send_to_connection(self, websocket: WebSocket, message: Dict[str, Any]) -> bool:
        """Send message to a specific connection"""
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except Exception as e:
            logger.error(f"Failed to send message to WebSocket: {e}")
            self.disconnect(websocket)
            return False

    async def broadcast_to_type(self, connection_type: str, message: Dict[str, Any]):
        """Broadcast message to all connections of a specific type"""
        if connection_type not in self.connections:
            return

        disconnected = set()
        for websocket in self.connections[connection_type].copy():
            try:
                await websocket.send_text(json.dumps(message, default=str))
            except Exception as e:
                logger.error(f"Failed to broadcast to WebSocket: {e}")
                disconnected.add(websocket)

        for websocket in disconnected:
            self.disconnect(websocket)

    async def send_to_user(self, user_id: str, message: Dict[str, Any],
                           connection_type: str = TWO_FACTOR_CHANNEL) -> int:
        """Send to every connection of connection_type opened by user_id. Returns how many received it."""
        delivered = 0
        for websocket in self.connections.get(connection_type, set()).copy():
            if self.connection_info.get(websocket, {}).get("user_id") != user_id:
                continue
            if await self.send_to_connection(websocket, message):
                delivered += 1
        return delivered

    def user_connected(self, user_id: str, connection_type: str = TWO_FACTOR_CHANNEL) -> bool:
        return any(
            self.connection_info.get(ws, {}).get("user_id") == user_id
            for ws in self.connections.get(connection_type, set())
        )

    async def broadcast_two_factor_required(self, user_id: str, payload: Dict[str, Any]) -> int:
        message = {"type": "two_fa_required", **payload}
        delivered = await self.send_to_user(user_id, message)
        logger.info(f"Two-factor prompt {payload.get('requestId')} pushed to {delivered} connection(s) for {user_id}")
        return delivered

    async def broadcast_code_result(self, user_id: str, success: bool, error: Optional[str] = None,
                                    can_retry: Optional[bool] = None,
                                    attempts_remaining: Optional[int] = None) -> int:
        message: Dict[str, Any] = {"type": "code_result", "success": success}
        if error is not None:
            message["error"] = error
        if can_retry is not None:
            message["canRetry"] = can_retry
        if attempts_remaining is not None:
            message["attemptsRemaining"] = attempts_remaining
        return await self.send_to_user(user_id, message)

    async def ping_connections(self):
        """Send ping to all connections to keep them alive"""
        ping_message = {"type": "ping", "timestamp": datetime.utcnow().isoformat()}

        for connection_type in self.connections:
            await self.broadcast_to_type(connection_type, ping_message)

    def get_connection_stats(self) -> Dict[str, Any]:
        """Get connection statistics"""
        stats = {
            "total_connections": sum(len(conns) for conns in self.connections.values()),
            "by_type": {conn_type: len(conns) for conn_type, conns in self.connections.items()},
            "active_users": len(
                set(info.get("user_id") for info in self.connection_info.values() if info.get("user_id"))
            ),
        }
        return stats


def two_factor_payload(request: TwoFactorRequestModel, supplier_name: str) -> Dict[str, Any]:
    """The two_fa_required message body, without its type key."""
    return {
        "requestId": request.id,
        "sessionToken": request.session_token,
        "supplierName": supplier_name,
        "twoFaType": TwoFactorType(request.two_fa_type).value,
        "promptMessage": request.prompt_message,
        "expiresAt": request.expires_at.isoformat(),
    }


NotificationEnqueuer = Callable[[str, Dict[str, Any]], Awaitable[Any]]


async def enqueue_notification_task(user_id: str, payload: Dict[str, Any]):
    """Queue the out-of-band fallback message for a two-factor prompt."""
    # Deferred: loading the task service pulls in every task module
    from KitchenCart.services.system.task_service import create_two_factor_notification_task

    return await create_two_factor_notification_task(user_id, payload)


class WebSocketTwoFactorNotifier(TwoFactorNotifier):
    """
    Default notifier: push over the per-user WebSocket channel and queue a
    fallback notification job so a user without the app open still hears
    about the prompt.
    """

    def __init__(self, manager: Optional[WebSocketManager] = None,
                 enqueue: Optional[NotificationEnqueuer] = enqueue_notification_task):
        self.manager = manager or websocket_manager
        self.enqueue = enqueue

    async def two_factor_required(self, request: TwoFactorRequestModel, supplier_name: str):
        payload = two_factor_payload(request, supplier_name)
        await self.manager.broadcast_two_factor_required(request.user_id, payload)

        if self.enqueue is None:
            return
        try:
            await self.enqueue(request.user_id, {"type": "two_fa_required", **payload})
        except Exception as e:
            # Socket push already happened; a queue failure only logs
            logger.error(f"Failed to queue fallback notification for request {request.id}: {e}")

    async def code_result(self, user_id: str, request_id: str, success: bool, error: Optional[str] = None,
                          can_retry: Optional[bool] = None, attempts_remaining: Optional[int] = None):
        await self.manager.broadcast_code_result(
            user_id, success, error=error, can_retry=can_retry, attempts_remaining=attempts_remaining
        )


# Global WebSocket manager instance
websocket_manager = WebSocketManager()


async def start_ping_task():
    """Start background task to ping connections periodically"""
    while True:
        try:
            await websocket_manager.ping_connections()
            await asyncio.sleep(30)
        except Exception as e:
            logger.error(f"Error in ping task: {e}")
            await asyncio.sleep(5)
