"""
Unit tests for the per-user two-factor WebSocket channel and its notifier.
"""

import json
from datetime import datetime

import pytest

from KitchenCart.models.two_factor_models import TwoFactorRequestModel, TwoFactorType
from KitchenCart.services.system.websocket_service import (
    TWO_FACTOR_CHANNEL,
    WebSocketManager,
    WebSocketTwoFactorNotifier,
    two_factor_payload,
)


class FakeWebSocket:
    def __init__(self, broken=False):
        self.accepted = False
        self.broken = broken
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    def messages(self, message_type):
        return [message for message in self.sent if message["type"] == message_type]


def make_request(**fields):
    fields.setdefault("user_id", "user-1")
    fields.setdefault("supplier_credential_id", "cred-1")
    fields.setdefault("two_fa_type", TwoFactorType.SMS)
    fields.setdefault("prompt_message", "Enter the code we texted you")
    fields.setdefault("expires_at", datetime(2026, 3, 2, 9, 35))
    return TwoFactorRequestModel(**fields)


@pytest.fixture
def manager():
    return WebSocketManager()


class TestWebSocketManager:

    @pytest.mark.asyncio
    async def test_connect_acknowledges(self, manager):
        websocket = FakeWebSocket()

        await manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id="user-1")

        assert websocket.accepted
        assert websocket.sent[0]["status"] == "connected"
        assert manager.user_connected("user-1")

    @pytest.mark.asyncio
    async def test_send_to_user_targets_only_that_user(self, manager):
        mine, theirs = FakeWebSocket(), FakeWebSocket()
        await manager.connect(mine, TWO_FACTOR_CHANNEL, user_id="user-1")
        await manager.connect(theirs, TWO_FACTOR_CHANNEL, user_id="user-2")

        delivered = await manager.send_to_user("user-1", {"type": "two_fa_required", "requestId": "req-1"})

        assert delivered == 1
        assert mine.messages("two_fa_required") == [{"type": "two_fa_required", "requestId": "req-1"}]
        assert theirs.messages("two_fa_required") == []

    @pytest.mark.asyncio
    async def test_broken_socket_dropped(self, manager):
        websocket = FakeWebSocket()
        await manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id="user-1")
        websocket.broken = True

        delivered = await manager.send_to_user("user-1", {"type": "ping"})

        assert delivered == 0
        assert not manager.user_connected("user-1")
        assert manager.get_connection_stats()["total_connections"] == 0

    @pytest.mark.asyncio
    async def test_code_result_omits_unset_fields(self, manager):
        websocket = FakeWebSocket()
        await manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id="user-1")

        await manager.broadcast_code_result("user-1", False, error="Invalid code", can_retry=True,
                                            attempts_remaining=2)
        await manager.broadcast_code_result("user-1", True)

        assert websocket.messages("code_result") == [
            {"type": "code_result", "success": False, "error": "Invalid code", "canRetry": True,
             "attemptsRemaining": 2},
            {"type": "code_result", "success": True},
        ]

    @pytest.mark.asyncio
    async def test_disconnect(self, manager):
        websocket = FakeWebSocket()
        await manager.connect(websocket, "general", user_id="user-1")

        manager.disconnect(websocket)

        assert manager.get_connection_stats() == {
            "total_connections": 0,
            "by_type": {TWO_FACTOR_CHANNEL: 0, "general": 0},
            "active_users": 0,
        }


class TestTwoFactorNotifier:

    def test_payload_shape(self):
        request = make_request()

        payload = two_factor_payload(request, "US Foods")

        assert payload == {
            "requestId": request.id,
            "sessionToken": request.session_token,
            "supplierName": "US Foods",
            "twoFaType": "sms",
            "promptMessage": "Enter the code we texted you",
            "expiresAt": "2026-03-02T09:35:00",
        }

    @pytest.mark.asyncio
    async def test_prompt_pushed_and_fallback_queued(self, manager):
        websocket = FakeWebSocket()
        await manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id="user-1")
        queued = []

        async def enqueue(user_id, payload):
            queued.append((user_id, payload))

        notifier = WebSocketTwoFactorNotifier(manager=manager, enqueue=enqueue)
        request = make_request()

        await notifier.two_factor_required(request, "US Foods")

        [prompt] = websocket.messages("two_fa_required")
        assert prompt["requestId"] == request.id
        assert queued[0][0] == "user-1"
        assert queued[0][1]["type"] == "two_fa_required"

    @pytest.mark.asyncio
    async def test_queue_failure_does_not_raise(self, manager):
        websocket = FakeWebSocket()
        await manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id="user-1")

        async def enqueue(user_id, payload):
            raise RuntimeError("task queue unavailable")

        notifier = WebSocketTwoFactorNotifier(manager=manager, enqueue=enqueue)

        await notifier.two_factor_required(make_request(), "US Foods")

        assert len(websocket.messages("two_fa_required")) == 1

    @pytest.mark.asyncio
    async def test_code_result_forwarded(self, manager):
        websocket = FakeWebSocket()
        await manager.connect(websocket, TWO_FACTOR_CHANNEL, user_id="user-1")
        notifier = WebSocketTwoFactorNotifier(manager=manager, enqueue=None)

        await notifier.code_result("user-1", "req-1", True)

        assert websocket.messages("code_result") == [{"type": "code_result", "success": True}]
