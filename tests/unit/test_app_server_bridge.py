"""Unit tests for AppServerBridge event routing."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from codexdock.app_server_bridge import AppServerBridge
from codexdock.models import (
    SessionNotificationEvent,
    SessionRequestEvent,
    SessionStatus,
    SessionStatusEvent,
    TurnStatus,
)
from codexdock.turn_state import TurnStateStore


@pytest.fixture
def gateway():
    mock = MagicMock()
    mock.broadcast_to_repo = AsyncMock()
    return mock


@pytest.fixture
def refresher():
    return MagicMock()


@pytest.fixture
def bridge(gateway, refresher):
    return AppServerBridge(
        manager=MagicMock(),
        gateway=gateway,
        turn_state=TurnStateStore(),
        refresher=refresher,
    )


class TestAppServerBridge:

    def test_init_registers_handler(self, bridge):
        bridge.init()
        bridge.manager.add_event_handler.assert_called_once_with(bridge.handle_event)

    @pytest.mark.asyncio
    async def test_notification_is_forwarded_verbatim(self, bridge, gateway, refresher):
        message = {"method": "item/agentMessage/delta", "params": {"delta": "hi"}}

        await bridge.handle_event(SessionNotificationEvent(repo_id="repo_a", message=message))

        gateway.broadcast_to_repo.assert_awaited_once_with("repo_a", {
            "type": "app_server_notification",
            "payload": {"repoId": "repo_a", "message": message},
        })
        refresher.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_turn_started_updates_turn_state(self, bridge):
        message = {"method": "turn/started", "params": {"turn": {"id": "t1"}}}

        await bridge.handle_event(SessionNotificationEvent(repo_id="repo_a", message=message))

        assert bridge.turn_state.get("repo_a", "t1") == TurnStatus.RUNNING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["turn/completed", "turn/failed"])
    async def test_terminal_turn_schedules_refresh(self, bridge, refresher, method):
        message = {"method": method, "params": {"turnId": "t1"}}

        await bridge.handle_event(SessionNotificationEvent(repo_id="repo_a", message=message))

        refresher.schedule.assert_called_once_with("repo_a")
        assert bridge.turn_state.get("repo_a", "t1") != TurnStatus.RUNNING

    @pytest.mark.asyncio
    async def test_server_request_is_forwarded(self, bridge, gateway):
        message = {"id": 7, "method": "item/commandExecution/requestApproval", "params": {}}

        await bridge.handle_event(SessionRequestEvent(repo_id="repo_a", message=message))

        gateway.broadcast_to_repo.assert_awaited_once_with("repo_a", {
            "type": "app_server_request",
            "payload": {"repoId": "repo_a", "message": message},
        })

    @pytest.mark.asyncio
    async def test_status_is_forwarded(self, bridge, gateway):
        await bridge.handle_event(SessionStatusEvent(repo_id="repo_a", status=SessionStatus.ERROR))

        gateway.broadcast_to_repo.assert_awaited_once_with("repo_a", {
            "type": "session_status",
            "payload": {"repoId": "repo_a", "status": "error"},
        })

    @pytest.mark.asyncio
    async def test_events_forwarded_in_arrival_order(self, bridge, gateway):
        first = {"method": "a"}
        second = {"method": "b"}

        await bridge.handle_event(SessionNotificationEvent(repo_id="repo_a", message=first))
        await bridge.handle_event(SessionNotificationEvent(repo_id="repo_a", message=second))

        sent = [call.args[1]["payload"]["message"] for call in gateway.broadcast_to_repo.await_args_list]
        assert sent == [first, second]
