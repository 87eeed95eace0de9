"""Wires manager events into turn state, thread-list refresh and the gateway."""

import logging

from .models import ManagerEvent, SessionNotificationEvent, SessionRequestEvent, SessionStatusEvent
from .turn_state import TURN_COMPLETED, TURN_FAILED

logger = logging.getLogger(__name__)

REFRESH_TRIGGER_METHODS = frozenset({TURN_COMPLETED, TURN_FAILED})


class AppServerBridge:
    """Forwards every repo-tagged session event to subscribers, in order."""

    def __init__(self, manager, gateway, turn_state, refresher):
        self.manager = manager
        self.gateway = gateway
        self.turn_state = turn_state
        self.refresher = refresher

    def init(self):
        self.manager.add_event_handler(self.handle_event)
        logger.info("App-server bridge ready")

    async def handle_event(self, event: ManagerEvent):
        if isinstance(event, SessionNotificationEvent):
            await self._handle_notification(event)
        elif isinstance(event, SessionRequestEvent):
            await self.gateway.broadcast_to_repo(event.repo_id, {
                "type": "app_server_request",
                "payload": {"repoId": event.repo_id, "message": event.message},
            })
        elif isinstance(event, SessionStatusEvent):
            await self.gateway.broadcast_to_repo(event.repo_id, {
                "type": "session_status",
                "payload": {"repoId": event.repo_id, "status": event.status.value},
            })

    async def _handle_notification(self, event: SessionNotificationEvent):
        self.turn_state.update_from_notification(event.repo_id, event.message)
        if event.message.get("method") in REFRESH_TRIGGER_METHODS:
            self.refresher.schedule(event.repo_id)
        await self.gateway.broadcast_to_repo(event.repo_id, {
            "type": "app_server_notification",
            "payload": {"repoId": event.repo_id, "message": event.message},
        })
