"""WebSocket subscriber registry and per-repo fan-out."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .app_server import AppServerError
from .payloads import get_record, get_string

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """One live subscriber socket and the repos it is interested in."""
    id: str
    socket: Any
    subscribed: set[str] = field(default_factory=set)


class WebSocketGateway:
    """
    Tracks subscribers in both directions (repo -> connections and
    connection -> repos) so a disconnect clears only the sets it belongs to.
    """

    def __init__(self, registry, manager):
        self.registry = registry
        self.manager = manager
        self._connections: dict[str, Connection] = {}
        self._repo_subscribers: dict[str, set[str]] = {}
        self._counter = 0

    def subscribers(self, repo_id: str) -> set[str]:
        return set(self._repo_subscribers.get(repo_id, ()))

    async def handle_connection(self, websocket: WebSocket):
        """Serve one /ws client until it disconnects."""
        await websocket.accept()
        conn = self.register(websocket)
        try:
            while True:
                text = await websocket.receive_text()
                await self.handle_text(conn, text)
        except WebSocketDisconnect:
            pass
        finally:
            self.unregister(conn.id)

    def register(self, socket: Any) -> Connection:
        self._counter += 1
        conn = Connection(id=f"conn_{self._counter}", socket=socket)
        self._connections[conn.id] = conn
        logger.info(f"WebSocket connection opened: {conn.id}")
        return conn

    def unregister(self, connection_id: str):
        conn = self._connections.pop(connection_id, None)
        if not conn:
            return
        for repo_id in conn.subscribed:
            self._remove_subscriber(repo_id, connection_id)
        conn.subscribed.clear()
        logger.info(f"WebSocket connection closed: {connection_id}")

    async def broadcast_to_repo(self, repo_id: str, message: dict):
        for connection_id in list(self._repo_subscribers.get(repo_id, ())):
            conn = self._connections.get(connection_id)
            if conn:
                await self._send(conn, message)

    async def handle_text(self, conn: Connection, text: str):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Invalid WebSocket message from {conn.id}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"Invalid WebSocket message from {conn.id}")
            return

        message_type = get_string(payload, "type")
        if message_type == "subscribe":
            await self._handle_subscribe(conn, payload)
        elif message_type == "unsubscribe":
            await self._handle_unsubscribe(conn, payload)
        elif message_type == "app_server_response":
            await self._handle_app_server_response(conn, payload)
        else:
            logger.warning(f"Unknown WebSocket message type from {conn.id}: {message_type}")

    async def _handle_subscribe(self, conn: Connection, payload: dict):
        repo_id = get_string(get_record(payload, "payload"), "repoId")
        request_id = get_string(payload, "requestId")
        if not repo_id:
            await self._send(conn, self._reply(
                "subscribe_error",
                request_id,
                {"repoId": "", "error": {"code": "invalid_request", "message": "repoId missing"}},
            ))
            return

        repo = await self.registry.get(repo_id)
        if not repo:
            await self._send(conn, self._reply(
                "subscribe_error",
                request_id,
                {"repoId": repo_id, "error": {"code": "repo_not_found", "message": "repo not found"}},
            ))
            return

        conn.subscribed.add(repo_id)
        self._repo_subscribers.setdefault(repo_id, set()).add(conn.id)
        await self._send(conn, self._reply("subscribe_ack", request_id, {"repoId": repo_id}))
        await self._send(conn, {
            "type": "session_status",
            "payload": {"repoId": repo_id, "status": self.manager.get_status(repo_id).value},
        })

    async def _handle_unsubscribe(self, conn: Connection, payload: dict):
        repo_id = get_string(get_record(payload, "payload"), "repoId")
        request_id = get_string(payload, "requestId")
        if repo_id:
            conn.subscribed.discard(repo_id)
            self._remove_subscriber(repo_id, conn.id)
        await self._send(conn, self._reply("unsubscribe_ack", request_id, {"repoId": repo_id or ""}))

    async def _handle_app_server_response(self, conn: Connection, payload: dict):
        body = get_record(payload, "payload")
        repo_id = get_string(body, "repoId")
        message = get_record(body, "message")
        if not repo_id or message is None:
            logger.warning(f"Malformed app_server_response from {conn.id}")
            return
        try:
            await self.manager.send_response(repo_id, message)
        except AppServerError as e:
            logger.warning(f"Failed to forward app_server_response for repo {repo_id}: {e}")

    def _remove_subscriber(self, repo_id: str, connection_id: str):
        subscribers = self._repo_subscribers.get(repo_id)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._repo_subscribers[repo_id]

    @staticmethod
    def _reply(message_type: str, request_id: Optional[str], payload: dict) -> dict:
        reply: dict[str, Any] = {"type": message_type}
        if request_id is not None:
            reply["requestId"] = request_id
        reply["payload"] = payload
        return reply

    async def _send(self, conn: Connection, message: dict):
        try:
            await conn.socket.send_text(json.dumps(message))
        except Exception as e:
            logger.warning(f"Failed to send to WebSocket {conn.id}: {e}")
