"""Per-repository app-server session registry and lifecycle arbitration."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .app_server import AppServerConfig, AppServerSession
from .models import (
    ManagerEvent,
    RepoEntry,
    RpcMessage,
    SessionCallbacks,
    SessionNotificationEvent,
    SessionRequestEvent,
    SessionStatus,
    SessionStatusEvent,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[RepoEntry, SessionCallbacks, AppServerConfig], AppServerSession]


class RepoNotFoundError(LookupError):
    """Raised when a repoId is not in the registry."""


def default_session_factory(
    repo: RepoEntry,
    callbacks: SessionCallbacks,
    config: AppServerConfig,
) -> AppServerSession:
    return AppServerSession(
        repo_id=repo.repo_id,
        working_dir=repo.path,
        config=config,
        callbacks=callbacks,
    )


class AppServerManager:
    """Owns the repoId -> session map and re-emits session events tagged by repo."""

    def __init__(
        self,
        registry,
        config: Optional[AppServerConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.registry = registry
        self.config = config or AppServerConfig()
        self.session_factory = session_factory or default_session_factory
        self.sessions: dict[str, AppServerSession] = {}
        self._starting: dict[str, asyncio.Task] = {}
        self._event_handlers: list[Callable[[ManagerEvent], Awaitable[None]]] = []

    def add_event_handler(self, handler: Callable[[ManagerEvent], Awaitable[None]]):
        """Register a handler for repo-tagged session events."""
        self._event_handlers.append(handler)

    async def init_all(self):
        """Start a session for every registered repo; failures are logged only."""
        for repo in await self.registry.list():
            try:
                await self.get_or_start(repo.repo_id)
            except Exception as e:
                logger.error(f"Failed to start app-server for repo {repo.repo_id}: {e}")

    async def get_or_start(self, repo_id: str) -> AppServerSession:
        """Return a connected session for the repo, spawning one if needed."""
        repo = await self.registry.get(repo_id)
        if not repo:
            raise RepoNotFoundError(f"Repository not found: {repo_id}")

        # A replacement already in flight (stale stop + fresh spawn) is joined
        in_flight = self._starting.get(repo_id)
        if in_flight:
            return await asyncio.shield(in_flight)

        existing = self.sessions.get(repo_id)
        if existing:
            if existing.status == SessionStatus.CONNECTED:
                return existing
            if existing.status == SessionStatus.STARTING:
                await existing.wait_for_connected()
                return existing

        task = asyncio.create_task(self._replace_and_start(repo, existing))
        self._starting[repo_id] = task
        task.add_done_callback(lambda done: self._forget_start(repo_id, done))
        return await asyncio.shield(task)

    async def _replace_and_start(self, repo: RepoEntry, stale: Optional[AppServerSession]) -> AppServerSession:
        repo_id = repo.repo_id
        if stale:
            # Stale (stopped/error) session: discard before a fresh spawn
            await stale.stop()
            if self.sessions.get(repo_id) is stale:
                del self.sessions[repo_id]

        session = self.session_factory(repo, self._callbacks_for(repo_id), self.config)
        self.sessions[repo_id] = session
        await session.start()
        return session

    def _forget_start(self, repo_id: str, task: asyncio.Task):
        if self._starting.get(repo_id) is task:
            del self._starting[repo_id]

    def get_session(self, repo_id: str) -> Optional[AppServerSession]:
        return self.sessions.get(repo_id)

    def get_status(self, repo_id: str) -> SessionStatus:
        session = self.sessions.get(repo_id)
        return session.status if session else SessionStatus.STOPPED

    async def stop(self, repo_id: str):
        """Stop and forget the repo's session; always publishes a stopped status."""
        repo = await self.registry.get(repo_id)
        if not repo:
            raise RepoNotFoundError(f"Repository not found: {repo_id}")

        session = self.sessions.pop(repo_id, None)
        if session:
            await session.stop()
        await self._emit(SessionStatusEvent(repo_id=repo_id, status=SessionStatus.STOPPED))

    async def stop_all(self):
        """Stop every session one at a time."""
        for repo_id, session in list(self.sessions.items()):
            try:
                await session.stop()
            except Exception as e:
                logger.error(f"Failed to stop app-server for repo {repo_id}: {e}")
            if self.sessions.get(repo_id) is session:
                del self.sessions[repo_id]

    async def send_response(self, repo_id: str, message: RpcMessage):
        session = self.sessions.get(repo_id)
        if not session:
            logger.warning(f"Dropping app-server response for repo {repo_id}: no session")
            return
        await session.send_response(message)

    def _callbacks_for(self, repo_id: str) -> SessionCallbacks:
        async def on_notification(message: RpcMessage):
            await self._emit(SessionNotificationEvent(repo_id=repo_id, message=message))

        async def on_request(message: RpcMessage):
            await self._emit(SessionRequestEvent(repo_id=repo_id, message=message))

        async def on_status(status: SessionStatus):
            await self._emit(SessionStatusEvent(repo_id=repo_id, status=status))

        return SessionCallbacks(
            on_notification=on_notification,
            on_request=on_request,
            on_status=on_status,
        )

    async def _emit(self, event: ManagerEvent):
        for handler in self._event_handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Manager event handler failed for repo {event.repo_id}")
