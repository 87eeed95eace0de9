"""Debounced thread-list refresh and broadcast."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .models import SessionStatus, ThreadSummary
from .payloads import first_match, get_array, get_id_string, get_string, to_timestamp
from .rollout import get_last_message_at

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_DELAY_SECONDS = 0.6

THREAD_LIST_RULES = (
    lambda result: get_array(result, "threads"),
    lambda result: get_array(result, "items"),
    lambda result: get_array(result, "data"),
)

THREAD_ID_RULES = (
    lambda record: get_id_string(record.get("id")),
    lambda record: get_id_string(record.get("threadId")),
)

LastMessageLookup = Callable[[Optional[str]], Awaitable[Optional[str]]]


def normalize_thread(item: Any) -> Optional[ThreadSummary]:
    """Normalize one thread/list entry; None when no id can be resolved."""
    if not isinstance(item, dict):
        return None
    thread_id = first_match(THREAD_ID_RULES, item)
    if not thread_id:
        return None
    created_at = to_timestamp(item.get("createdAt"))
    return ThreadSummary(
        thread_id=thread_id,
        cwd=get_string(item, "cwd"),
        preview=get_string(item, "preview"),
        created_at=created_at,
        updated_at=to_timestamp(item.get("updatedAt")) or created_at,
        last_message_at=to_timestamp(item.get("lastMessageAt")),
        path=get_string(item, "path"),
    )


def normalize_thread_list(result: Any) -> list[ThreadSummary]:
    threads = first_match(THREAD_LIST_RULES, result) or []
    normalized = (normalize_thread(item) for item in threads)
    return [thread for thread in normalized if thread is not None]


class ThreadListRefresher:
    """
    Coalesces turn-completion bursts into one thread/list pull per repo.

    Timers live in a per-repo registry; a repo with an armed timer ignores
    further schedule() calls until the timer fires.
    """

    def __init__(
        self,
        manager,
        gateway,
        delay_seconds: float = DEFAULT_REFRESH_DELAY_SECONDS,
        last_message_lookup: Optional[LastMessageLookup] = get_last_message_at,
    ):
        self.manager = manager
        self.gateway = gateway
        self.delay_seconds = delay_seconds
        self.last_message_lookup = last_message_lookup
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_scheduled(self, repo_id: str) -> bool:
        return repo_id in self._pending

    def schedule(self, repo_id: str, delay: Optional[float] = None):
        if repo_id in self._pending:
            return
        delay = self.delay_seconds if delay is None else delay
        loop = asyncio.get_running_loop()
        self._pending[repo_id] = loop.call_later(delay, self._fire, repo_id)

    def cancel(self, repo_id: str):
        handle = self._pending.pop(repo_id, None)
        if handle:
            handle.cancel()

    def close(self):
        """Cancel every armed timer and in-flight refresh."""
        for repo_id in list(self._pending):
            self.cancel(repo_id)
        for task in list(self._tasks):
            task.cancel()

    async def aclose(self):
        """Cancel like close() and wait for in-flight refreshes to unwind."""
        tasks = list(self._tasks)
        self.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _fire(self, repo_id: str):
        self._pending.pop(repo_id, None)
        task = asyncio.create_task(self.refresh(repo_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def refresh(self, repo_id: str):
        try:
            session = self.manager.get_session(repo_id)
            if not session or session.status != SessionStatus.CONNECTED:
                return
            result = await session.request("thread/list")
            threads = normalize_thread_list(result)
            if self.last_message_lookup:
                for thread in threads:
                    if thread.path:
                        looked_up = await self.last_message_lookup(thread.path)
                        thread.last_message_at = to_timestamp(looked_up) or thread.last_message_at
            await self.gateway.broadcast_to_repo(repo_id, {
                "type": "thread_list_updated",
                "payload": {
                    "repoId": repo_id,
                    "threads": [thread.to_dict() for thread in threads],
                },
            })
        except Exception as e:
            logger.warning(f"Thread list refresh failed for repo {repo_id}: {e}")
