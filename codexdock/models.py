"""Data models for CodexDock."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union


class SessionStatus(Enum):
    """App-server session lifecycle status."""
    STOPPED = "stopped"
    STARTING = "starting"
    CONNECTED = "connected"
    ERROR = "error"


class TurnStatus(Enum):
    """Turn lifecycle status as observed from notifications."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class RepoEntry:
    """A registered repository (workspace) that gets its own app-server."""
    repo_id: str
    name: str
    path: str
    last_opened_thread_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "repoId": self.repo_id,
            "name": self.name,
            "path": self.path,
        }
        if self.last_opened_thread_id:
            data["lastOpenedThreadId"] = self.last_opened_thread_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RepoEntry":
        return cls(
            repo_id=data["repoId"],
            name=data.get("name", data["repoId"]),
            path=data["path"],
            last_opened_thread_id=data.get("lastOpenedThreadId"),
        )


@dataclass
class ThreadSummary:
    """Normalized thread list entry; timestamps are canonical ISO strings."""
    thread_id: str
    cwd: Optional[str] = None
    preview: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_message_at: Optional[str] = None
    path: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"threadId": self.thread_id}
        optional = {
            "cwd": self.cwd,
            "preview": self.preview,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastMessageAt": self.last_message_at,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


# Raw JSON-RPC frames stay plain dicts:
#   request      {"id", "method", "params"}
#   notification {"method", "params"}
#   response     {"id", "result"} | {"id", "error"}
RpcMessage = dict[str, Any]


@dataclass
class SessionCallbacks:
    """Typed event interface a session reports through."""
    on_notification: Callable[[RpcMessage], Awaitable[None]]
    on_request: Callable[[RpcMessage], Awaitable[None]]
    on_status: Callable[[SessionStatus], Awaitable[None]]


@dataclass
class SessionNotificationEvent:
    repo_id: str
    message: RpcMessage


@dataclass
class SessionRequestEvent:
    repo_id: str
    message: RpcMessage


@dataclass
class SessionStatusEvent:
    repo_id: str
    status: SessionStatus


ManagerEvent = Union[SessionNotificationEvent, SessionRequestEvent, SessionStatusEvent]
