"""Projection of turn lifecycle notifications into per-repo turn statuses."""

from __future__ import annotations

from typing import Any, Optional

from .models import RpcMessage, TurnStatus
from .payloads import first_match, get_id_string, get_record, get_string

TURN_STARTED = "turn/started"
TURN_COMPLETED = "turn/completed"
TURN_FAILED = "turn/failed"

# Ordered, first match wins; new payload shapes go at the end.
TURN_ID_RULES = (
    lambda params: get_id_string((get_record(params, "turn") or {}).get("id")),
    lambda params: get_id_string(params.get("turnId")) if isinstance(params, dict) else None,
    lambda params: get_id_string((get_record(params, "turn") or {}).get("turnId")),
)

COMPLETION_STATUS_RULES = (
    lambda params: get_string(params, "status"),
    lambda params: get_string(get_record(params, "turn"), "status"),
)


def get_turn_id(message: RpcMessage) -> Optional[str]:
    """Extract the turn id a notification refers to, if any."""
    return first_match(TURN_ID_RULES, message.get("params"))


class TurnStateStore:
    """repoId -> turnId -> TurnStatus; last write wins."""

    def __init__(self):
        self._turns: dict[str, dict[str, TurnStatus]] = {}

    def update_from_notification(self, repo_id: str, message: RpcMessage):
        turn_id = get_turn_id(message)
        if not turn_id:
            return

        method = message.get("method")
        params: Any = message.get("params")
        if method == TURN_STARTED:
            self._set(repo_id, turn_id, TurnStatus.RUNNING)
        elif method == TURN_COMPLETED:
            reported = first_match(COMPLETION_STATUS_RULES, params)
            status = TurnStatus.INTERRUPTED if reported == "interrupted" else TurnStatus.COMPLETED
            self._set(repo_id, turn_id, status)
        elif method == TURN_FAILED:
            self._set(repo_id, turn_id, TurnStatus.FAILED)

    def get(self, repo_id: str, turn_id: str) -> Optional[TurnStatus]:
        return self._turns.get(repo_id, {}).get(turn_id)

    def _set(self, repo_id: str, turn_id: str, status: TurnStatus):
        self._turns.setdefault(repo_id, {})[turn_id] = status
