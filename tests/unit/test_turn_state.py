"""Unit tests for turn-state projection from notifications."""

import pytest

from codexdock.models import TurnStatus
from codexdock.turn_state import TurnStateStore, get_turn_id


def notification(method, params):
    return {"method": method, "params": params}


class TestTurnIdExtraction:

    @pytest.mark.parametrize("params,expected", [
        ({"turn": {"id": "t1"}}, "t1"),
        ({"turnId": "t2"}, "t2"),
        ({"turn": {"turnId": "t3"}}, "t3"),
        ({"turn": {"id": 42}}, "42"),
        ({"turn": {"id": "first"}, "turnId": "second"}, "first"),
        ({"threadId": "th"}, None),
        (None, None),
        ("not a dict", None),
    ])
    def test_first_matching_shape_wins(self, params, expected):
        assert get_turn_id(notification("turn/started", params)) == expected


class TestTurnStateStore:

    def test_started_marks_running(self):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("turn/started", {"turn": {"id": "t1"}}))
        assert store.get("repo", "t1") == TurnStatus.RUNNING

    def test_completed_marks_completed(self):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("turn/started", {"turn": {"id": "t1"}}))
        store.update_from_notification("repo", notification("turn/completed", {"turn": {"id": "t1"}}))
        assert store.get("repo", "t1") == TurnStatus.COMPLETED

    @pytest.mark.parametrize("params", [
        {"turnId": "t1", "status": "interrupted"},
        {"turn": {"id": "t1", "status": "interrupted"}},
    ])
    def test_completed_with_interrupted_status(self, params):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("turn/completed", params))
        assert store.get("repo", "t1") == TurnStatus.INTERRUPTED

    def test_failed_marks_failed(self):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("turn/failed", {"turnId": "t1"}))
        assert store.get("repo", "t1") == TurnStatus.FAILED

    def test_last_write_wins(self):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("turn/completed", {"turnId": "t1"}))
        store.update_from_notification("repo", notification("turn/started", {"turnId": "t1"}))
        assert store.get("repo", "t1") == TurnStatus.RUNNING

    def test_other_methods_are_ignored(self):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("item/agentMessage/delta", {"turnId": "t1"}))
        assert store.get("repo", "t1") is None

    def test_missing_turn_id_is_ignored(self):
        store = TurnStateStore()
        store.update_from_notification("repo", notification("turn/started", {"threadId": "th"}))
        assert store._turns == {}

    def test_repos_are_isolated(self):
        store = TurnStateStore()
        store.update_from_notification("repo_a", notification("turn/started", {"turnId": "t1"}))
        assert store.get("repo_b", "t1") is None
        assert store.get("repo_a", "unknown") is None
