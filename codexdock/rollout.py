"""Last user/assistant message timestamp from a thread's JSONL rollout file."""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

USER_INSTRUCTIONS_PREFIX = "# AGENTS.md instructions for "
USER_INSTRUCTIONS_OPEN_TAG_LEGACY = "<user_instructions>"
SKILL_INSTRUCTIONS_PREFIX = "<skill"
ENVIRONMENT_CONTEXT_OPEN_TAG = "<environment_context>"
TURN_ABORTED_OPEN_TAG = "<turn_aborted>"
USER_SHELL_COMMAND_OPEN_TAG = "<user_shell_command>"


@dataclass
class _CacheEntry:
    mtime_ns: int
    last_message_at: Optional[str]


_cache: dict[str, _CacheEntry] = {}


def _is_session_prefix(text: str) -> bool:
    lowered = text.lstrip().lower()
    return lowered.startswith(ENVIRONMENT_CONTEXT_OPEN_TAG) or lowered.startswith(TURN_ABORTED_OPEN_TAG)


def _single_input_text(content: list) -> Optional[str]:
    if len(content) != 1 or not isinstance(content[0], dict):
        return None
    item = content[0]
    if item.get("type") != "input_text" or not isinstance(item.get("text"), str):
        return None
    return item["text"]


def _is_injected_user_message(content: list) -> bool:
    """Instruction blocks and context prefixes the CLI injects as user messages."""
    single = _single_input_text(content)
    if single is not None and single.startswith(
        (USER_INSTRUCTIONS_PREFIX, USER_INSTRUCTIONS_OPEN_TAG_LEGACY, SKILL_INSTRUCTIONS_PREFIX)
    ):
        return True

    for entry in content:
        if not isinstance(entry, dict) or not isinstance(entry.get("text"), str):
            continue
        text = entry["text"]
        if entry.get("type") == "input_text":
            if _is_session_prefix(text) or text.lstrip().lower().startswith(USER_SHELL_COMMAND_OPEN_TAG):
                return True
        elif entry.get("type") == "output_text" and _is_session_prefix(text):
            return True
    return False


def _message_timestamp(record: Any) -> Optional[str]:
    if not isinstance(record, dict) or record.get("type") != "response_item":
        return None
    timestamp = record.get("timestamp")
    payload = record.get("payload")
    if not isinstance(timestamp, str) or not isinstance(payload, dict):
        return None
    if payload.get("type") != "message":
        return None
    role = payload.get("role")
    content = payload.get("content")
    if role not in ("user", "assistant") or not isinstance(content, list):
        return None
    if role == "user" and _is_injected_user_message(content):
        return None
    return timestamp


def scan_last_message_at(path: Path) -> Optional[str]:
    last_message_at = None
    with open(path, encoding="utf-8", errors="replace") as f:
        for raw_line in f:
            line = raw_line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            timestamp = _message_timestamp(record)
            if timestamp:
                last_message_at = timestamp
    return last_message_at


def _cached_scan(path: Path) -> Optional[str]:
    try:
        mtime_ns = path.stat().st_mtime_ns
    except OSError:
        return None
    key = str(path)
    cached = _cache.get(key)
    if cached and cached.mtime_ns == mtime_ns:
        return cached.last_message_at
    try:
        last_message_at = scan_last_message_at(path)
    except OSError as e:
        logger.warning(f"Failed to read rollout {path}: {e}")
        return None
    _cache[key] = _CacheEntry(mtime_ns=mtime_ns, last_message_at=last_message_at)
    return last_message_at


async def get_last_message_at(path: Optional[str]) -> Optional[str]:
    """Timestamp of the last real conversation message, cached by file mtime."""
    if not path:
        return None
    return await asyncio.to_thread(_cached_scan, Path(path))
