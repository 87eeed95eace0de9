"""Codex app-server integration (line-framed JSON-RPC over stdio)."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import RpcMessage, SessionCallbacks, SessionStatus
from .payloads import is_rpc_id

logger = logging.getLogger(__name__)


@dataclass
class AppServerConfig:
    """Configuration for app-server sessions."""
    command: str = "codex"
    args: list[str] = field(default_factory=lambda: ["app-server"])
    request_timeout_seconds: float = 60
    connect_timeout_seconds: float = 15
    stop_grace_seconds: float = 0.2
    max_line_bytes: int = 16 * 1024 * 1024
    client_name: str = "CodexDock"
    client_title: Optional[str] = "CodexDock"
    client_version: str = "0.1.0"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AppServerConfig":
        data = data or {}
        defaults = cls()
        return cls(
            command=data.get("command", defaults.command),
            args=list(data.get("args", defaults.args)),
            request_timeout_seconds=data.get("request_timeout_seconds", defaults.request_timeout_seconds),
            connect_timeout_seconds=data.get("connect_timeout_seconds", defaults.connect_timeout_seconds),
            stop_grace_seconds=data.get("stop_grace_seconds", defaults.stop_grace_seconds),
            max_line_bytes=data.get("max_line_bytes", defaults.max_line_bytes),
            client_name=data.get("client_name", defaults.client_name),
            client_title=data.get("client_title", defaults.client_title),
            client_version=data.get("client_version", defaults.client_version),
        )


class AppServerError(RuntimeError):
    """Raised for app-server process and protocol errors."""


class AppServerRpcError(AppServerError):
    """The app-server answered a request with an error payload."""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class RpcTimeoutError(AppServerError):
    """No response arrived within the request timeout."""


class SessionConnectTimeout(AppServerError):
    """A starting session did not connect within the wait window."""


def _error_message(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return "RPC error"


class AppServerSession:
    """
    Owns one app-server subprocess for one repository.

    Status moves stopped -> starting -> connected once the initialize
    handshake completes. Process exit or spawn failure moves it to stopped
    (clean exit or signal) or error, and fails every pending request.
    """

    def __init__(
        self,
        repo_id: str,
        working_dir: str,
        config: AppServerConfig,
        callbacks: SessionCallbacks,
    ):
        self.repo_id = repo_id
        self.working_dir = working_dir
        self.config = config
        self.callbacks = callbacks
        self.status = SessionStatus.STOPPED

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._id_counter = 0
        self._connect_waiters: list[asyncio.Future] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self):
        """Spawn the app-server and run the initialize handshake."""
        if self.status in (SessionStatus.STARTING, SessionStatus.CONNECTED):
            return

        await self._set_status(SessionStatus.STARTING)
        cmd = [self.config.command, *self.config.args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.working_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.config.max_line_bytes,
            )
        except OSError as e:
            logger.error(f"Failed to spawn app-server for repo {self.repo_id}: {e}")
            await self._set_status(SessionStatus.ERROR)
            raise AppServerError(f"Failed to spawn app-server: {e}") from e

        self._proc = proc
        logger.info(f"App-server spawned for repo {self.repo_id} (pid={proc.pid})")
        self._reader_task = asyncio.create_task(self._read_loop(proc))
        self._stderr_task = asyncio.create_task(self._read_stderr(proc))

        await self._initialize()
        await self._set_status(SessionStatus.CONNECTED)

    async def stop(self):
        """Terminate the app-server; escalate to SIGKILL after the grace window."""
        proc = self._proc
        if not proc:
            await self._set_status(SessionStatus.STOPPED)
            return

        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        await asyncio.sleep(self.config.stop_grace_seconds)
        if self.status != SessionStatus.STOPPED and proc.returncode is None:
            logger.warning(f"App-server for repo {self.repo_id} ignored SIGTERM, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                pass

        reader = self._reader_task
        if reader and not reader.done():
            try:
                await asyncio.wait_for(asyncio.shield(reader), timeout=3)
            except asyncio.TimeoutError:
                logger.warning(f"App-server for repo {self.repo_id} did not close stdout after kill")
        if self._proc is proc:
            # Exit was never observed by the reader; release the handle here.
            await self._release(proc, SessionStatus.STOPPED, "App server stopped")

    async def request(self, method: str, params: Any = None) -> Any:
        """Send a request and wait for its result (or error, or timeout)."""
        self._id_counter += 1
        request_id = self._id_counter
        key = str(request_id)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[key] = fut

        msg = {"id": request_id, "method": method, "params": {} if params is None else params}
        try:
            await self._send(msg)
            return await asyncio.wait_for(fut, timeout=self.config.request_timeout_seconds)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(f"RPC timeout: {method}") from None
        finally:
            self._pending.pop(key, None)

    async def notify(self, method: str, params: Any = None):
        await self._send({"method": method, "params": {} if params is None else params})

    async def send_response(self, message: RpcMessage):
        """Answer a request the app-server issued."""
        await self._send(message)

    async def wait_for_connected(self, timeout: Optional[float] = None):
        """Block until connected; fail on error/stopped or after the timeout."""
        if self.status == SessionStatus.CONNECTED:
            return
        if timeout is None:
            timeout = self.config.connect_timeout_seconds
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._connect_waiters.append(fut)
        try:
            await asyncio.wait_for(fut, timeout=timeout)
        except asyncio.TimeoutError:
            raise SessionConnectTimeout("Session connection timeout") from None
        finally:
            if fut in self._connect_waiters:
                self._connect_waiters.remove(fut)

    # -----------------------
    # JSON-RPC helpers
    # -----------------------
    async def _initialize(self):
        """Send initialize + initialized handshake."""
        client_info = {
            "name": self.config.client_name,
            "version": self.config.client_version,
        }
        if self.config.client_title:
            client_info["title"] = self.config.client_title
        try:
            await self.request("initialize", {"clientInfo": client_info})
            await self.notify("initialized", {})
        except Exception as e:
            logger.error(f"App-server initialize failed for repo {self.repo_id}: {e}")
            await self._set_status(SessionStatus.ERROR)
            raise

    async def _send(self, msg: dict[str, Any]):
        if not self._proc or not self._proc.stdin:
            raise AppServerError("app-server process not running")
        data = json.dumps(msg) + "\n"
        try:
            self._proc.stdin.write(data.encode("utf-8"))
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The child exited but the reader has not released it yet
            raise AppServerError("app-server process not running") from e

    async def _read_loop(self, proc: asyncio.subprocess.Process):
        assert proc.stdout
        next_status = SessionStatus.ERROR
        reason = "App server reader failed"
        try:
            while True:
                try:
                    line = await proc.stdout.readline()
                except ValueError:
                    logger.warning(f"App-server line exceeded {self.config.max_line_bytes} bytes (repo {self.repo_id})")
                    continue
                if not line:
                    break
                await self._handle_line(line.decode("utf-8", errors="replace"))

            returncode = await proc.wait()
            logger.info(f"App-server exited for repo {self.repo_id} (returncode={returncode})")
            # Negative return codes mean the process died from a signal.
            next_status = SessionStatus.STOPPED if returncode <= 0 else SessionStatus.ERROR
            reason = "App server exited"
        except asyncio.CancelledError:
            next_status = SessionStatus.STOPPED
            reason = "App server reader cancelled"
            raise
        except Exception:
            logger.exception(f"App-server reader failed for repo {self.repo_id}")
        finally:
            await self._release(proc, next_status, reason)

    async def _read_stderr(self, proc: asyncio.subprocess.Process):
        assert proc.stderr
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            logger.debug(f"app-server stderr ({self.repo_id}): {line.decode('utf-8', errors='replace').rstrip()}")

    async def _handle_line(self, line: str):
        if not line.strip():
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"App-server sent invalid JSON (repo {self.repo_id}): {line[:200]}")
            return
        if not isinstance(message, dict):
            logger.warning(f"App-server sent unknown message (repo {self.repo_id}): {line[:200]}")
            return

        req_id = message.get("id")
        method = message.get("method")
        has_id = is_rpc_id(req_id)
        has_method = isinstance(method, str)

        # Server request (requires a response from a subscriber)
        if has_id and has_method:
            request = {"id": req_id, "method": method}
            if "params" in message:
                request["params"] = message["params"]
            await self._emit(self.callbacks.on_request, request)
            return

        # Response to one of our requests
        if has_id:
            fut = self._pending.pop(str(req_id), None)
            if fut is None or fut.done():
                logger.warning(f"Unexpected app-server response id={req_id} (repo {self.repo_id})")
                return
            error = message.get("error")
            if error:
                fut.set_exception(AppServerRpcError(_error_message(error), error))
            else:
                fut.set_result(message.get("result"))
            return

        # Notification
        if has_method:
            notification = {"method": method}
            if "params" in message:
                notification["params"] = message["params"]
            await self._emit(self.callbacks.on_notification, notification)
            return

        logger.warning(f"App-server sent unknown message (repo {self.repo_id}): {line[:200]}")

    async def _emit(self, callback, payload):
        try:
            await callback(payload)
        except Exception:
            logger.exception(f"Session event handler failed (repo {self.repo_id})")

    async def _release(self, proc: asyncio.subprocess.Process, status: SessionStatus, reason: str):
        """Drop the process handle, fail pending requests, and publish the final status."""
        if self._proc is not proc:
            return
        self._proc = None
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._flush_pending(AppServerError(reason))
        await self._set_status(status)

    def _flush_pending(self, error: Exception):
        pending = list(self._pending.values())
        self._pending.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(error)

    async def _set_status(self, status: SessionStatus):
        self.status = status
        waiters = list(self._connect_waiters)
        for fut in waiters:
            if fut.done():
                continue
            if status == SessionStatus.CONNECTED:
                fut.set_result(None)
            elif status in (SessionStatus.ERROR, SessionStatus.STOPPED):
                fut.set_exception(AppServerError("Session failed"))
        await self._emit(self.callbacks.on_status, status)
