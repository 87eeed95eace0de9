"""FastAPI server: thin HTTP routes over the app-server core plus the /ws gateway."""

import logging
import time
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .app_server import AppServerError
from .app_server_manager import RepoNotFoundError
from .models import RepoEntry, TurnStatus
from .payloads import first_match, get_id_string, get_record, get_string
from .repo_registry import RepoRegistryError
from .thread_list_refresher import normalize_thread_list

logger = logging.getLogger(__name__)

REGISTRY_ERROR_STATUS = {
    "conflict": 409,
    "not_found": 404,
    "unprocessable_entity": 422,
}

THREAD_ID_RULES = (
    lambda result: get_id_string((get_record(result, "thread") or {}).get("id")),
    lambda result: get_id_string(result.get("threadId")) if isinstance(result, dict) else None,
    lambda result: get_id_string(result.get("id")) if isinstance(result, dict) else None,
)

TURN_ID_RULES = (
    lambda result: get_id_string((get_record(result, "turn") or {}).get("id")),
    lambda result: get_id_string(result.get("turnId")) if isinstance(result, dict) else None,
    lambda result: get_id_string(result.get("id")) if isinstance(result, dict) else None,
)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_timeouts = self.config.get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_timeouts.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class CreateRepoRequest(BaseModel):
    """Request to register a repository."""
    name: str
    path: str


class StartTurnRequest(BaseModel):
    """Request to start a turn on a thread."""
    threadId: str
    input: list[Any]
    options: Optional[dict[str, Any]] = None


class CancelTurnRequest(BaseModel):
    """Optional body for a cancel request."""
    threadId: Optional[str] = None


def api_error(status_code: int, code: str, message: str, **details) -> HTTPException:
    detail: dict[str, Any] = {"code": code, "message": message}
    if details:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


def app_server_error(error: Exception) -> HTTPException:
    return api_error(500, "app_server_error", "app-server request failed", appServerError={"message": str(error)})


def create_app(
    registry=None,
    manager=None,
    gateway=None,
    turn_state=None,
    refresher=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: RepoRegistry instance
        manager: AppServerManager instance
        gateway: WebSocketGateway instance
        turn_state: TurnStateStore instance
        refresher: ThreadListRefresher instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="CodexDock",
        description="Relay Codex app-server sessions to browser subscribers",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.registry = registry
    app.state.manager = manager
    app.state.gateway = gateway
    app.state.turn_state = turn_state
    app.state.refresher = refresher

    async def require_repo(repo_id: str) -> RepoEntry:
        repo = await registry.get(repo_id)
        if not repo:
            raise api_error(404, "not_found", "Repository not found", repoId=repo_id)
        return repo

    async def start_session(repo_id: str):
        try:
            return await manager.get_or_start(repo_id)
        except RepoNotFoundError:
            raise api_error(404, "not_found", "Repository not found", repoId=repo_id)
        except AppServerError as e:
            raise app_server_error(e)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "codexdock"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/repos")
    async def list_repos():
        repos = await registry.list()
        return {"repos": [repo.to_dict() for repo in repos]}

    @app.post("/api/repos", status_code=201)
    async def create_repo(request: CreateRepoRequest):
        if not request.name.strip() or not request.path.strip():
            raise api_error(400, "invalid_request", "name and path are required", field="name")
        try:
            repo = await registry.create(request.name, request.path)
        except RepoRegistryError as e:
            raise api_error(REGISTRY_ERROR_STATUS.get(e.code, 400), e.code, str(e), field="path")
        try:
            await manager.get_or_start(repo.repo_id)
        except AppServerError as e:
            logger.error(f"Failed to start app-server for new repo {repo.repo_id}: {e}")
        return {"repo": repo.to_dict()}

    @app.patch("/api/repos/{repo_id}")
    async def update_repo(repo_id: str, body: Optional[dict[str, Any]] = Body(default=None)):
        if not body:
            raise api_error(400, "invalid_request", "Patch body required")
        if "path" in body:
            raise api_error(400, "invalid_request", "path cannot be updated", field="path")
        try:
            repo = await registry.update(
                repo_id,
                name=get_string(body, "name"),
                last_opened_thread_id=get_string(body, "lastOpenedThreadId"),
            )
        except RepoRegistryError as e:
            raise api_error(REGISTRY_ERROR_STATUS.get(e.code, 400), e.code, str(e), repoId=repo_id)
        return {"repo": repo.to_dict()}

    @app.delete("/api/repos/{repo_id}", status_code=204)
    async def delete_repo(repo_id: str):
        await require_repo(repo_id)
        try:
            await manager.stop(repo_id)
        except AppServerError:
            raise api_error(500, "session_stop_failed", "Failed to stop session", repoId=repo_id)
        await registry.remove(repo_id)
        if refresher:
            refresher.cancel(repo_id)

    @app.post("/api/repos/{repo_id}/session/start")
    async def session_start(repo_id: str):
        await require_repo(repo_id)
        await start_session(repo_id)
        return {"status": "started"}

    @app.post("/api/repos/{repo_id}/session/stop")
    async def session_stop(repo_id: str):
        await require_repo(repo_id)
        try:
            await manager.stop(repo_id)
        except AppServerError as e:
            raise app_server_error(e)
        return {"status": "stopped"}

    @app.get("/api/repos/{repo_id}/session/status")
    async def session_status(repo_id: str):
        await require_repo(repo_id)
        return {"status": manager.get_status(repo_id).value}

    @app.get("/api/repos/{repo_id}/threads")
    async def list_threads(repo_id: str):
        await require_repo(repo_id)
        session = await start_session(repo_id)
        try:
            result = await session.request("thread/list")
        except AppServerError as e:
            raise app_server_error(e)
        return {"threads": [thread.to_dict() for thread in normalize_thread_list(result)]}

    @app.post("/api/repos/{repo_id}/threads", status_code=201)
    async def start_thread(repo_id: str):
        repo = await require_repo(repo_id)
        session = await start_session(repo_id)
        try:
            result = await session.request("thread/start", {"cwd": repo.path})
        except AppServerError as e:
            raise app_server_error(e)
        thread_id = first_match(THREAD_ID_RULES, result)
        if not thread_id:
            raise app_server_error(AppServerError("thread id missing"))
        await refresher.refresh(repo_id)
        return {"thread": {"threadId": thread_id}}

    @app.post("/api/repos/{repo_id}/threads/{thread_id}/resume")
    async def resume_thread(repo_id: str, thread_id: str):
        await require_repo(repo_id)
        session = await start_session(repo_id)
        try:
            result = await session.request("thread/resume", {"threadId": thread_id})
        except AppServerError as e:
            raise app_server_error(e)
        await refresher.refresh(repo_id)
        return {"thread": {"threadId": thread_id}, "resume": result}

    @app.post("/api/repos/{repo_id}/turns", status_code=202)
    async def start_turn(repo_id: str, request: StartTurnRequest):
        repo = await require_repo(repo_id)
        session = await start_session(repo_id)
        params: dict[str, Any] = {
            "threadId": request.threadId,
            "input": request.input,
            "cwd": repo.path,
        }
        if request.options:
            params.update(request.options)
        try:
            result = await session.request("turn/start", params)
        except AppServerError as e:
            raise app_server_error(e)
        turn_id = first_match(TURN_ID_RULES, result)
        if not turn_id:
            raise app_server_error(AppServerError("turn id missing"))
        return {"turn": {"turnId": turn_id, "status": TurnStatus.RUNNING.value}}

    @app.post("/api/repos/{repo_id}/turns/{turn_id}/cancel")
    async def cancel_turn(repo_id: str, turn_id: str, request: Optional[CancelTurnRequest] = None):
        await require_repo(repo_id)
        status = turn_state.get(repo_id, turn_id)
        if status and status != TurnStatus.RUNNING:
            return {"turn": {"turnId": turn_id, "status": "already_finished"}}

        session = await start_session(repo_id)
        params = {"turnId": turn_id}
        if request and request.threadId:
            params["threadId"] = request.threadId
        try:
            await session.request("turn/interrupt", params)
        except AppServerError as e:
            raise app_server_error(e)
        return {"turn": {"turnId": turn_id, "status": "interrupt_requested"}}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await gateway.handle_connection(websocket)

    return app
