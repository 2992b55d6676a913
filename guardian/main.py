"""
Guardian FastAPI application.

Serves the authenticated control plane for the supervised worker: status,
start/stop/restart, log tail, and a minimal HTML control page for phones.
Every route except /healthz requires a query token, bearer token or signed
request (see auth.py).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import AuthResult, NonceStore, verify_request
from .config import GuardianConfig, load_config
from .heartbeat import HeartbeatWatchdog
from .logbuffer import resolve_log_tail
from .models import HealthResponse, LogsResponse, RestartResponse, StartResponse, StatusSnapshot
from .network import is_loopback_address
from .process import WorkerSupervisor, now_ms

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
CATCH_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def setup_logging(config: GuardianConfig):
    """Configure root logging with a rotating file and the console."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handlers = []
    try:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(log_formatter)
        handlers.append(file_handler)
    except OSError as e:
        print(f"guardian: file logging disabled ({e})")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=logging.INFO, handlers=handlers)


def _log_secret_source(supervisor: WorkerSupervisor, config: GuardianConfig):
    if config.secret_source == "generated":
        supervisor.log(f"Generated control secret and saved it to {config.secret_file}.")
    elif config.secret_source == "file":
        supervisor.log(f"Loaded control secret from {config.secret_file}.")
    elif config.secret_source == "generated-ephemeral":
        supervisor.log(
            "Generated an in-memory control secret because persistent secret file write failed.",
            logging.WARNING,
        )
    if not is_loopback_address(config.bind):
        supervisor.log(
            "Control API is bound to a non-loopback address. Keep GUARDIAN_CONTROL_SECRET private.",
            logging.WARNING,
        )


def create_app(
    config: Optional[GuardianConfig] = None,
    supervisor: Optional[WorkerSupervisor] = None,
    watchdog: Optional[HeartbeatWatchdog] = None,
) -> FastAPI:
    """Build the control API around a supervisor. Used as a uvicorn factory."""
    if config is None:
        config = load_config()
    if supervisor is None:
        supervisor = WorkerSupervisor(config)
    if watchdog is None:
        watchdog = HeartbeatWatchdog(supervisor, config.heartbeat_check_interval_ms)
    nonces = NonceStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start supervising on startup; stop the worker on shutdown."""
        logger.info("Starting guardian...")
        _log_secret_source(supervisor, config)
        supervisor.start("initial start", force=True)
        await watchdog.start()
        supervisor.log(f"Control API listening on http://{config.bind}:{config.port}")

        yield

        logger.info("Shutting down guardian...")
        await watchdog.stop()
        await asyncio.to_thread(supervisor.shutdown, "control API shutdown")

    app = FastAPI(
        title="Guardian",
        description="Process supervisor with an authenticated control plane",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.supervisor = supervisor
    app.state.nonces = nonces

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"ok": False, "error": exc.detail},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    async def require_auth(request: Request) -> AuthResult:
        """Dependency that rejects the request with 401 unless it proves the secret."""
        query_token = request.query_params.get("token") or request.query_params.get("k")
        body = ""
        if request.method not in ("GET", "HEAD"):
            body = (await request.body()).decode("utf-8", errors="replace")
        headers = {key.lower(): value for key, value in request.headers.items()}

        result = verify_request(
            method=request.method,
            path=request.url.path,
            body=body,
            headers=headers,
            query_token=query_token,
            secret=config.secret,
            now_ms=now_ms(),
            nonces=nonces,
            max_skew_ms=config.signature_max_skew_ms,
            nonce_ttl_ms=config.nonce_ttl_ms,
        )
        if not result.ok:
            logger.warning(f"Rejected {request.method} {request.url.path}: {result.reason}")
            raise StarletteHTTPException(status_code=401, detail=result.reason)
        return result

    def dashboard_redirect(request: Request) -> Optional[RedirectResponse]:
        """Form posts from the mobile page go back to it instead of getting JSON."""
        query_token = request.query_params.get("token") or request.query_params.get("k")
        content_type = request.headers.get("content-type", "")
        if request.method == "POST" and FORM_CONTENT_TYPE in content_type and query_token:
            return RedirectResponse(f"/mobile?token={quote(query_token, safe='')}", status_code=303)
        return None

    # Public
    @app.get("/healthz", response_model=HealthResponse)
    async def healthz():
        """Liveness of the guardian itself."""
        return HealthResponse(ts=now_ms())

    router = APIRouter(dependencies=[Depends(require_auth)])

    @router.get("/status", response_model=StatusSnapshot)
    def status():
        return supervisor.status_snapshot()

    @router.post("/restart", response_model=RestartResponse)
    def restart(request: Request):
        restarted = supervisor.restart("control API")
        redirect = dashboard_redirect(request)
        if redirect:
            return redirect
        return RestartResponse(**supervisor.status_snapshot().model_dump(), restarted=restarted)

    @router.post("/stop", response_model=StatusSnapshot)
    def stop(request: Request):
        supervisor.stop_by_operator("control API")
        redirect = dashboard_redirect(request)
        if redirect:
            return redirect
        return supervisor.status_snapshot()

    @router.post("/start", response_model=StartResponse)
    def start(request: Request):
        started = supervisor.start_by_operator("control API")
        redirect = dashboard_redirect(request)
        if redirect:
            return redirect
        return StartResponse(**supervisor.status_snapshot().model_dump(), started=started)

    @router.get("/logs", response_model=LogsResponse)
    def logs(tail: Optional[str] = Query(None, description="Number of lines, clamped to [10, limit]")):
        count = resolve_log_tail(tail, config.log_tail_limit)
        return LogsResponse(logs=supervisor.logs.tail(count))

    @router.get("/mobile", response_class=HTMLResponse)
    def mobile(request: Request):
        """Minimal control page for a phone browser."""
        snapshot = supervisor.status_snapshot()
        worker = snapshot.worker
        heartbeat_age = (
            f"{round(worker.heartbeat_age_ms / 1000)}s" if worker.heartbeat_age_ms is not None else "unknown"
        )
        return templates.TemplateResponse(
            request,
            "mobile.html",
            {
                "worker_status": "Running" if worker.running else "Stopped",
                "heartbeat_age": heartbeat_age,
                "token": quote(config.secret, safe=""),
                "status_json": snapshot.model_dump_json(by_alias=True, indent=2),
            },
        )

    @router.api_route("/{path:path}", methods=CATCH_ALL_METHODS, include_in_schema=False)
    def not_found(path: str):
        raise StarletteHTTPException(status_code=404, detail="Not found.")

    app.include_router(router)
    return app
