# TokenFlow FastAPI Application
# REST API for the process execution core

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from tokenflow import __version__
from tokenflow.config import EngineSettings, configure_logging
from tokenflow.core.errors import (
    ConfigurationError,
    EngineError,
    InvalidSessionError,
    ModelError,
    ParamTypeError,
    QualifierParseError,
    TokenBusyError,
    TokenFlowError,
)
from tokenflow.api.events.notification_service import ModelNotificationService
from tokenflow.api.execution.builtin_handlers import register_builtin_handlers
from tokenflow.api.execution.expression_evaluator import ConditionEvaluator
from tokenflow.api.execution.scheduler import ProcessFacade
from tokenflow.api.messaging.handler_registry import HandlerRegistry
from tokenflow.api.messaging.message_handler import StartRequestHandler
from tokenflow.api.models import HealthResponse
from tokenflow.api.processes import router as processes_router
from tokenflow.api.session import SessionRegistry, require_api_key
from tokenflow.api.storage.base import BaseStorageService
from tokenflow.api.storage.process_repository import ProcessRepository
from tokenflow.api.storage.token_repository import TokenRepository
from tokenflow.api.tokens import router as tokens_router

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"ProcessNotFound", "TokenNotFound", "StepNotFound", "PortNotFound"}
CONFLICT_CODES = {
    "InvalidStateTransition",
    "TokenNotSuspended",
    "TokenNotCompleted",
    "TokenNotRunning",
}
BAD_INPUT_CODES = {"UnknownParameter", "MissingParameter", "ParamNotPersistable"}


def status_for_error(error: TokenFlowError) -> int:
    """Map an engine error to an HTTP status code."""
    if error.code in NOT_FOUND_CODES:
        return 404
    if isinstance(error, InvalidSessionError):
        return 401
    if isinstance(error, TokenBusyError) or error.code in CONFLICT_CODES:
        return 409
    if isinstance(error, (QualifierParseError, ModelError, ParamTypeError)):
        return 400
    if isinstance(error, ConfigurationError):
        return 500
    if isinstance(error, EngineError) and error.code in BAD_INPUT_CODES:
        return 400
    return 500


async def timer_poller(facade: ProcessFacade, stop: asyncio.Event, interval: float) -> None:
    """Fire due timer jobs every `interval` seconds until `stop` is set."""
    while not stop.is_set():
        try:
            summary = facade.run_due_timers()
            if summary["claimed"]:
                logger.debug(f"Timer poll fired {summary['fired']} of {summary['claimed']} jobs")
        except Exception as e:
            logger.exception(f"Timer poll failed: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


def create_runtime(
    settings: Optional[EngineSettings] = None,
) -> Tuple[ProcessFacade, ModelNotificationService, SessionRegistry]:
    """
    Construct the storage, registry, facade, notification service and
    session registry of one engine.
    """
    settings = settings or EngineSettings.from_env()
    storage = BaseStorageService(settings.storage_path)
    processes = ProcessRepository(storage)
    tokens = TokenRepository(storage, autosave=settings.autosave)

    registry = HandlerRegistry()
    register_builtin_handlers(registry)

    facade = ProcessFacade(
        processes, registry, tokens, evaluator=ConditionEvaluator(), settings=settings
    )
    sessions = SessionRegistry(settings.api_keys, auth_enabled=settings.auth_enabled)
    notifications = ModelNotificationService(
        processes, session_registry=sessions, reload_on_reset=settings.reload_on_model_reset
    )
    return facade, notifications, sessions


def create_app(
    facade: Optional[ProcessFacade] = None,
    notifications: Optional[ModelNotificationService] = None,
    sessions: Optional[SessionRegistry] = None,
) -> FastAPI:
    """
    Create the REST application around an engine.

    Components that are not passed are built from the environment.
    """
    if facade is None:
        settings = EngineSettings.from_env()
        configure_logging(settings.log_level)
        facade, built_notifications, built_sessions = create_runtime(settings)
        notifications = notifications or built_notifications
        sessions = sessions or built_sessions
    if sessions is None:
        sessions = SessionRegistry(
            facade.settings.api_keys, auth_enabled=facade.settings.auth_enabled
        )
    if notifications is None:
        notifications = ModelNotificationService(facade.processes, session_registry=sessions)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        requeued = facade.reset_executing_tokens()
        if requeued:
            facade.execute_pending_in_this_thread()
        stop = asyncio.Event()
        poller = asyncio.create_task(
            timer_poller(facade, stop, facade.settings.timer_poll_interval)
        )
        logger.info("TokenFlow API started")
        yield
        stop.set()
        await poller
        facade.tokens.persist()
        logger.info("TokenFlow API stopped")

    app = FastAPI(
        title="TokenFlow Engine API",
        description="Process execution core: tokens, process models and start requests.",
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Tokens", "description": "Start, inspect, resume and cancel tokens"},
            {"name": "Process Models", "description": "Deploy models and announce changes"},
            {"name": "System", "description": "Health and system information"},
        ],
    )
    app.state.facade = facade
    app.state.notifications = notifications
    app.state.sessions = sessions
    app.state.start_requests = StartRequestHandler(facade)

    @app.middleware("http")
    async def add_request_metadata(request: Request, call_next):
        """Attach request id and timing headers."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"
        return response

    api_guard = [Depends(require_api_key)]
    app.include_router(tokens_router, prefix="/api/v1", dependencies=api_guard)
    app.include_router(processes_router, prefix="/api/v1", dependencies=api_guard)

    # ==================== Health ====================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        """Health check endpoint."""
        stats = facade.tokens.storage_stats()
        return HealthResponse(
            status="healthy",
            version=__version__,
            process_count=len(facade.processes.list_processes()),
            token_count=len(facade.list_tokens()),
            triple_count=stats["total_triples"],
        )

    # ==================== Error Handlers ====================

    @app.exception_handler(TokenFlowError)
    async def engine_error_handler(request: Request, exc: TokenFlowError):
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.message,
                "code": exc.code,
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            headers=exc.headers,
            content={
                "error": exc.detail,
                "code": f"HTTP_{exc.status_code}",
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            },
        )

    return app


# Main entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tokenflow.api.main:create_app", factory=True, host="0.0.0.0", port=8000, log_level="info"
    )
