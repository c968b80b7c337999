from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..core.errors import (
    AuthorizationError,
    InputError,
    QueueUnavailable,
    RunboxError,
    SandboxUnavailable,
    StoreUnavailable,
)
from ..core.utils import new_request_id
from ..logging import get_logger, setup_logging
from ..services.gateway import ExecutionGateway
from ..services.orchestrator import Orchestrator
from ..settings import load_settings

log = get_logger("api")


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str
    language: str
    code: str
    stdin: Optional[str] = None
    timeout_ms: Optional[int] = None


def _status_for(exc: RunboxError) -> int:
    if isinstance(exc, InputError):
        return 400
    if isinstance(exc, AuthorizationError):
        return 404 if exc.code == "session_not_found" else 403
    if isinstance(exc, (SandboxUnavailable, QueueUnavailable, StoreUnavailable)):
        return 503
    return 500


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Builds the HTTP app. With no orchestrator given, one is built from settings
    at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "orchestrator", None) is None:
            s = load_settings()
            setup_logging(s.log_level)
            owned = app.state.orchestrator = Orchestrator(s)
        yield
        if owned is not None:
            owned.close()
            app.state.orchestrator = None

    app = FastAPI(title="runbox", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=orchestrator.settings.cors_origins if orchestrator else load_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        rid = request.headers.get("x-request-id") or new_request_id()
        request.state.request_id = rid
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=rid)
        response = await call_next(request)
        response.headers["X-Request-Id"] = rid
        return response

    @app.exception_handler(RunboxError)
    async def runbox_error(request: Request, exc: RunboxError):
        status = _status_for(exc)
        body = {"code": exc.code, "message": exc.message}
        if isinstance(exc, InputError) and exc.supported_languages:
            body["supportedLanguages"] = exc.supported_languages
        if status >= 500:
            log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        else:
            log.info("request_rejected", path=request.url.path, code=exc.code, status=status)
        return JSONResponse(status_code=status, content=body)

    def gateway(request: Request) -> ExecutionGateway:
        return request.app.state.orchestrator.gateway

    @app.post("/api/execute")
    def execute(
        req: ExecuteRequest,
        request: Request,
        user_id: str = Header(..., alias="X-User-Id"),
        gw: ExecutionGateway = Depends(gateway),
    ):
        sub = gw.submit(
            req.session_id,
            user_id,
            req.language,
            req.code,
            req.stdin,
            req.timeout_ms,
            request_id=request.state.request_id,
        )
        return sub.model_dump(mode="json", by_alias=True, exclude_none=True)

    @app.get("/api/execute/status/{job_id}")
    def status(
        job_id: str,
        user_id: str = Header(..., alias="X-User-Id"),
        gw: ExecutionGateway = Depends(gateway),
    ):
        return gw.status(job_id, user_id).model_dump(mode="json", by_alias=True, exclude_none=True)

    @app.delete("/api/execute/kill/{session_id}")
    def kill(
        session_id: str,
        user_id: str = Header(..., alias="X-User-Id"),
        gw: ExecutionGateway = Depends(gateway),
    ):
        return gw.kill(session_id, user_id)

    @app.get("/api/execute/languages")
    def languages(gw: ExecutionGateway = Depends(gateway)):
        return gw.languages()

    @app.get("/api/execute/history/{session_id}")
    def history(
        session_id: str,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        user_id: str = Header(..., alias="X-User-Id"),
        gw: ExecutionGateway = Depends(gateway),
    ):
        return gw.history(session_id, user_id, page=page, limit=limit)

    @app.get("/api/execute/stats")
    def stats(gw: ExecutionGateway = Depends(gateway)):
        return gw.stats()

    @app.get("/health")
    def health(gw: ExecutionGateway = Depends(gateway)):
        report = gw.health()
        return JSONResponse(status_code=200 if report["status"] == "ok" else 503, content=report)

    return app


app = create_app()
