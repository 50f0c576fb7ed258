from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .core.models import FailureKind
from .logging import setup_logging
from .services.orchestrator import Orchestrator
from .settings import Settings, load_settings


# --------- Schemas ---------
class ExecuteReq(BaseModel):
    language: Optional[str] = None
    code: Optional[str] = None
    stdin: Optional[str] = None


class ExecuteRes(BaseModel):
    id: str
    language: str
    output: str
    error: str
    status: str
    exitCode: Optional[int] = None
    truncated: bool = False


_CLIENT_ERRORS = {FailureKind.UNSUPPORTED_LANGUAGE, FailureKind.INVALID_REQUEST}


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    s = settings or load_settings()
    setup_logging(s.log_level)
    orc = orchestrator or Orchestrator(s)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        # flush pending cleanups before the process goes away
        orc.shutdown()

    app = FastAPI(title="coderunner", lifespan=lifespan)
    app.state.orchestrator = orc

    @app.middleware("http")
    async def limit_payload(request: Request, call_next):
        size = request.headers.get("content-length")
        if size is None:
            # chunked upload: no header to trust, measure the body itself
            too_big = len(await request.body()) > s.max_payload_bytes
        else:
            too_big = size.isdigit() and int(size) > s.max_payload_bytes
        if too_big:
            return JSONResponse(status_code=413, content={"error": "Request payload too large"})
        return await call_next(request)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # sync endpoint: FastAPI runs it in its threadpool, one thread per request
    @app.post("/execute", response_model=ExecuteRes)
    def execute(req: ExecuteReq):
        result = orc.execute(req.language, req.code, req.stdin)
        if result.failure_kind in _CLIENT_ERRORS:
            code = 400
        elif result.failure_kind is FailureKind.REJECTED:
            code = 503
        else:
            code = 200
        return JSONResponse(status_code=code, content=ExecuteRes(**result.to_envelope()).model_dump())

    return app
