from __future__ import annotations
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from starlette.staticfiles import StaticFiles

from .core.errors import InputError
from .core.models import JobResult
from .executor.factory import probe_capabilities
from .logging import setup_logging
from .services import assembler
from .services.job_service import JobService

log = structlog.get_logger(__name__)


# --------- Schemas ---------
class SourceFile(BaseModel):
    name: Optional[str] = None
    content: Optional[str] = ""


class CompileReq(BaseModel):
    code: Optional[str] = None
    files: Optional[List[SourceFile]] = None
    debug: bool = False


class DiagnosticRes(BaseModel):
    file: str
    line: int
    severity: str
    message: str


class CompileRes(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    output: str = ""
    error: str = ""
    exit_code: int = Field(0, alias="exitCode")
    execution_time: int = Field(0, alias="executionTime")
    memory_used: Optional[int] = Field(None, alias="memoryUsed")
    reason: Optional[str] = None
    diagnostics: List[DiagnosticRes] = []

    @classmethod
    def from_result(cls, res: JobResult) -> "CompileRes":
        return cls(
            success=res.success,
            output=res.output,
            error=res.error,
            exit_code=res.exit_code,
            execution_time=res.execution_time_ms,
            memory_used=res.memory_used_bytes or None,
            reason=res.reason,
            diagnostics=[DiagnosticRes(**d.__dict__) for d in res.diagnostics],
        )


class VersionRes(BaseModel):
    success: bool
    version: str = ""
    error: str = ""


# --------- App ---------
def create_app(svc: Optional[JobService] = None) -> FastAPI:
    svc = svc or JobService()
    s = svc.settings
    setup_logging(s.log_level)

    app = FastAPI(title="codebox")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.svc = svc

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        # malformed bodies get the regular compile response, never a 422
        problems = "; ".join(".".join(str(p) for p in e["loc"]) + ": " + e["msg"] for e in exc.errors())
        log.info("api.invalid_request", path=request.url.path, problems=problems)
        res = assembler.rejected(InputError(f"Invalid request: {problems}"))
        return JSONResponse(status_code=200, content=CompileRes.from_result(res).model_dump(by_alias=True))

    router = APIRouter(prefix=s.api_prefix)

    @app.get("/")
    async def root():
        return {"message": "Welcome to the codebox API"}

    @router.get("/health")
    def health():
        return {
            "status": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "isolation": probe_capabilities(s),
        }

    @router.post("/compile", response_model=CompileRes)
    def compile_and_run(req: CompileReq):
        files = [(f.name, f.content) for f in req.files] if req.files else None
        res = svc.execute(req.code, files, req.debug)
        return CompileRes.from_result(res)

    @router.get("/java-version", response_model=VersionRes)
    def java_version():
        out = svc.toolchain_version()
        if not out.ok:
            return VersionRes(success=False, version=out.stdout.strip(), error=out.stderr.strip() or (out.reason or ""))
        # `java --version` prints to stdout, `java -version` to stderr
        return VersionRes(success=True, version=(out.stdout or out.stderr).strip(), error="")

    app.include_router(router)

    if s.static_dir and s.static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=str(s.static_dir), html=True), name="static")
    return app
