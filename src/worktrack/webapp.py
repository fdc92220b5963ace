"""FastAPI application that exposes the daemon's control surface."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import BadRequest, TrackerError
from .lifecycle import DaemonRunner
from .models import IssueRelationship, OutcomeType

logger = logging.getLogger(__name__)


class RpcRequest(BaseModel):
    command: str
    args: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class NoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StopArgs(BaseModel):
    reason: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class WorkOnArgs(BaseModel):
    work_item_id: str = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class WorkItemArgs(BaseModel):
    issue_id: str = Field(min_length=1)
    system: str = "manual"
    project: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class SessionStartArgs(BaseModel):
    id: str = Field(min_length=1)
    project: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class SessionEndArgs(BaseModel):
    id: str = Field(min_length=1)
    reason: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class SessionLinkArgs(BaseModel):
    id: str = Field(min_length=1)
    issue_id: str = Field(min_length=1)
    system: str = "manual"
    relationship: IssueRelationship = IssueRelationship.WORKED_ON

    model_config = ConfigDict(extra="forbid")


class SessionOutcomeArgs(BaseModel):
    id: str = Field(min_length=1)
    type: OutcomeType
    description: str
    reference: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


COMMAND_ARGS: Dict[str, type[BaseModel]] = {
    "status": NoArgs,
    "start": NoArgs,
    "stop": StopArgs,
    "pause": NoArgs,
    "resume": NoArgs,
    "work-on": WorkOnArgs,
    "work-off": NoArgs,
    "work-item.add": WorkItemArgs,
    "session.start": SessionStartArgs,
    "session.end": SessionEndArgs,
    "session.link": SessionLinkArgs,
    "session.outcome": SessionOutcomeArgs,
    "shutdown": NoArgs,
}


def parse_args(command: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """Validate ``args`` for ``command`` and return engine keyword arguments."""
    model = COMMAND_ARGS.get(command)
    if model is None:
        raise BadRequest(f"unknown command {command!r}")
    try:
        parsed = model.model_validate(args)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'args'}: {error['msg']}"
            for error in exc.errors()
        )
        raise BadRequest(f"invalid arguments for {command}: {details}") from exc
    return parsed.model_dump(mode="json", exclude_none=True)


def _error_response(error: TrackerError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"ok": False, "error": error.to_payload()},
    )


def create_app(runner: DaemonRunner, *, manage_runner: bool = True) -> FastAPI:
    """Instantiate the FastAPI application around a daemon runner."""
    engine = runner.engine

    app = FastAPI(title="worktrack daemon", version="0.1.0")
    app.state.runner = runner

    if manage_runner:

        @app.on_event("startup")
        async def _startup() -> None:
            runner.start()

        @app.on_event("shutdown")
        async def _shutdown() -> None:
            runner.stop()

    @app.exception_handler(RequestValidationError)
    async def _invalid_envelope(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(BadRequest(f"malformed request: {exc.errors()}"))

    @app.get("/api/status")
    def status() -> Dict[str, Any]:
        payload = engine.snapshot().to_payload()
        payload["engine_running"] = engine.is_running()
        payload["settings"] = engine.settings.as_dict()
        return payload

    @app.post("/rpc")
    def rpc(request: RpcRequest) -> JSONResponse:
        try:
            kwargs = parse_args(request.command, request.args)
            if request.command == "shutdown":
                if not runner.request_exit():
                    raise BadRequest("shutdown is not available in this process")
                result: Dict[str, Any] = {"shutting_down": True}
            else:
                result = engine.call(request.command, kwargs)
        except TrackerError as exc:
            if exc.status_code >= 500:
                logger.warning("%s failed: %s", request.command, exc)
            return _error_response(exc)
        except Exception:
            logger.exception("Unhandled error while running %s", request.command)
            return _error_response(TrackerError(f"{request.command} failed unexpectedly"))
        return JSONResponse(content={"ok": True, "result": result})

    return app
