from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Dict, Optional
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from . import __version__
from .errors import (
    AlreadyExistsError,
    ExecutionInProgressError,
    HasDependentsError,
    NetworkUnavailableError,
    NotFoundError,
    QuiverError,
    UnsafeError,
    UnsupportedError,
    ValidationFailedError,
)
from .logging_setup import get_logger
from .models import PackageStatus
from .orchestrator import Orchestrator
from .settings import Settings

log = get_logger("quiver.api")


class ActionResult(BaseModel):
    ok: bool
    detail: str | None = None
    data: dict | None = None


class VariablesBody(BaseModel):
    variables: Dict[str, str] = Field(default_factory=dict)


class PortBody(BaseModel):
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="Omit to pick a free port")
    protocol: str = "tcp"


def status_for(err: QuiverError) -> int:
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, (AlreadyExistsError, ExecutionInProgressError, HasDependentsError)):
        return 409
    if isinstance(err, (ValidationFailedError, UnsupportedError)):
        return 422
    if isinstance(err, UnsafeError):
        return 400
    if isinstance(err, NetworkUnavailableError):
        return 503
    return 500


def _fail(err: QuiverError) -> HTTPException:
    code = status_for(err)
    if code >= 500:
        log.error("Request failed: %s", err)
    return HTTPException(status_code=code, detail=str(err))


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    orch = orchestrator or Orchestrator(settings or Settings())
    orch.initialize()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        orch.shutdown()

    app = FastAPI(title="Quiver API", version=__version__, lifespan=lifespan)

    @app.get("/health")
    def health():
        return {"ok": True, "version": __version__}

    # --- arrows -------------------------------------------------------------------

    @app.get("/arrows")
    def list_arrows(status: Optional[PackageStatus] = None):
        if status is not None:
            pkgs = orch.get_packages_by_status(status)
        else:
            pkgs = list(orch.list_installed().values())
        return {"ok": True, "arrows": [p.model_dump(mode="json") for p in pkgs]}

    @app.get("/arrows/search")
    def search(q: str = Query(min_length=1)):
        try:
            return {"ok": True, "results": [r.to_dict() for r in orch.search(q)]}
        except QuiverError as e:
            raise _fail(e)

    @app.get("/arrows/{name}/plan")
    def plan(name: str):
        try:
            return orch.plan_install(name).to_dict()
        except QuiverError as e:
            raise _fail(e)

    @app.post("/arrows/{name}/install", response_model=ActionResult)
    def install(name: str, body: VariablesBody | None = None):
        try:
            pkg = orch.install(name, body.variables if body else None)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=True, detail="installed", data=pkg.model_dump(mode="json"))

    @app.delete("/arrows/{name}", response_model=ActionResult)
    def uninstall(name: str):
        try:
            orphaned = orch.uninstall(name)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=True, detail="uninstalled", data={"unused_dependencies": orphaned})

    @app.post("/arrows/{name}/execute", response_model=ActionResult)
    def execute(name: str, body: VariablesBody | None = None):
        # runs in the background; poll /arrows/{name}/status
        try:
            status = orch.execute_async(name, body.variables if body else None)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=True, detail="started", data=status.model_dump(mode="json") if status else None)

    @app.post("/arrows/{name}/stop", response_model=ActionResult)
    def stop(name: str, graceful: bool = True, timeout: Optional[float] = Query(default=None, ge=0)):
        try:
            orch.stop(name, graceful=graceful, timeout=timeout)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=True, detail="stopped")

    @app.post("/arrows/{name}/update", response_model=ActionResult)
    def update(name: str):
        try:
            pkg = orch.update(name)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=True, detail="updated", data=pkg.model_dump(mode="json"))

    @app.post("/arrows/{name}/validate", response_model=ActionResult)
    def validate(name: str):
        try:
            result = orch.validate(name)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=True, detail="valid", data=result)

    @app.get("/arrows/{name}/status", response_model=ActionResult)
    def status(name: str):
        try:
            return ActionResult(ok=True, data=orch.get_status(name))
        except QuiverError as e:
            raise _fail(e)

    @app.get("/arrows/{name}/dependencies")
    def dependencies(name: str):
        try:
            return {"ok": True, "tree": orch.get_dependency_tree(name)}
        except QuiverError as e:
            raise _fail(e)

    # --- netbridge ----------------------------------------------------------------

    @app.get("/netbridge/ports")
    def list_ports():
        try:
            ports = orch.list_open_ports()
        except QuiverError as e:
            raise _fail(e)
        return {"ok": True, "ports": [p.model_dump(mode="json") for p in ports]}

    @app.post("/netbridge/ports", response_model=ActionResult)
    def open_port(body: PortBody):
        try:
            if body.port is None:
                result = orch.open_port_auto(body.protocol)
            else:
                result = orch.open_port(body.port, body.protocol)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=result.success, detail=result.error, data=result.model_dump(mode="json"))

    @app.delete("/netbridge/ports/{port}", response_model=ActionResult)
    def close_port(port: int, protocol: str = "tcp"):
        try:
            result = orch.close_port(port, protocol)
        except QuiverError as e:
            raise _fail(e)
        return ActionResult(ok=result.success, detail=result.error, data=result.model_dump(mode="json"))

    @app.get("/netbridge/public-ip")
    def public_ip(refresh: bool = False):
        try:
            ip = orch.refresh_public_ip() if refresh else orch.get_public_ip()
        except QuiverError as e:
            raise _fail(e)
        return {"ok": True, "public_ip": ip}

    return app
