"""
FastAPI Backend — Forge Registry API v1.

Stateless: every request replays the instance's command log.
Mutating requests are serialized by a process-wide lock, so each one is
a single indivisible transition against the log.

The caller principal is supplied by the host in the X-Forge-Caller
header (the transaction signer, forwarded by the gateway).

Contract results are returned as {"ok": value}; contract failures as
{"err": <numeric code>, ...} with a matching HTTP status.

Endpoints (under /instances/{instance_id}):
  POST /deploy              — initialize; caller becomes the deployer
  GET  /admins/{principal}  — is-authorized-admin
  POST /add-admin
  POST /register-template
  POST /approve-template
  POST /generate-contract
  GET  /templates/{name}
  GET  /generations
  GET  /state               — state + hash + diagnostics
  GET  /verify              — replay and check stored hash + snapshots
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import FastAPI, Header, HTTPException, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from forge_kernel.domain_types import GenerationEvent
from forge_kernel.engine import ForgeEngine
from forge_kernel.errors import ErrorKind, ForgeError
from forge_runtime.event_repository import EventRepository
from forge_runtime.session import (
    DeterminismError,
    ForgeSession,
    IdempotencyConflictError,
    SnapshotInconsistencyError,
)
from forge_runtime.snapshot_repository import SnapshotRepository

from forge_api.config import ForgeSettings, configure_logging, load_settings

logger = logging.getLogger(__name__)

INSTANCE_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"

_HTTP_STATUS = {
    ErrorKind.NOT_AUTHORIZED: 403,
    ErrorKind.TEMPLATE_NOT_FOUND: 404,
    ErrorKind.TEMPLATE_ALREADY_EXISTS: 409,
    ErrorKind.INVALID_TEMPLATE: 422,
    ErrorKind.CONTRACT_GENERATION_FAILED: 500,
}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _check_hex(value: str) -> str:
    bytes.fromhex(value)
    return value.lower()


class DeployRequest(BaseModel):
    require_admin_for_generation: Optional[bool] = None
    max_template_name_length: Optional[int] = None
    event_uuid: str = ""


class AddAdminRequest(BaseModel):
    principal: str
    event_uuid: str = ""


class RegisterTemplateRequest(BaseModel):
    name: str
    code: str  # hex
    event_uuid: str = ""

    @field_validator("code")
    @classmethod
    def validate_code(cls, value: str) -> str:
        return _check_hex(value)


class ApproveTemplateRequest(BaseModel):
    name: str
    event_uuid: str = ""


class GenerateContractRequest(BaseModel):
    name: str
    deployment_data: str = ""  # hex
    event_uuid: str = ""

    @field_validator("deployment_data")
    @classmethod
    def validate_deployment_data(cls, value: str) -> str:
        return _check_hex(value)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _generation_json(generation: GenerationEvent) -> dict:
    return {
        "event-id": generation.event_id,
        "template-name": generation.template_name,
        "deployment-data": generation.deployment_data.hex(),
        "generated-by": generation.generated_by,
    }


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(settings: ForgeSettings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Forge Registry API",
        version="1.0.0",
        description="Admin registry and template lifecycle — event-sourced API",
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    write_lock = threading.Lock()

    @app.exception_handler(ForgeError)
    async def _forge_error_handler(request: Request, exc: ForgeError) -> JSONResponse:
        return JSONResponse(
            status_code=_HTTP_STATUS[exc.kind],
            content={"err": exc.code, "kind": exc.kind.name, "detail": exc.detail},
        )

    @contextmanager
    def open_session(instance_id: str) -> Iterator[ForgeSession]:
        """Open the instance's log, replay it, close on exit."""
        if settings.database_url:
            from forge_api.postgres_event_repository import PostgresEventRepository
            event_repo = PostgresEventRepository(settings.database_url)
            snapshot_repo = None
        else:
            event_repo = EventRepository(settings.database_path)
            snapshot_repo = SnapshotRepository(settings.database_path)
        try:
            session = ForgeSession(
                instance_id=instance_id,
                engine=ForgeEngine(),
                event_repo=event_repo,
                snapshot_repo=snapshot_repo,
                snapshot_interval=settings.snapshot_interval,
            )
            session.initialize()
            yield session
        finally:
            event_repo.close()
            if snapshot_repo is not None:
                snapshot_repo.close()

    @contextmanager
    def writing(instance_id: str) -> Iterator[ForgeSession]:
        """
        Serialized write session. Auto-deploys with the configured
        deployer when the instance has no log yet.
        """
        with write_lock, open_session(instance_id) as session:
            if not session.initialized and settings.deployer:
                logger.info(
                    "instance %s: auto-deploying with %s", instance_id, settings.deployer,
                )
                session.deploy(
                    settings.deployer,
                    require_admin_for_generation=settings.require_admin_for_generation,
                )
            try:
                yield session
            except IdempotencyConflictError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except ValueError as exc:
                raise _bad_request(exc) from exc

    # -- Contract entry points ----------------------------------------------

    @app.post("/instances/{instance_id}/deploy")
    def deploy(
        req: DeployRequest,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
        caller: str = Header(..., alias="X-Forge-Caller"),
    ):
        policy = {"require_admin_for_generation": settings.require_admin_for_generation}
        if req.require_admin_for_generation is not None:
            policy["require_admin_for_generation"] = req.require_admin_for_generation
        if req.max_template_name_length is not None:
            policy["max_template_name_length"] = req.max_template_name_length

        with write_lock, open_session(instance_id) as session:
            try:
                session.deploy(caller, event_uuid=req.event_uuid, **policy)
            except ValueError as exc:
                if session.initialized:
                    raise HTTPException(status_code=409, detail=str(exc)) from exc
                raise _bad_request(exc) from exc
            return {"ok": True, "deployer": session.engine.state.deployer}

    @app.get("/instances/{instance_id}/admins/{principal}")
    def is_authorized_admin(
        principal: str,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
    ):
        with open_session(instance_id) as session:
            return {"ok": session.is_authorized_admin(principal)}

    @app.post("/instances/{instance_id}/add-admin")
    def add_admin(
        req: AddAdminRequest,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
        caller: str = Header(..., alias="X-Forge-Caller"),
    ):
        with writing(instance_id) as session:
            return {"ok": session.add_admin(caller, req.principal, event_uuid=req.event_uuid)}

    @app.post("/instances/{instance_id}/register-template")
    def register_template(
        req: RegisterTemplateRequest,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
        caller: str = Header(..., alias="X-Forge-Caller"),
    ):
        with writing(instance_id) as session:
            return {"ok": session.register_template(
                caller, req.name, bytes.fromhex(req.code), event_uuid=req.event_uuid,
            )}

    @app.post("/instances/{instance_id}/approve-template")
    def approve_template(
        req: ApproveTemplateRequest,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
        caller: str = Header(..., alias="X-Forge-Caller"),
    ):
        with writing(instance_id) as session:
            return {"ok": session.approve_template(caller, req.name, event_uuid=req.event_uuid)}

    @app.post("/instances/{instance_id}/generate-contract")
    def generate_contract(
        req: GenerateContractRequest,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
        caller: str = Header(..., alias="X-Forge-Caller"),
    ):
        with writing(instance_id) as session:
            generation = session.generate_contract(
                caller, req.name, bytes.fromhex(req.deployment_data),
                event_uuid=req.event_uuid,
            )
            return {"ok": _generation_json(generation)}

    # -- Reads --------------------------------------------------------------

    @app.get("/instances/{instance_id}/templates/{name}")
    def get_template(
        name: str,
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
    ):
        with open_session(instance_id) as session:
            template = session.engine.get_template(name)
            if template is None:
                raise ForgeError(
                    ErrorKind.TEMPLATE_NOT_FOUND, f"Template {name!r} does not exist",
                )
            return {"ok": template.to_dict()}

    @app.get("/instances/{instance_id}/generations")
    def list_generations(
        instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN),
        after: int = Query(0, ge=0, description="Only events with a larger event-id"),
    ):
        with open_session(instance_id) as session:
            if not session.initialized:
                return {"ok": []}
            return {"ok": [
                _generation_json(g)
                for g in session.engine.list_generation_events(after_event_id=after)
            ]}

    @app.get("/instances/{instance_id}/state")
    def get_state(instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN)):
        with open_session(instance_id) as session:
            return {
                "sequence": session.current_sequence,
                "state_hash": session.get_state_hash(),
                "state": session.get_state(),
                "diagnostics": session.get_diagnostics(),
            }

    @app.get("/instances/{instance_id}/verify")
    def verify(instance_id: str = Path(..., pattern=INSTANCE_ID_PATTERN)):
        with open_session(instance_id) as session:
            try:
                session.verify_determinism()
                session.verify_snapshot_consistency()
            except (DeterminismError, SnapshotInconsistencyError) as exc:
                logger.error("instance %s: %s", instance_id, exc)
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            return {
                "status": "ok",
                "sequence": session.current_sequence,
                "state_hash": session.get_state_hash(),
            }

    @app.get("/health")
    def health():
        return {"status": "ok", "version": "1.0.0"}

    return app


app = create_app()
