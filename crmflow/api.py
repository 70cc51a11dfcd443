"""FastAPI transport for the cron trigger and workflow operations."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import CrmflowConfig, load_config
from .contacts import get_contact_store
from .engine import WorkflowEngine
from .errors import (
    CrmflowError,
    EnrollmentNotFound,
    EnrollmentRejected,
    InvalidDefinition,
    InvalidTransition,
    WorkflowNotFound,
)
from .messaging import get_message_sender
from .models import WorkflowStatus, utcnow
from .persistence import get_repository
from .runner import BatchRunner
from .workflows import WorkflowManager

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    InvalidDefinition: status.HTTP_400_BAD_REQUEST,
    WorkflowNotFound: status.HTTP_404_NOT_FOUND,
    EnrollmentNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    EnrollmentRejected: status.HTTP_409_CONFLICT,
}


class CronRequest(BaseModel):
    max_count: Optional[int] = Field(default=None, ge=1)
    max_duration_ms: Optional[int] = Field(default=None, ge=1)


class EnrollRequest(BaseModel):
    contact_id: str = Field(..., min_length=1)
    trigger_data: Dict[str, Any] = Field(default_factory=dict)


class StatusRequest(BaseModel):
    status: WorkflowStatus


class ExitRequest(BaseModel):
    reason: str = "Manually exited"


async def crmflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Translate engine errors into JSON responses."""
    code = next(
        (c for cls, c in _ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    content: Dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, InvalidDefinition):
        content["details"] = exc.errors
    return JSONResponse(status_code=code, content=content)


def create_app(
    engine: WorkflowEngine | None = None,
    manager: WorkflowManager | None = None,
    runner: BatchRunner | None = None,
    config: CrmflowConfig | None = None,
) -> FastAPI:
    """Build the application. Collaborators default to the configured backends."""
    config = config or load_config()
    if engine is None:
        repository = get_repository(config=config)
        engine = WorkflowEngine(
            repository=repository,
            contacts=get_contact_store(config=config),
            sender=get_message_sender(config),
            config=config.engine,
        )
    manager = manager or WorkflowManager(engine.repository)
    runner = runner or BatchRunner(engine, config.engine)
    api_config = config.api

    app = FastAPI(title="crmflow")
    app.add_exception_handler(CrmflowError, crmflow_error_handler)

    def check_cron_secret(provided: Optional[str]) -> None:
        if not api_config.requires_cron_secret:
            return
        expected = api_config.cron_secret or ""
        if not expected or not hmac.compare_digest(provided or "", expected):
            logger.warning("Rejected cron request with a missing or bad secret")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
            )

    @app.post("/api/cron/process-workflows")
    async def process_workflows(
        payload: Optional[CronRequest] = Body(default=None),
        x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    ) -> Dict[str, Any]:
        check_cron_secret(x_cron_secret)
        payload = payload or CronRequest()
        report = await runner.run_batch(
            max_count=payload.max_count,
            max_duration=(
                payload.max_duration_ms / 1000 if payload.max_duration_ms else None
            ),
        )
        return {
            "success": True,
            "timestamp": utcnow().isoformat(),
            **report.model_dump(mode="json"),
        }

    @app.get("/api/cron/process-workflows")
    async def health() -> Dict[str, Any]:
        return (await runner.health()).model_dump(mode="json")

    @app.post("/api/v1/workflows/{workflow_id}/enroll", status_code=201)
    async def enroll(workflow_id: str, payload: EnrollRequest) -> Dict[str, Any]:
        enrollment = await engine.enroll(
            workflow_id, payload.contact_id, trigger_data=payload.trigger_data
        )
        return enrollment.model_dump(mode="json")

    @app.post("/api/v1/workflows/{workflow_id}/activate")
    async def activate(workflow_id: str) -> Dict[str, Any]:
        workflow = await manager.activate(workflow_id)
        return workflow.model_dump(mode="json")

    @app.patch("/api/v1/workflows/{workflow_id}/status")
    async def change_status(workflow_id: str, payload: StatusRequest) -> Dict[str, Any]:
        workflow = await manager.change_status(workflow_id, payload.status)
        return workflow.model_dump(mode="json")

    @app.post("/api/v1/enrollments/{enrollment_id}/exit")
    async def exit_enrollment(
        enrollment_id: str, payload: Optional[ExitRequest] = Body(default=None)
    ) -> Dict[str, Any]:
        payload = payload or ExitRequest()
        exited = await engine.exit_enrollment(enrollment_id, payload.reason)
        return {"enrollment_id": enrollment_id, "exited": exited}

    return app
