import datetime as dt
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Body, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from pydantic import BaseModel, Field

from clinicflow.config import AppConfig
from clinicflow.domain.exceptions import (
    ClinicError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    TransportError,
    ValidationError,
)
from clinicflow.domain.models import (
    AppointmentRequest,
    AppointmentUpdate,
    TemplateVariables,
    WebhookAck,
)
from clinicflow.service import ClinicService

_ERROR_STATUS: dict[type[ClinicError], int] = {
    NotFoundError: 404,
    ConflictError: 409,
    ValidationError: 400,
    TransportError: 502,
    PersistenceError: 503,
}


class StatusChange(BaseModel):
    status: str | None = None
    reason: str | None = None


class ReminderRequest(BaseModel):
    template_id: str | None = None


class CustomMessage(BaseModel):
    patient_id: str = Field(min_length=1)
    appointment_id: str | None = None
    content: str | None = None
    template_id: str | None = None
    variables: TemplateVariables | None = None


def _service(request: Request) -> ClinicService:
    return request.app.state.service


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


async def _clinic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status = next(
        (code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)), 500
    )
    if status >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    messages = [str(e.get("msg", "")) for e in exc.errors()]
    return JSONResponse(
        status_code=400, content={"success": False, "error": "; ".join(messages)}
    )


def _build_router(config: AppConfig) -> APIRouter:
    router = APIRouter()

    @router.post("/appointments", status_code=201)
    async def create_appointment(
        request: Request,
        body: AppointmentRequest,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        appointment = await _service(request).create_appointment(body, x_user_id)
        return _ok(appointment)

    @router.get("/appointments/{appointment_id}")
    async def get_appointment(request: Request, appointment_id: str) -> dict[str, Any]:
        return _ok(await _service(request).get_appointment(appointment_id))

    @router.get("/appointments/{appointment_id}/reminders")
    async def list_reminders(request: Request, appointment_id: str) -> dict[str, Any]:
        return _ok(await _service(request).list_reminders(appointment_id))

    @router.put("/appointments/{appointment_id}")
    async def update_appointment(
        request: Request, appointment_id: str, body: AppointmentUpdate
    ) -> dict[str, Any]:
        return _ok(await _service(request).update_appointment(appointment_id, body))

    @router.put("/appointments/{appointment_id}/status")
    async def change_status(
        request: Request, appointment_id: str, body: StatusChange
    ) -> dict[str, Any]:
        appointment = await _service(request).change_status(
            appointment_id, body.status, body.reason
        )
        return _ok(appointment)

    @router.post("/appointments/{appointment_id}/remind")
    async def send_reminder(
        request: Request,
        appointment_id: str,
        body: ReminderRequest | None = Body(default=None),
    ) -> dict[str, Any]:
        template_id = body.template_id if body else None
        message = await _service(request).send_reminder(appointment_id, template_id)
        return _ok(message)

    @router.get("/doctors/{provider_id}/availability")
    async def get_availability(
        request: Request,
        provider_id: str,
        date: dt.date,
        duration: int | None = Query(default=None),
    ) -> dict[str, Any]:
        return _ok(await _service(request).get_availability(provider_id, date, duration))

    @router.get("/webhooks/whatsapp")
    async def verify_webhook(request: Request) -> Any:
        params = request.query_params
        token = (
            params.get("token")
            or params.get("hub_verify_token")
            or params.get("hub.verify_token")
        )
        if not config.webhook.verify_token or token != config.webhook.verify_token:
            logger.warning("Webhook verification failed")
            return JSONResponse(
                status_code=403, content={"success": False, "message": "Verification failed"}
            )
        challenge = (
            params.get("challenge")
            or params.get("hub_challenge")
            or params.get("hub.challenge")
        )
        if challenge:
            return PlainTextResponse(challenge)
        return {"success": True, "message": "Webhook verified"}

    @router.post("/webhooks/whatsapp")
    async def receive_webhook(request: Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Webhook body is not valid JSON")
            body = {}
        if not isinstance(body, dict):
            body = {}
        try:
            ack = _service(request).handle_inbound_webhook(body)
        except Exception as exc:
            logger.warning("Webhook payload not queued: {}", exc)
            ack = WebhookAck()
        return ack.model_dump()

    @router.get("/messages/patient/{patient_id}")
    async def patient_messages(request: Request, patient_id: str) -> dict[str, Any]:
        messages = await _service(request).patient_messages(patient_id)
        return {"success": True, "count": len(messages), "data": messages}

    @router.get("/messages/appointment/{appointment_id}")
    async def appointment_messages(request: Request, appointment_id: str) -> dict[str, Any]:
        messages = await _service(request).appointment_messages(appointment_id)
        return {"success": True, "count": len(messages), "data": messages}

    @router.post("/messages/send")
    async def send_custom_message(request: Request, body: CustomMessage) -> dict[str, Any]:
        message = await _service(request).send_custom_message(
            body.patient_id,
            content=body.content,
            template_id=body.template_id,
            variables=body.variables,
            appointment_id=body.appointment_id,
        )
        return _ok(message)

    @router.post("/reminders/sweep")
    async def run_sweep(request: Request) -> dict[str, Any]:
        return _ok(await _service(request).run_sweep())

    return router


def create_app(service: ClinicService, config: AppConfig) -> FastAPI:
    """Build the HTTP surface over an already wired ``ClinicService``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if config.reminders.enabled:
            service.start()
        else:
            logger.info("Reminder scheduler disabled")
        yield
        await service.close()

    app = FastAPI(title="clinicflow", lifespan=lifespan)
    app.state.service = service
    app.add_exception_handler(ClinicError, _clinic_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.include_router(_build_router(config), prefix="/api")
    return app
