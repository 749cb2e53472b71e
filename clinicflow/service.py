import datetime as dt
from collections.abc import Mapping
from typing import Any

from loguru import logger

from clinicflow.domain.exceptions import ValidationError
from clinicflow.domain.models import (
    Appointment,
    AppointmentRequest,
    AppointmentStatus,
    AppointmentUpdate,
    DayAvailability,
    Message,
    Reminder,
    SweepResult,
    TemplateVariables,
    WebhookAck,
)
from clinicflow.notifications.correlator import WebhookReceiver
from clinicflow.notifications.dispatcher import NotificationDispatcher
from clinicflow.notifications.ports import MessageTransportProtocol
from clinicflow.scheduling.availability import AvailabilityEngine
from clinicflow.scheduling.state_machine import AppointmentStateMachine
from clinicflow.scheduling.sweep import ReminderScheduler
from clinicflow.store.guard import guarded
from clinicflow.store.ports import MessageRepository


class ClinicService:
    """The operations exposed to the HTTP layer.

    Callers are already authorised; ``actor_id`` is whatever identity the
    auth gate attached to the request.
    """

    def __init__(
        self,
        *,
        availability: AvailabilityEngine,
        appointments: AppointmentStateMachine,
        dispatcher: NotificationDispatcher,
        scheduler: ReminderScheduler,
        webhooks: WebhookReceiver,
        transport: MessageTransportProtocol,
        messages: MessageRepository,
    ) -> None:
        self._availability = availability
        self._appointments = appointments
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._webhooks = webhooks
        self._transport = transport
        self._messages = messages

    @property
    def scheduler(self) -> ReminderScheduler:
        return self._scheduler

    async def create_appointment(
        self, request: AppointmentRequest, actor_id: str | None = None
    ) -> Appointment:
        return await self._appointments.create_appointment(request, actor_id)

    async def get_appointment(self, appointment_id: str) -> Appointment:
        return await self._appointments.get_appointment(appointment_id)

    async def list_reminders(self, appointment_id: str) -> list[Reminder]:
        return await self._appointments.list_reminders(appointment_id)

    async def update_appointment(
        self, appointment_id: str, update: AppointmentUpdate
    ) -> Appointment:
        return await self._appointments.update_appointment(appointment_id, update)

    async def change_status(
        self,
        appointment_id: str,
        status: str | AppointmentStatus | None,
        reason: str | None = None,
        *,
        patient_initiated: bool = False,
    ) -> Appointment:
        if not status:
            raise ValidationError("Please provide a status")
        return await self._appointments.change_status(
            appointment_id, status, reason, patient_initiated=patient_initiated
        )

    async def send_reminder(self, appointment_id: str, template_id: str | None = None) -> Message:
        """Send a reminder immediately. Transport failures surface to the caller."""
        return await self._dispatcher.send_reminder(appointment_id, template_id)

    async def get_availability(
        self,
        provider_id: str,
        date: dt.date,
        slot_duration_minutes: int | None = None,
    ) -> DayAvailability:
        return await guarded(
            self._availability.free_slots(provider_id, date, slot_duration_minutes),
            "Availability lookup",
        )

    def handle_inbound_webhook(self, payload: Mapping[str, Any]) -> WebhookAck:
        """Acknowledge at once; correlation runs in the background."""
        return self._webhooks.accept(payload)

    async def send_custom_message(
        self,
        patient_id: str,
        *,
        content: str | None = None,
        template_id: str | None = None,
        variables: TemplateVariables | None = None,
        appointment_id: str | None = None,
    ) -> Message:
        return await self._dispatcher.send_custom_message(
            patient_id,
            content=content,
            template_id=template_id,
            variables=variables,
            appointment_id=appointment_id,
        )

    async def patient_messages(self, patient_id: str) -> list[Message]:
        """The patient's message history, newest first."""
        messages = await guarded(
            self._messages.list_messages(patient_id=patient_id), "Message lookup"
        )
        return list(reversed(messages))

    async def appointment_messages(self, appointment_id: str) -> list[Message]:
        """The conversation about one appointment, oldest first."""
        return await guarded(
            self._messages.list_messages(appointment_id=appointment_id), "Message lookup"
        )

    async def drain_webhooks(self) -> None:
        """Wait until every accepted webhook payload has been correlated."""
        await self._webhooks.drain()

    async def run_sweep(self, now: dt.datetime | None = None) -> SweepResult:
        return await self._scheduler.sweep(now)

    def start(self) -> None:
        self._scheduler.start()

    async def close(self) -> None:
        await self._scheduler.stop()
        await self._webhooks.drain()
        await self._transport.close()
        logger.info("Clinic service closed")
