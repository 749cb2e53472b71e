import asyncio
import datetime as dt
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from loguru import logger

from clinicflow.domain.exceptions import ClinicError
from clinicflow.domain.models import (
    ACTIONABLE_REPLIES,
    Appointment,
    AppointmentStatus,
    InboundMessage,
    Message,
    MessageDirection,
    MessageStatus,
    ReminderResponse,
    ReplyAction,
    WebhookAck,
    utcnow,
)
from clinicflow.notifications.parsing_helpers import (
    extract_message_payloads,
    mask_phone,
    normalize_phone,
    parse_inbound,
)
from clinicflow.scheduling.datetime_helpers import date_to_long
from clinicflow.store.guard import guarded
from clinicflow.store.ports import Store

PATIENT_CANCEL_REASON = "Cancelled by patient via WhatsApp"
RECENT_OUTBOUND_LIMIT = 5

_ACTION_STATUS: dict[ReplyAction, AppointmentStatus] = {
    ReplyAction.CONFIRM: AppointmentStatus.CONFIRMED,
    ReplyAction.RESCHEDULE: AppointmentStatus.RESCHEDULED,
    ReplyAction.CANCEL: AppointmentStatus.CANCELLED,
}


class StatusChanger(Protocol):
    async def change_status(
        self,
        appointment_id: str,
        status: str | AppointmentStatus,
        reason: str | None = None,
        *,
        patient_initiated: bool = False,
    ) -> Appointment: ...


class TextSender(Protocol):
    async def send_text(
        self, patient_id: str, text: str, appointment_id: str | None = None
    ) -> Message: ...


def acknowledgment_text(action: ReplyAction, appointment: Appointment) -> str:
    when = f"{date_to_long(appointment.date)} at {appointment.start_time}"
    if action == ReplyAction.CONFIRM:
        return f"Thank you for confirming your appointment on {when}."
    if action == ReplyAction.RESCHEDULE:
        return (
            "We've received your request to reschedule your appointment. "
            "Our staff will contact you shortly to arrange a new time."
        )
    return (
        f"Your appointment on {when} has been cancelled. "
        "If you need to schedule a new appointment, please contact us."
    )


class MessageCorrelator:
    """Matches inbound replies to appointments and applies the patient's choice."""

    def __init__(
        self,
        store: Store,
        appointments: StatusChanger,
        sender: TextSender,
        *,
        default_country_code: str = "1",
        window_days: int = 7,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._store = store
        self._appointments = appointments
        self._sender = sender
        self._country_code = default_country_code
        self._window = dt.timedelta(days=window_days)
        self._clock = clock

    async def handle_inbound(self, payload: Mapping[str, Any]) -> Message | None:
        """Record one inbound message and act on it.

        Returns the stored inbound message, or None when the payload was
        dropped (no sender, unknown patient).
        """
        now = self._clock()
        inbound = parse_inbound(payload, now)
        if inbound is None:
            logger.warning("Dropping inbound payload without a sender")
            return None

        number = normalize_phone(inbound.sender, self._country_code)
        patient = (
            await guarded(self._store.find_patient_by_phone(number), "Patient lookup")
            if number
            else None
        )
        if patient is None:
            logger.warning("Received message from unknown phone number {}", mask_phone(inbound.sender))
            return None

        appointment = await self._recent_appointment(patient.patient_id, now)
        message = await guarded(
            self._store.add_message(
                Message(
                    patient_id=patient.patient_id,
                    appointment_id=appointment.appointment_id if appointment else None,
                    direction=MessageDirection.INBOUND,
                    content=inbound.content,
                    external_id=inbound.external_id,
                    status=MessageStatus.READ,
                    read_at=inbound.received_at,
                    response_action=inbound.action,
                    created_at=now,
                )
            ),
            "Message log write",
        )
        logger.info(
            "Inbound message {} from patient {} (action={}, appointment={})",
            message.message_id,
            patient.patient_id,
            inbound.action.value,
            appointment.appointment_id if appointment else None,
        )

        replied_to = await self._link_reply(inbound, message)

        if appointment is not None and inbound.action in ACTIONABLE_REPLIES:
            await self._apply_action(inbound, appointment, replied_to)

        return message

    async def _recent_appointment(self, patient_id: str, now: dt.datetime) -> Appointment | None:
        """The appointment of the newest outbound message in the window that carries one."""
        recent = await guarded(
            self._store.recent_outbound(patient_id, now - self._window, RECENT_OUTBOUND_LIMIT),
            "Message lookup",
        )
        for outbound in recent:
            if outbound.appointment_id:
                return await guarded(
                    self._store.get_appointment(outbound.appointment_id), "Appointment lookup"
                )
        return None

    async def _link_reply(self, inbound: InboundMessage, message: Message) -> Message | None:
        if not inbound.in_reply_to:
            return None
        outbound = await guarded(
            self._store.find_by_external_id(inbound.in_reply_to), "Message lookup"
        )
        if outbound is None:
            logger.warning("Reply references unknown message {}", inbound.in_reply_to)
            return None
        return await guarded(
            self._store.update_message(
                outbound.model_copy(
                    update={
                        "response_message_id": message.message_id,
                        "response_action": inbound.action,
                    }
                )
            ),
            "Message log write",
        )

    async def _apply_action(
        self,
        inbound: InboundMessage,
        appointment: Appointment,
        replied_to: Message | None,
    ) -> None:
        target = _ACTION_STATUS[inbound.action]
        reason = PATIENT_CANCEL_REASON if inbound.action == ReplyAction.CANCEL else None
        try:
            updated = await self._appointments.change_status(
                appointment.appointment_id, target, reason, patient_initiated=True
            )
        except ClinicError as exc:
            logger.warning(
                "Patient {} on appointment {} not applied: {}",
                inbound.action.value,
                appointment.appointment_id,
                exc,
            )
            return

        await guarded(
            self._store.record_response(
                appointment.appointment_id,
                replied_to.message_id if replied_to else None,
                ReminderResponse(
                    received=True,
                    action=inbound.action,
                    received_at=inbound.received_at,
                    content=inbound.content,
                ),
            ),
            "Reminder update",
        )

        try:
            await self._sender.send_text(
                updated.patient_id,
                acknowledgment_text(inbound.action, updated),
                appointment_id=updated.appointment_id,
            )
        except ClinicError as exc:
            logger.warning(
                "Acknowledgment for appointment {} not delivered: {}",
                appointment.appointment_id,
                exc,
            )


class WebhookReceiver:
    """Acknowledges webhook deliveries at once and correlates them in the background."""

    def __init__(self, correlator: MessageCorrelator) -> None:
        self._correlator = correlator
        self._pending: set[asyncio.Task[Message | None]] = set()

    def accept(self, body: Mapping[str, Any]) -> WebhookAck:
        for payload in extract_message_payloads(body):
            task = asyncio.create_task(self._process(payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return WebhookAck()

    async def drain(self) -> None:
        """Wait for every accepted payload to finish processing."""
        while self._pending:
            batch = list(self._pending)
            await asyncio.gather(*batch)
            self._pending.difference_update(batch)

    async def _process(self, payload: Mapping[str, Any]) -> Message | None:
        try:
            return await self._correlator.handle_inbound(payload)
        except Exception:
            logger.exception("Error processing webhook payload")
            return None
