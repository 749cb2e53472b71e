import datetime as dt
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from clinicflow.domain.exceptions import NotFoundError, TransportError, ValidationError
from clinicflow.domain.models import (
    CONFIRMATION_BUTTONS,
    REMINDER_INACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    BookingNotification,
    Department,
    Message,
    MessageDirection,
    MessageStatus,
    MessageTemplate,
    Patient,
    Provider,
    TemplateType,
    TemplateVariables,
    new_id,
    utcnow,
)
from clinicflow.locks import KeyedLocks
from clinicflow.notifications.parsing_helpers import normalize_phone
from clinicflow.notifications.ports import MessageTransportProtocol
from clinicflow.scheduling.datetime_helpers import date_to_long, time_range
from clinicflow.store.guard import guarded
from clinicflow.store.ports import Store

DEFAULT_PREPARATION = "No special preparation required."
DEFAULT_REASON = "No reason provided"
CONFIRMATION_PROMPT = "Please confirm your appointment:"

_STATUS_TEMPLATES: dict[AppointmentStatus, TemplateType] = {
    AppointmentStatus.RESCHEDULED: TemplateType.APPOINTMENT_RESCHEDULED,
    AppointmentStatus.CANCELLED: TemplateType.APPOINTMENT_CANCELLED,
}


@dataclass(frozen=True)
class _Recipient:
    appointment: Appointment
    patient: Patient
    provider: Provider
    department: Department
    number: str


class NotificationDispatcher:
    """Renders appointment notifications and hands them to the message transport.

    Every attempt, successful or not, is appended to the message log.
    Transport failures are recorded as ``failed`` messages and re-raised as
    ``TransportError``; callers decide whether that fails their operation.
    """

    def __init__(
        self,
        store: Store,
        transport: MessageTransportProtocol,
        *,
        default_country_code: str = "1",
        appointment_locks: KeyedLocks | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._store = store
        self._transport = transport
        self._country_code = default_country_code
        self._locks = appointment_locks or KeyedLocks()
        self._clock = clock

    # -- public API -------------------------------------------------------------

    async def send_reminder(self, appointment_id: str, template_id: str | None = None) -> Message:
        """Send a reminder now and mark the appointment's earliest unsent reminder as sent."""
        recipient = await self._recipient(appointment_id)
        template = await self._template(TemplateType.APPOINTMENT_REMINDER, template_id)

        async with self._locks.hold(appointment_id):
            message = await self._send_reminder_locked(recipient, template)

        logger.info("Reminder sent for appointment {}", appointment_id)
        return message

    async def dispatch_due_reminder(self, appointment_id: str, now: dt.datetime) -> Message | None:
        """Send one reminder if the appointment still has one due at ``now``.

        Re-reads the appointment and its reminders under the appointment lock,
        so a reschedule or cancellation that landed after the sweep picked the
        appointment results in no send.
        """
        recipient = await self._recipient(appointment_id)
        template = await self._template(TemplateType.APPOINTMENT_REMINDER)

        async with self._locks.hold(appointment_id):
            current = await guarded(self._store.get_appointment(appointment_id), "Appointment lookup")
            if current is None or current.status in REMINDER_INACTIVE_STATUSES:
                logger.info("Appointment {} no longer takes reminders; skipping", appointment_id)
                return None
            reminders = await guarded(self._store.list_reminders(appointment_id), "Reminder lookup")
            if not any(not r.sent and r.scheduled_time <= now for r in reminders):
                return None
            message = await self._send_reminder_locked(
                _Recipient(
                    appointment=current,
                    patient=recipient.patient,
                    provider=recipient.provider,
                    department=recipient.department,
                    number=recipient.number,
                ),
                template,
            )

        logger.info("Due reminder sent for appointment {}", appointment_id)
        return message

    async def send_booking_notification(self, appointment_id: str) -> BookingNotification:
        """Send the booking confirmation followed by a confirm/reschedule/cancel prompt."""
        recipient = await self._recipient(appointment_id)
        template = await self._template(TemplateType.APPOINTMENT_CONFIRMATION)
        variables = self._variables(recipient.appointment, recipient)

        notification = await self._deliver(
            recipient.patient.patient_id,
            appointment_id,
            content=variables.render(template.content),
            template=template,
            variables=variables,
            send=lambda: self._transport.send_templated(
                recipient.number, template.external_template_id, variables.as_transport()
            ),
        )
        interactive = await self._deliver(
            recipient.patient.patient_id,
            appointment_id,
            content=CONFIRMATION_PROMPT,
            send=lambda: self._transport.send_interactive(
                recipient.number, CONFIRMATION_PROMPT, list(CONFIRMATION_BUTTONS)
            ),
        )

        logger.info("Booking notification sent for appointment {}", appointment_id)
        return BookingNotification(notification=notification, interactive=interactive)

    async def send_status_update(self, appointment_id: str) -> Message:
        """Notify the patient of the appointment's current status."""
        recipient = await self._recipient(appointment_id)
        appointment = recipient.appointment
        template_type = _STATUS_TEMPLATES.get(
            appointment.status, TemplateType.APPOINTMENT_CONFIRMATION
        )
        template = await self._template(template_type)

        variables = self._variables(appointment, recipient)
        details = appointment.reschedule_details
        extra: dict[str, str | None] = {
            "reason": appointment.cancel_reason or (details.reason if details else DEFAULT_REASON),
        }
        if appointment.status == AppointmentStatus.RESCHEDULED and details and details.previous_date:
            extra["previous_date"] = date_to_long(details.previous_date)
            extra["previous_time"] = time_range(
                details.previous_start_time or "", details.previous_end_time or ""
            )
        variables = variables.model_copy(update=extra)

        message = await self._deliver(
            recipient.patient.patient_id,
            appointment_id,
            content=variables.render(template.content),
            template=template,
            variables=variables,
            send=lambda: self._transport.send_templated(
                recipient.number, template.external_template_id, variables.as_transport()
            ),
        )
        logger.info(
            "Status update ({}) sent for appointment {}", appointment.status.value, appointment_id
        )
        return message

    async def send_text(
        self, patient_id: str, text: str, appointment_id: str | None = None
    ) -> Message:
        """Send a plain-text message, e.g. an acknowledgment of a patient reply."""
        patient = await guarded(self._store.get_patient(patient_id), "Patient lookup")
        if patient is None:
            raise NotFoundError("Patient", patient_id)
        number = self._number(patient)

        return await self._deliver(
            patient_id,
            appointment_id,
            content=text,
            send=lambda: self._transport.send_text(number, text),
        )

    async def send_custom_message(
        self,
        patient_id: str,
        *,
        content: str | None = None,
        template_id: str | None = None,
        variables: TemplateVariables | None = None,
        appointment_id: str | None = None,
    ) -> Message:
        """Send a staff-written message, either free text or a chosen template.

        A templated message without explicit ``variables`` takes them from
        the linked appointment.

        Raises:
            NotFoundError: If the patient, appointment or template is unknown.
            ValidationError: If there is nothing to send.
        """
        if appointment_id:
            recipient = await self._recipient(appointment_id)
            if recipient.patient.patient_id != patient_id:
                raise ValidationError(
                    f"Appointment {appointment_id} does not belong to patient {patient_id}"
                )
            patient = recipient.patient
        else:
            recipient = None
            patient = await guarded(self._store.get_patient(patient_id), "Patient lookup")
            if patient is None:
                raise NotFoundError("Patient", patient_id)
        number = self._number(patient)

        if not template_id:
            if not content or not content.strip():
                raise ValidationError("Message content is required")
            text = content
            message = await self._deliver(
                patient_id,
                appointment_id,
                content=text,
                send=lambda: self._transport.send_text(number, text),
            )
            logger.info("Custom text message sent to patient {}", patient_id)
            return message

        template = await self._template(TemplateType.GENERAL_NOTIFICATION, template_id)
        if variables is None:
            if recipient is None:
                raise ValidationError(
                    "Template variables or an appointment are required for a templated message"
                )
            variables = self._variables(recipient.appointment, recipient)
        values = variables

        message = await self._deliver(
            patient_id,
            appointment_id,
            content=values.render(template.content),
            template=template,
            variables=values,
            send=lambda: self._transport.send_templated(
                number, template.external_template_id, values.as_transport()
            ),
        )
        logger.info("Custom {} message sent to patient {}", template.type.value, patient_id)
        return message

    # -- helpers ----------------------------------------------------------------

    async def _send_reminder_locked(
        self, recipient: _Recipient, template: MessageTemplate
    ) -> Message:
        appointment_id = recipient.appointment.appointment_id
        variables = self._variables(recipient.appointment, recipient)

        async def mark_sent(message_id: str) -> None:
            await guarded(
                self._store.mark_earliest_unsent_sent(appointment_id, message_id, self._clock()),
                "Reminder update",
            )

        return await self._deliver(
            recipient.patient.patient_id,
            appointment_id,
            content=variables.render(template.content),
            template=template,
            variables=variables,
            send=lambda: self._transport.send_templated(
                recipient.number, template.external_template_id, variables.as_transport()
            ),
            after_send=mark_sent,
        )

    async def _recipient(self, appointment_id: str) -> _Recipient:
        appointment = await guarded(self._store.get_appointment(appointment_id), "Appointment lookup")
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)

        patient = await guarded(self._store.get_patient(appointment.patient_id), "Patient lookup")
        if patient is None:
            raise NotFoundError("Patient", appointment.patient_id)
        provider = await guarded(self._store.get_provider(appointment.provider_id), "Doctor lookup")
        if provider is None:
            raise NotFoundError("Doctor", appointment.provider_id)
        department = await guarded(
            self._store.get_department(appointment.department_id), "Department lookup"
        )
        if department is None:
            raise NotFoundError("Department", appointment.department_id)

        return _Recipient(
            appointment=appointment,
            patient=patient,
            provider=provider,
            department=department,
            number=self._number(patient),
        )

    def _number(self, patient: Patient) -> str:
        number = normalize_phone(patient.phone_number, self._country_code)
        if number is None:
            raise ValidationError(f"Patient {patient.patient_id} has no usable phone number")
        return number

    async def _template(
        self, template_type: TemplateType, template_id: str | None = None
    ) -> MessageTemplate:
        if template_id:
            template = await guarded(self._store.get_template(template_id), "Template lookup")
            if template is None:
                raise NotFoundError("Message template", template_id)
            return template

        template = await guarded(
            self._store.find_active_template(template_type), "Template lookup"
        )
        if template is None:
            raise NotFoundError(f"Active {template_type.value} template")
        return template

    def _variables(self, appointment: Appointment, recipient: _Recipient) -> TemplateVariables:
        return TemplateVariables(
            patient_name=recipient.patient.name,
            appointment_date=date_to_long(appointment.date),
            appointment_time=time_range(appointment.start_time, appointment.end_time),
            doctor_name=recipient.provider.name,
            department=recipient.department.name,
            location=appointment.location.describe(),
            preparation=appointment.preparation_instructions or DEFAULT_PREPARATION,
        )

    async def _deliver(
        self,
        patient_id: str,
        appointment_id: str | None,
        *,
        content: str,
        send: Callable[[], Awaitable[str]],
        template: MessageTemplate | None = None,
        variables: TemplateVariables | None = None,
        after_send: Callable[[str], Awaitable[None]] | None = None,
    ) -> Message:
        """Call the transport and append the attempt to the message log.

        ``after_send`` runs between a successful send and the log write, so
        state that guards against re-sending is updated first.
        """
        draft = Message(
            message_id=new_id(),
            patient_id=patient_id,
            appointment_id=appointment_id,
            direction=MessageDirection.OUTBOUND,
            template_id=template.template_id if template else None,
            content=content,
            variables=variables,
            created_at=self._clock(),
        )

        try:
            external_id = await send()
        except TransportError as exc:
            await self._record_failure(draft, exc)
            raise
        except Exception as exc:
            error = TransportError(f"Message send failed: {exc}")
            await self._record_failure(draft, error)
            raise error from exc

        if after_send is not None:
            await after_send(draft.message_id)

        sent = draft.model_copy(
            update={
                "external_id": external_id,
                "status": MessageStatus.SENT,
                "sent_at": self._clock(),
            }
        )
        return await guarded(self._store.add_message(sent), "Message log write")

    async def _record_failure(self, draft: Message, error: TransportError) -> None:
        logger.warning("Message to patient {} failed: {}", draft.patient_id, error)
        failed = draft.model_copy(
            update={
                "status": MessageStatus.FAILED,
                "status_details": str(error),
                "failed_at": self._clock(),
            }
        )
        try:
            await self._store.add_message(failed)
        except Exception:
            logger.exception("Could not record failed message {}", draft.message_id)
