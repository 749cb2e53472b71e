import datetime as dt
from typing import Protocol

from clinicflow.domain.models import (
    Appointment,
    Department,
    Message,
    MessageTemplate,
    Patient,
    Provider,
    Reminder,
    ReminderResponse,
    TemplateType,
)


class AppointmentRepository(Protocol):
    """Storage for appointments. Reads are strongly consistent per provider."""

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        """Persist a new appointment."""
        ...

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        """Return the appointment, or None if unknown."""
        ...

    async def update_appointment(self, appointment: Appointment) -> Appointment:
        """Replace the stored appointment with the same id."""
        ...

    async def list_for_provider(self, provider_id: str, date: dt.date) -> list[Appointment]:
        """Return every appointment of ``provider_id`` on ``date``, in any status."""
        ...


class ReminderRepository(Protocol):
    """Reminders, owned per appointment and replaced as a whole."""

    async def replace_reminders(self, appointment_id: str, reminders: list[Reminder]) -> None:
        """Drop the appointment's reminders and store ``reminders`` instead."""
        ...

    async def list_reminders(self, appointment_id: str) -> list[Reminder]:
        """Return the appointment's reminders ordered by scheduled time."""
        ...

    async def due_reminders(self, now: dt.datetime) -> list[str]:
        """Return ids of appointments holding an unsent reminder scheduled at or before ``now``."""
        ...

    async def mark_earliest_unsent_sent(
        self, appointment_id: str, message_id: str, sent_at: dt.datetime
    ) -> Reminder | None:
        """Flag the earliest unsent reminder as sent. Returns it, or None if all were sent."""
        ...

    async def record_response(
        self, appointment_id: str, message_id: str | None, response: ReminderResponse
    ) -> Reminder | None:
        """Attach a patient reply to the reminder that carried ``message_id``.

        Falls back to the most recently sent reminder when ``message_id`` is
        None or matches none of them.
        """
        ...


class MessageRepository(Protocol):
    """Append-only message log."""

    async def add_message(self, message: Message) -> Message: ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def update_message(self, message: Message) -> Message: ...

    async def find_by_external_id(self, external_id: str) -> Message | None: ...

    async def recent_outbound(
        self, patient_id: str, since: dt.datetime, limit: int
    ) -> list[Message]:
        """Return up to ``limit`` outbound messages to the patient since ``since``, newest first."""
        ...

    async def list_messages(
        self, patient_id: str | None = None, appointment_id: str | None = None
    ) -> list[Message]:
        """Return logged messages matching every given filter, oldest first."""
        ...


class TemplateRepository(Protocol):
    async def get_template(self, template_id: str) -> MessageTemplate | None: ...

    async def find_active_template(self, template_type: TemplateType) -> MessageTemplate | None:
        """Return an active template of ``template_type``, if one exists."""
        ...


class DirectoryRepository(Protocol):
    """Read access to patients, providers and departments."""

    async def get_patient(self, patient_id: str) -> Patient | None: ...

    async def get_provider(self, provider_id: str) -> Provider | None: ...

    async def get_department(self, department_id: str) -> Department | None: ...

    async def find_patient_by_phone(self, number: str) -> Patient | None:
        """Return the patient whose normalised phone number equals ``number``."""
        ...


class Store(
    AppointmentRepository,
    ReminderRepository,
    MessageRepository,
    TemplateRepository,
    DirectoryRepository,
    Protocol,
):
    """Every repository the core needs, served by one backend."""
