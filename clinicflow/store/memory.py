import datetime as dt

from clinicflow.domain.models import (
    Appointment,
    Department,
    Message,
    MessageDirection,
    MessageTemplate,
    Patient,
    Provider,
    Reminder,
    ReminderResponse,
    ReminderStatus,
    TemplateType,
)
from clinicflow.notifications.parsing_helpers import normalize_phone


class InMemoryStore:
    """Process-local implementation of every repository port.

    Seed directory data and templates with the ``add_*`` helpers.  Set
    ``error`` to make the next repository call raise it, which lets tests
    simulate an unavailable store.
    """

    def __init__(self, default_country_code: str = "1") -> None:
        self._country_code = default_country_code
        self.patients: dict[str, Patient] = {}
        self.providers: dict[str, Provider] = {}
        self.departments: dict[str, Department] = {}
        self.templates: dict[str, MessageTemplate] = {}
        self.appointments: dict[str, Appointment] = {}
        self.reminders: dict[str, list[Reminder]] = {}
        self.messages: dict[str, Message] = {}

        self.error: Exception | None = None

    def _check(self) -> None:
        if self.error:
            error, self.error = self.error, None
            raise error

    # -- seeding ----------------------------------------------------------------

    def add_patient(self, patient: Patient) -> Patient:
        self.patients[patient.patient_id] = patient
        return patient

    def add_provider(self, provider: Provider) -> Provider:
        self.providers[provider.provider_id] = provider
        return provider

    def add_department(self, department: Department) -> Department:
        self.departments[department.department_id] = department
        return department

    def add_template(self, template: MessageTemplate) -> MessageTemplate:
        self.templates[template.template_id] = template
        return template

    # -- DirectoryRepository ----------------------------------------------------

    async def get_patient(self, patient_id: str) -> Patient | None:
        self._check()
        return self.patients.get(patient_id)

    async def get_provider(self, provider_id: str) -> Provider | None:
        self._check()
        return self.providers.get(provider_id)

    async def get_department(self, department_id: str) -> Department | None:
        self._check()
        return self.departments.get(department_id)

    async def find_patient_by_phone(self, number: str) -> Patient | None:
        self._check()
        for patient in self.patients.values():
            if normalize_phone(patient.phone_number, self._country_code) == number:
                return patient
        return None

    # -- TemplateRepository -----------------------------------------------------

    async def get_template(self, template_id: str) -> MessageTemplate | None:
        self._check()
        return self.templates.get(template_id)

    async def find_active_template(self, template_type: TemplateType) -> MessageTemplate | None:
        self._check()
        for template in self.templates.values():
            if template.type == template_type and template.is_active:
                return template
        return None

    # -- AppointmentRepository --------------------------------------------------

    async def add_appointment(self, appointment: Appointment) -> Appointment:
        self._check()
        self.appointments[appointment.appointment_id] = appointment
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        self._check()
        return self.appointments.get(appointment_id)

    async def update_appointment(self, appointment: Appointment) -> Appointment:
        self._check()
        if appointment.appointment_id not in self.appointments:
            raise KeyError(appointment.appointment_id)
        self.appointments[appointment.appointment_id] = appointment
        return appointment

    async def list_for_provider(self, provider_id: str, date: dt.date) -> list[Appointment]:
        self._check()
        return [
            a
            for a in self.appointments.values()
            if a.provider_id == provider_id and a.date == date
        ]

    # -- ReminderRepository -----------------------------------------------------

    async def replace_reminders(self, appointment_id: str, reminders: list[Reminder]) -> None:
        self._check()
        self.reminders[appointment_id] = sorted(reminders, key=lambda r: r.scheduled_time)

    async def list_reminders(self, appointment_id: str) -> list[Reminder]:
        self._check()
        return list(self.reminders.get(appointment_id, []))

    async def due_reminders(self, now: dt.datetime) -> list[str]:
        self._check()
        return [
            appointment_id
            for appointment_id, reminders in self.reminders.items()
            if any(not r.sent and r.scheduled_time <= now for r in reminders)
        ]

    async def mark_earliest_unsent_sent(
        self, appointment_id: str, message_id: str, sent_at: dt.datetime
    ) -> Reminder | None:
        self._check()
        reminders = self.reminders.get(appointment_id, [])
        for index, reminder in enumerate(reminders):
            if not reminder.sent:
                updated = reminder.model_copy(
                    update={
                        "sent": True,
                        "sent_at": sent_at,
                        "message_id": message_id,
                        "status": ReminderStatus.SENT,
                    }
                )
                reminders[index] = updated
                return updated
        return None

    async def record_response(
        self, appointment_id: str, message_id: str | None, response: ReminderResponse
    ) -> Reminder | None:
        self._check()
        reminders = self.reminders.get(appointment_id, [])
        sent = [i for i, r in enumerate(reminders) if r.sent]
        if not sent:
            return None
        matching = [i for i in sent if message_id and reminders[i].message_id == message_id]
        index = matching[0] if matching else sent[-1]
        updated = reminders[index].model_copy(
            update={"response": response, "status": ReminderStatus.READ}
        )
        reminders[index] = updated
        return updated

    # -- MessageRepository ------------------------------------------------------

    async def add_message(self, message: Message) -> Message:
        self._check()
        self.messages[message.message_id] = message
        return message

    async def get_message(self, message_id: str) -> Message | None:
        self._check()
        return self.messages.get(message_id)

    async def update_message(self, message: Message) -> Message:
        self._check()
        if message.message_id not in self.messages:
            raise KeyError(message.message_id)
        self.messages[message.message_id] = message
        return message

    async def find_by_external_id(self, external_id: str) -> Message | None:
        self._check()
        for message in self.messages.values():
            if message.external_id == external_id:
                return message
        return None

    async def recent_outbound(
        self, patient_id: str, since: dt.datetime, limit: int
    ) -> list[Message]:
        self._check()
        outbound = [
            m
            for m in self.messages.values()
            if m.patient_id == patient_id
            and m.direction == MessageDirection.OUTBOUND
            and m.created_at >= since
        ]
        outbound.sort(key=lambda m: m.created_at, reverse=True)
        return outbound[:limit]

    async def list_messages(
        self, patient_id: str | None = None, appointment_id: str | None = None
    ) -> list[Message]:
        self._check()
        matching = [
            m
            for m in self.messages.values()
            if (patient_id is None or m.patient_id == patient_id)
            and (appointment_id is None or m.appointment_id == appointment_id)
        ]
        return sorted(matching, key=lambda m: m.created_at)
