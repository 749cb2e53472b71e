import datetime as dt
import re
import uuid
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

WallClock = Annotated[str, StringConstraints(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]
"""A zero-padded 24h ``HH:MM`` string; such strings order correctly when compared."""

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class AppointmentStatus(str, Enum):
    """Lifecycle states of an appointment."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no-show"


# Bookings in these states never block a provider's time.
CONFLICT_EXEMPT_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})

# Reminders are neither dispatched nor regenerated for these states.
REMINDER_INACTIVE_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)


class AppointmentType(str, Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow-up"
    PROCEDURE = "procedure"
    TEST = "test"
    VACCINATION = "vaccination"
    OTHER = "other"


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    SMS = "sms"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ReplyAction(str, Enum):
    """What a patient asked for in an inbound reply."""

    CONFIRM = "confirm"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    OTHER = "other"
    NONE = "none"


ACTIONABLE_REPLIES = frozenset({ReplyAction.CONFIRM, ReplyAction.RESCHEDULE, ReplyAction.CANCEL})


class MessageDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class TemplateType(str, Enum):
    APPOINTMENT_REMINDER = "appointment_reminder"
    APPOINTMENT_CONFIRMATION = "appointment_confirmation"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    GENERAL_NOTIFICATION = "general_notification"
    FOLLOW_UP = "follow_up"


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def of(cls, date: dt.date) -> "Weekday":
        return list(cls)[date.weekday()]


# -- Directory records (owned by peripheral CRUD) --------------------------------


class Patient(BaseModel):
    """A patient reachable over the messaging channel."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    name: str
    phone_number: str


class WorkingHours(BaseModel):
    model_config = ConfigDict(frozen=True)

    day: Weekday
    start_time: WallClock
    end_time: WallClock
    is_available: bool = True


class Provider(BaseModel):
    """A clinician whose time is booked."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    name: str
    specialization: str = ""
    department_id: str | None = None
    available_hours: list[WorkingHours] = Field(default_factory=list)
    average_appointment_duration: int = Field(default=30, gt=0)

    def hours_on(self, date: dt.date) -> WorkingHours | None:
        """Return the available working window for ``date``'s weekday, if any."""
        day = Weekday.of(date)
        for hours in self.available_hours:
            if hours.day == day and hours.is_available:
                return hours
        return None


class DepartmentLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    building: str = ""
    floor: str = ""
    room_number_prefix: str = ""


class Department(BaseModel):
    model_config = ConfigDict(frozen=True)

    department_id: str
    name: str
    location: DepartmentLocation = Field(default_factory=DepartmentLocation)


# -- Appointments ----------------------------------------------------------------


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    building: str = ""
    floor: str = ""
    room_number: str = ""

    def describe(self) -> str:
        return f"{self.building}, Floor {self.floor}, Room {self.room_number}"


class RescheduleDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous_date: dt.date | None = None
    previous_start_time: str | None = None
    previous_end_time: str | None = None
    reason: str = "No reason provided"


class Appointment(BaseModel):
    """A booked slot on a provider's calendar."""

    model_config = ConfigDict(frozen=True)

    appointment_id: str
    patient_id: str
    provider_id: str
    department_id: str
    date: dt.date
    start_time: WallClock
    end_time: WallClock
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    type: AppointmentType = AppointmentType.CONSULTATION
    reason: str = ""
    notes: str | None = None
    location: Location = Field(default_factory=Location)
    preparation_instructions: str | None = None
    documents_required: list[str] = Field(default_factory=list)
    reschedule_details: RescheduleDetails | None = None
    cancel_reason: str | None = None
    created_by: str | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)

    @property
    def blocks_calendar(self) -> bool:
        return self.status not in CONFLICT_EXEMPT_STATUSES


class ReminderResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    received: bool = False
    action: ReplyAction = ReplyAction.NONE
    received_at: dt.datetime | None = None
    content: str | None = None


class Reminder(BaseModel):
    """A one-shot notification scheduled ahead of an appointment."""

    model_config = ConfigDict(frozen=True)

    channel: Channel = Channel.WHATSAPP
    scheduled_time: dt.datetime
    sent: bool = False
    sent_at: dt.datetime | None = None
    message_id: str | None = None
    status: ReminderStatus = ReminderStatus.PENDING
    response: ReminderResponse | None = None


class AppointmentRequest(BaseModel):
    """A request to book an appointment."""

    model_config = ConfigDict(frozen=True)

    patient_id: str = Field(min_length=1)
    provider_id: str = Field(min_length=1)
    department_id: str = Field(min_length=1)
    date: dt.date
    start_time: WallClock
    end_time: WallClock
    type: AppointmentType = AppointmentType.CONSULTATION
    reason: str = Field(default="", max_length=200)
    notes: str | None = Field(default=None, max_length=500)
    location: Location | None = None
    preparation_instructions: str | None = None
    documents_required: list[str] = Field(default_factory=list)
    send_notification: bool = False

    @model_validator(mode="after")
    def _check_window(self) -> "AppointmentRequest":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class AppointmentUpdate(BaseModel):
    """A partial update; ``None`` leaves the field unchanged."""

    model_config = ConfigDict(frozen=True)

    provider_id: str | None = None
    department_id: str | None = None
    date: dt.date | None = None
    start_time: WallClock | None = None
    end_time: WallClock | None = None
    status: AppointmentStatus | None = None
    type: AppointmentType | None = None
    reason: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=500)
    location: Location | None = None
    preparation_instructions: str | None = None
    reschedule_reason: str | None = None
    cancel_reason: str | None = None


class Slot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: str
    end_time: str
    available: bool


class DayAvailability(BaseModel):
    """Bookable slots for one provider on one day."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    date: dt.date
    available: bool
    working_hours: WorkingHours | None = None
    slots: list[Slot] = Field(default_factory=list)
    message: str | None = None


# -- Messaging -------------------------------------------------------------------


class TemplateVariables(BaseModel):
    """The closed set of values a notification template may reference."""

    model_config = ConfigDict(frozen=True)

    patient_name: str
    appointment_date: str
    appointment_time: str
    doctor_name: str
    department: str
    location: str
    preparation: str
    reason: str | None = None
    previous_date: str | None = None
    previous_time: str | None = None

    def as_transport(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)

    def render(self, content: str) -> str:
        """Substitute ``{{name}}`` placeholders; unknown names are left as-is."""
        values = self.as_transport()
        return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), content)


class MessageTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: str
    name: str
    type: TemplateType
    content: str = Field(max_length=1000)
    external_template_id: str
    is_active: bool = True


class Message(BaseModel):
    """One entry of the append-only outbound/inbound message log."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=new_id)
    patient_id: str
    appointment_id: str | None = None
    direction: MessageDirection
    channel: Channel = Channel.WHATSAPP
    template_id: str | None = None
    content: str
    variables: TemplateVariables | None = None
    external_id: str | None = None
    status: MessageStatus = MessageStatus.QUEUED
    status_details: str | None = None
    sent_at: dt.datetime | None = None
    delivered_at: dt.datetime | None = None
    read_at: dt.datetime | None = None
    failed_at: dt.datetime | None = None
    response_message_id: str | None = None
    response_action: ReplyAction = ReplyAction.NONE
    created_at: dt.datetime = Field(default_factory=utcnow)


class InboundMessage(BaseModel):
    """A reply extracted from a transport webhook payload."""

    model_config = ConfigDict(frozen=True)

    sender: str
    external_id: str | None = None
    received_at: dt.datetime
    content: str
    action: ReplyAction = ReplyAction.NONE
    in_reply_to: str | None = None


class BookingNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    notification: Message
    interactive: Message


class SweepOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    appointment_id: str
    status: str
    message_id: str | None = None
    message: str | None = None


class SweepResult(BaseModel):
    """Summary of one reminder sweep."""

    model_config = ConfigDict(frozen=True)

    started_at: dt.datetime
    skipped: bool = False
    dispatched: int = 0
    errors: int = 0
    details: list[SweepOutcome] = Field(default_factory=list)


class WebhookAck(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Webhook received"


class Button(BaseModel):
    """A quick-reply button on an interactive message."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str


CONFIRMATION_BUTTONS: tuple[Button, ...] = (
    Button(id=ReplyAction.CONFIRM.value, title="Confirm"),
    Button(id=ReplyAction.RESCHEDULE.value, title="Reschedule"),
    Button(id=ReplyAction.CANCEL.value, title="Cancel"),
)
