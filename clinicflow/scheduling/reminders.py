import datetime as dt

from clinicflow.domain.models import Appointment, Channel, Reminder
from clinicflow.scheduling.datetime_helpers import local_start

# Reminder offsets ahead of the appointment start, earliest first.
REMINDER_OFFSETS: tuple[dt.timedelta, ...] = (
    dt.timedelta(hours=24),
    dt.timedelta(hours=2),
)


def build_reminders(
    appointment: Appointment,
    clinic_tz: dt.tzinfo,
    offsets: tuple[dt.timedelta, ...] = REMINDER_OFFSETS,
) -> list[Reminder]:
    """Fresh pending reminders for ``appointment``, one per offset before its start."""
    start = local_start(appointment.date, appointment.start_time, clinic_tz)
    return [
        Reminder(channel=Channel.WHATSAPP, scheduled_time=start - offset)
        for offset in sorted(offsets, reverse=True)
    ]
