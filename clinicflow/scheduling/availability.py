import datetime as dt
from collections.abc import Iterable

from loguru import logger

from clinicflow.domain.exceptions import NotFoundError, ValidationError
from clinicflow.domain.models import (
    Appointment,
    AppointmentStatus,
    DayAvailability,
    Slot,
    WorkingHours,
)
from clinicflow.scheduling.datetime_helpers import from_minutes, to_minutes
from clinicflow.store.ports import AppointmentRepository, DirectoryRepository

NOT_AVAILABLE_MESSAGE = "Doctor is not available on this day"


def intervals_overlap(start_a: str, end_a: str, start_b: str, end_b: str) -> bool:
    """Half-open ``[start, end)`` overlap on zero-padded ``HH:MM`` strings.

    Covers every case at once: either interval starting inside the other,
    ending inside it, or containing it entirely.
    """
    return start_a < end_b and start_b < end_a


def find_conflicts(
    appointments: Iterable[Appointment],
    start_time: str,
    end_time: str,
    exclude_id: str | None = None,
) -> list[Appointment]:
    """Return the calendar-blocking appointments overlapping ``[start_time, end_time)``."""
    return [
        a
        for a in appointments
        if a.blocks_calendar
        and a.appointment_id != exclude_id
        and intervals_overlap(start_time, end_time, a.start_time, a.end_time)
    ]


def build_slots(
    hours: WorkingHours,
    duration_minutes: int,
    booked: Iterable[Appointment],
) -> list[Slot]:
    """Walk the working window in ``duration_minutes`` steps.

    A slot is emitted only if it ends within the window.  It is marked
    unavailable when it overlaps any of ``booked``.
    """
    booked = list(booked)
    window_end = to_minutes(hours.end_time)
    current = to_minutes(hours.start_time)
    slots: list[Slot] = []

    while current + duration_minutes <= window_end:
        start = from_minutes(current)
        end = from_minutes(current + duration_minutes)
        taken = any(intervals_overlap(start, end, a.start_time, a.end_time) for a in booked)
        slots.append(Slot(start_time=start, end_time=end, available=not taken))
        current += duration_minutes

    return slots


class AvailabilityEngine:
    """Answers double-booking questions from the current state of the store."""

    def __init__(self, appointments: AppointmentRepository, directory: DirectoryRepository) -> None:
        self._appointments = appointments
        self._directory = directory

    async def find_conflicts(
        self,
        provider_id: str,
        date: dt.date,
        start_time: str,
        end_time: str,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        existing = await self._appointments.list_for_provider(provider_id, date)
        return find_conflicts(existing, start_time, end_time, exclude_id)

    async def check_availability(
        self,
        provider_id: str,
        date: dt.date,
        start_time: str,
        end_time: str,
        exclude_id: str | None = None,
    ) -> bool:
        """Return True iff ``[start_time, end_time)`` is free on the provider's calendar.

        Cancelled and no-show appointments never block.  ``exclude_id`` lets
        an appointment be checked against everything but itself.
        """
        conflicts = await self.find_conflicts(provider_id, date, start_time, end_time, exclude_id)
        if conflicts:
            logger.info(
                "Slot {} {}-{} conflicts with {} appointment(s) for provider {}",
                date,
                start_time,
                end_time,
                len(conflicts),
                provider_id,
            )
        return not conflicts

    async def free_slots(
        self,
        provider_id: str,
        date: dt.date,
        slot_duration_minutes: int | None = None,
    ) -> DayAvailability:
        """Enumerate the provider's slots for ``date`` with their availability."""
        provider = await self._directory.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Doctor", provider_id)

        duration = (
            provider.average_appointment_duration
            if slot_duration_minutes is None
            else slot_duration_minutes
        )
        if duration <= 0:
            raise ValidationError("Slot duration must be a positive number of minutes")

        hours = provider.hours_on(date)
        if hours is None:
            return DayAvailability(
                provider_id=provider_id,
                date=date,
                available=False,
                message=NOT_AVAILABLE_MESSAGE,
            )

        existing = await self._appointments.list_for_provider(provider_id, date)
        booked = [a for a in existing if a.status != AppointmentStatus.CANCELLED]
        return DayAvailability(
            provider_id=provider_id,
            date=date,
            available=True,
            working_hours=hours,
            slots=build_slots(hours, duration, booked),
        )
