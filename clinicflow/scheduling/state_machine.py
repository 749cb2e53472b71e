import datetime as dt
import random
from collections.abc import Callable
from typing import Protocol

from loguru import logger

from clinicflow.domain.exceptions import ClinicError, ConflictError, NotFoundError, ValidationError
from clinicflow.domain.models import (
    REMINDER_INACTIVE_STATUSES,
    Appointment,
    AppointmentRequest,
    AppointmentStatus,
    AppointmentUpdate,
    Department,
    Location,
    Reminder,
    RescheduleDetails,
    new_id,
    utcnow,
)
from clinicflow.locks import KeyedLocks
from clinicflow.scheduling.availability import AvailabilityEngine
from clinicflow.scheduling.reminders import build_reminders
from clinicflow.store.guard import guarded
from clinicflow.store.ports import Store

DEFAULT_REASON = "No reason provided"

_TERMINAL: frozenset[AppointmentStatus] = frozenset()

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.RESCHEDULED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.RESCHEDULED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    # A rescheduled appointment re-enters the active lifecycle once a new time is set.
    AppointmentStatus.RESCHEDULED: frozenset(AppointmentStatus),
    AppointmentStatus.CANCELLED: _TERMINAL,
    AppointmentStatus.COMPLETED: _TERMINAL,
    AppointmentStatus.NO_SHOW: _TERMINAL,
}


class StatusNotifier(Protocol):
    """The slice of the notification dispatcher the state machine needs."""

    async def send_booking_notification(self, appointment_id: str) -> object: ...

    async def send_status_update(self, appointment_id: str) -> object: ...


def parse_status(value: str | AppointmentStatus) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    try:
        return AppointmentStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in AppointmentStatus)
        raise ValidationError(f"Status must be one of: {valid}") from None


def check_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    """Raise ``ValidationError`` unless ``current`` may move to ``target``.

    Re-entering the current status is always allowed.
    """
    if current == target or target in ALLOWED_TRANSITIONS[current]:
        return
    raise ValidationError(
        f"Cannot change appointment status from {current.value} to {target.value}"
    )


def _check_window(start_time: str, end_time: str) -> None:
    if start_time >= end_time:
        raise ValidationError("start_time must be before end_time")


def _assign_location(department: Department) -> Location:
    prefix = department.location.room_number_prefix
    if not prefix:
        return Location()
    return Location(
        building=department.location.building,
        floor=department.location.floor,
        room_number=f"{prefix}-{random.randint(1, 100)}",
    )


class AppointmentStateMachine:
    """Owns the appointment lifecycle.

    Any write that moves an appointment in time runs inside the affected
    providers' critical sections: the availability check and the commit
    form one step, so two concurrent bookings cannot both claim a slot.
    Reminders are replaced under the appointment's own lock, which the
    notification dispatcher also takes while sending.
    """

    def __init__(
        self,
        store: Store,
        availability: AvailabilityEngine,
        notifier: StatusNotifier | None = None,
        *,
        clinic_tz: dt.tzinfo = dt.timezone.utc,
        provider_locks: KeyedLocks | None = None,
        appointment_locks: KeyedLocks | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._store = store
        self._availability = availability
        self._notifier = notifier
        self._clinic_tz = clinic_tz
        self._provider_locks = provider_locks or KeyedLocks()
        self._appointment_locks = appointment_locks or KeyedLocks()
        self._clock = clock

    def attach_notifier(self, notifier: StatusNotifier) -> None:
        self._notifier = notifier

    # -- queries ----------------------------------------------------------------

    async def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = await guarded(self._store.get_appointment(appointment_id), "Appointment lookup")
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    async def list_reminders(self, appointment_id: str) -> list[Reminder]:
        await self.get_appointment(appointment_id)
        return await guarded(self._store.list_reminders(appointment_id), "Reminder lookup")

    # -- commands ---------------------------------------------------------------

    async def create_appointment(
        self, request: AppointmentRequest, actor_id: str | None = None
    ) -> Appointment:
        """Book a new appointment in ``scheduled`` status with fresh reminders.

        Raises:
            ValidationError: If the time window is empty or reversed.
            NotFoundError: If the patient, doctor or department is unknown.
            ConflictError: If the doctor is already booked in that window.
        """
        _check_window(request.start_time, request.end_time)
        logger.info(
            "Booking appointment: provider={}, date={}, {}-{}",
            request.provider_id,
            request.date,
            request.start_time,
            request.end_time,
        )

        if await guarded(self._store.get_patient(request.patient_id), "Patient lookup") is None:
            raise NotFoundError("Patient", request.patient_id)
        if await guarded(self._store.get_provider(request.provider_id), "Doctor lookup") is None:
            raise NotFoundError("Doctor", request.provider_id)
        department = await guarded(
            self._store.get_department(request.department_id), "Department lookup"
        )
        if department is None:
            raise NotFoundError("Department", request.department_id)

        location = request.location
        if location is None or not location.room_number:
            location = _assign_location(department)

        now = self._clock()
        appointment = Appointment(
            appointment_id=new_id(),
            patient_id=request.patient_id,
            provider_id=request.provider_id,
            department_id=request.department_id,
            date=request.date,
            start_time=request.start_time,
            end_time=request.end_time,
            type=request.type,
            reason=request.reason,
            notes=request.notes,
            location=location,
            preparation_instructions=request.preparation_instructions,
            documents_required=list(request.documents_required),
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )

        async with self._provider_locks.hold(request.provider_id):
            available = await guarded(
                self._availability.check_availability(
                    request.provider_id, request.date, request.start_time, request.end_time
                ),
                "Availability check",
            )
            if not available:
                raise ConflictError(
                    request.provider_id, request.date, request.start_time, request.end_time
                )
            async with self._appointment_locks.hold(appointment.appointment_id):
                await guarded(self._store.add_appointment(appointment), "Appointment write")
                await self._regenerate_reminders(appointment)

        logger.info("Appointment created: id={}", appointment.appointment_id)

        if request.send_notification:
            await self._notify(appointment.appointment_id, booking=True)
        return appointment

    async def update_appointment(
        self, appointment_id: str, update: AppointmentUpdate
    ) -> Appointment:
        """Apply a partial update, including implicit reschedules and cancellations.

        Raises:
            NotFoundError: If the appointment is unknown.
            ValidationError: If the window or the status transition is invalid.
            ConflictError: If a time change collides with another booking.
        """
        current = await self.get_appointment(appointment_id)
        target_provider = update.provider_id or current.provider_id
        lock_keys = {current.provider_id, target_provider}

        async with self._provider_locks.hold(*lock_keys):
            async with self._appointment_locks.hold(appointment_id):
                # Re-read inside the critical section; the first read only chose the locks.
                current = await self.get_appointment(appointment_id)
                updated, time_changed = await self._apply_update(current, update)
                await guarded(self._store.update_appointment(updated), "Appointment write")
                if time_changed and updated.status not in REMINDER_INACTIVE_STATUSES:
                    await self._regenerate_reminders(updated)

        logger.info("Appointment updated: id={}", appointment_id)

        status_changed = updated.status != current.status
        if status_changed or updated.reschedule_details != current.reschedule_details:
            await self._notify(appointment_id)
        return updated

    async def change_status(
        self,
        appointment_id: str,
        status: str | AppointmentStatus,
        reason: str | None = None,
        *,
        patient_initiated: bool = False,
    ) -> Appointment:
        """Move an appointment to ``status`` without touching its time.

        Reminders are left as they are.  Unless the change came from the
        patient, a status notification follows.
        """
        target = parse_status(status)

        async with self._appointment_locks.hold(appointment_id):
            current = await self.get_appointment(appointment_id)
            check_transition(current.status, target)

            changes: dict[str, object] = {"status": target, "updated_at": self._clock()}
            if target == AppointmentStatus.CANCELLED:
                changes["cancel_reason"] = reason or current.cancel_reason or DEFAULT_REASON
            elif target == AppointmentStatus.RESCHEDULED and reason:
                # The new slot is set later through update_appointment.
                changes["reschedule_details"] = RescheduleDetails(reason=reason)

            updated = current.model_copy(update=changes)
            await guarded(self._store.update_appointment(updated), "Appointment write")

        logger.info(
            "Appointment {} status: {} -> {}", appointment_id, current.status.value, target.value
        )
        if not patient_initiated:
            await self._notify(appointment_id)
        return updated

    # -- helpers ----------------------------------------------------------------

    async def _apply_update(
        self, current: Appointment, update: AppointmentUpdate
    ) -> tuple[Appointment, bool]:
        """Compute the updated appointment and whether its time moved. Runs under the locks."""
        provider_id = update.provider_id or current.provider_id
        date = update.date or current.date
        start_time = update.start_time or current.start_time
        end_time = update.end_time or current.end_time

        time_changed = (
            date != current.date
            or start_time != current.start_time
            or end_time != current.end_time
        )
        moved = time_changed or provider_id != current.provider_id

        changes: dict[str, object] = {
            field: value
            for field, value in {
                "department_id": update.department_id,
                "type": update.type,
                "reason": update.reason,
                "notes": update.notes,
                "location": update.location,
                "preparation_instructions": update.preparation_instructions,
            }.items()
            if value is not None
        }
        changes["updated_at"] = self._clock()

        if update.status is not None:
            check_transition(current.status, update.status)
            changes["status"] = update.status

        if moved:
            _check_window(start_time, end_time)
            available = await guarded(
                self._availability.check_availability(
                    provider_id, date, start_time, end_time, exclude_id=current.appointment_id
                ),
                "Availability check",
            )
            if not available:
                raise ConflictError(provider_id, date, start_time, end_time)

            changes.update(
                provider_id=provider_id, date=date, start_time=start_time, end_time=end_time
            )
            if update.status == AppointmentStatus.RESCHEDULED:
                changes["reschedule_details"] = RescheduleDetails(
                    previous_date=current.date,
                    previous_start_time=current.start_time,
                    previous_end_time=current.end_time,
                    reason=update.reschedule_reason or DEFAULT_REASON,
                )
        elif update.status == AppointmentStatus.RESCHEDULED and update.reschedule_reason:
            changes["reschedule_details"] = RescheduleDetails(reason=update.reschedule_reason)

        if update.status == AppointmentStatus.CANCELLED:
            changes["cancel_reason"] = (
                update.cancel_reason
                or (current.cancel_reason if current.status == AppointmentStatus.CANCELLED else None)
                or DEFAULT_REASON
            )

        return current.model_copy(update=changes), time_changed

    async def _regenerate_reminders(self, appointment: Appointment) -> None:
        reminders = build_reminders(appointment, self._clinic_tz)
        await guarded(
            self._store.replace_reminders(appointment.appointment_id, reminders), "Reminder write"
        )

    async def _notify(self, appointment_id: str, *, booking: bool = False) -> None:
        """Send a notification; failures are logged and never fail the caller."""
        if self._notifier is None:
            return
        try:
            if booking:
                await self._notifier.send_booking_notification(appointment_id)
            else:
                await self._notifier.send_status_update(appointment_id)
        except ClinicError as exc:
            logger.warning(
                "Notification for appointment {} not delivered: {}", appointment_id, exc
            )
