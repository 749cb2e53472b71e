import asyncio
import datetime as dt
from collections.abc import Callable
from zoneinfo import ZoneInfo

import pytest

from clinicflow.domain.exceptions import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    TransportError,
    ValidationError,
)
from clinicflow.domain.models import (
    AppointmentRequest,
    AppointmentStatus,
    AppointmentUpdate,
    Location,
    RescheduleDetails,
)
from clinicflow.scheduling.availability import AvailabilityEngine
from clinicflow.scheduling.state_machine import (
    DEFAULT_REASON,
    AppointmentStateMachine,
    check_transition,
    parse_status,
)
from clinicflow.store.memory import InMemoryStore
from support import APPOINTMENT_DATE, DAY_BEFORE, TWO_HOURS_BEFORE, FrozenClock


class RecordingNotifier:
    def __init__(self) -> None:
        self.bookings: list[str] = []
        self.status_updates: list[str] = []
        self.error: Exception | None = None

    async def send_booking_notification(self, appointment_id: str) -> None:
        if self.error:
            raise self.error
        self.bookings.append(appointment_id)

    async def send_status_update(self, appointment_id: str) -> None:
        if self.error:
            raise self.error
        self.status_updates.append(appointment_id)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def machine(
    store: InMemoryStore, notifier: RecordingNotifier, clock: FrozenClock
) -> AppointmentStateMachine:
    return AppointmentStateMachine(
        store,
        AvailabilityEngine(store, store),
        notifier,
        clinic_tz=ZoneInfo("America/New_York"),
        clock=clock,
    )


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_books_scheduled_with_reminders(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        appointment = await machine.create_appointment(make_request(), actor_id="staff-7")

        assert appointment.status == AppointmentStatus.SCHEDULED
        assert appointment.created_by == "staff-7"
        assert store.appointments[appointment.appointment_id] == appointment
        reminders = await machine.list_reminders(appointment.appointment_id)
        assert [r.scheduled_time for r in reminders] == [DAY_BEFORE, TWO_HOURS_BEFORE]

    @pytest.mark.asyncio
    async def test_assigns_room_from_department(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        assert appointment.location.building == "Main"
        assert appointment.location.floor == "2"
        assert appointment.location.room_number.startswith("DX-")

    @pytest.mark.asyncio
    async def test_keeps_explicit_location(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        location = Location(building="Annex", floor="1", room_number="A-3")

        appointment = await machine.create_appointment(make_request(location=location))

        assert appointment.location == location

    @pytest.mark.asyncio
    async def test_overlap_is_rejected(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        await machine.create_appointment(make_request(start_time="10:00", end_time="10:30"))

        with pytest.raises(ConflictError, match="not available"):
            await machine.create_appointment(
                make_request(patient_id="pat-2", start_time="10:15", end_time="10:45")
            )

        assert len(store.appointments) == 1

    @pytest.mark.asyncio
    async def test_concurrent_bookings_for_one_slot(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        results = await asyncio.gather(
            *(machine.create_appointment(make_request()) for _ in range(5)),
            return_exceptions=True,
        )

        booked = [r for r in results if not isinstance(r, Exception)]
        assert len(booked) == 1
        assert all(isinstance(r, ConflictError) for r in results if r not in booked)
        assert len(store.appointments) == 1

    @pytest.mark.asyncio
    async def test_cancelled_booking_frees_the_slot(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        first = await machine.create_appointment(make_request())
        await machine.change_status(first.appointment_id, AppointmentStatus.CANCELLED)

        second = await machine.create_appointment(make_request(patient_id="pat-2"))

        assert second.status == AppointmentStatus.SCHEDULED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("field", "value", "kind"),
        [
            ("patient_id", "pat-404", "Patient"),
            ("provider_id", "doc-404", "Doctor"),
            ("department_id", "dep-404", "Department"),
        ],
        ids=["patient", "doctor", "department"],
    )
    async def test_unknown_references(
        self,
        machine: AppointmentStateMachine,
        make_request: Callable[..., AppointmentRequest],
        field: str,
        value: str,
        kind: str,
    ) -> None:
        with pytest.raises(NotFoundError, match=f"{kind} not found"):
            await machine.create_appointment(make_request(**{field: value}))

    @pytest.mark.asyncio
    async def test_booking_notification_is_opt_in(
        self,
        machine: AppointmentStateMachine,
        notifier: RecordingNotifier,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        silent = await machine.create_appointment(make_request())
        loud = await machine.create_appointment(
            make_request(start_time="11:00", end_time="11:30", send_notification=True)
        )

        assert notifier.bookings == [loud.appointment_id]
        assert silent.appointment_id not in notifier.bookings

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_booking(
        self,
        machine: AppointmentStateMachine,
        notifier: RecordingNotifier,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        notifier.error = TransportError("provider down")

        appointment = await machine.create_appointment(make_request(send_notification=True))

        assert appointment.appointment_id in store.appointments

    @pytest.mark.asyncio
    async def test_store_failure_surfaces_as_persistence_error(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        store.error = ConnectionError("db gone")

        with pytest.raises(PersistenceError, match="db gone"):
            await machine.create_appointment(make_request())


class TestUpdateAppointment:
    @pytest.mark.asyncio
    async def test_date_change_regenerates_reminders(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        appointment = await machine.create_appointment(make_request())
        new_date = APPOINTMENT_DATE + dt.timedelta(days=1)

        await machine.update_appointment(appointment.appointment_id, AppointmentUpdate(date=new_date))

        reminders = store.reminders[appointment.appointment_id]
        assert [r.scheduled_time for r in reminders] == [
            DAY_BEFORE + dt.timedelta(days=1),
            TWO_HOURS_BEFORE + dt.timedelta(days=1),
        ]
        assert not any(r.sent for r in reminders)

    @pytest.mark.asyncio
    async def test_reschedule_records_previous_slot(
        self,
        machine: AppointmentStateMachine,
        notifier: RecordingNotifier,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        updated = await machine.update_appointment(
            appointment.appointment_id,
            AppointmentUpdate(
                start_time="14:00",
                end_time="14:30",
                status=AppointmentStatus.RESCHEDULED,
                reschedule_reason="Doctor in surgery",
            ),
        )

        assert updated.status == AppointmentStatus.RESCHEDULED
        details = updated.reschedule_details
        assert details is not None
        assert details.previous_date == APPOINTMENT_DATE
        assert details.previous_start_time == "10:00"
        assert details.previous_end_time == "10:30"
        assert details.reason == "Doctor in surgery"
        assert notifier.status_updates == [appointment.appointment_id]

    @pytest.mark.asyncio
    async def test_move_into_another_booking_conflicts(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        await machine.create_appointment(make_request(start_time="11:00", end_time="11:30"))
        appointment = await machine.create_appointment(make_request(patient_id="pat-2"))

        with pytest.raises(ConflictError):
            await machine.update_appointment(
                appointment.appointment_id,
                AppointmentUpdate(start_time="11:15", end_time="11:45"),
            )

        assert store.appointments[appointment.appointment_id].start_time == "10:00"

    @pytest.mark.asyncio
    async def test_move_overlapping_itself_is_allowed(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        updated = await machine.update_appointment(
            appointment.appointment_id, AppointmentUpdate(start_time="10:15", end_time="10:45")
        )

        assert updated.start_time == "10:15"

    @pytest.mark.asyncio
    async def test_reversed_window_is_rejected(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        with pytest.raises(ValidationError, match="before"):
            await machine.update_appointment(
                appointment.appointment_id, AppointmentUpdate(start_time="11:00")
            )

    @pytest.mark.asyncio
    async def test_cancel_through_update_sets_reason(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        updated = await machine.update_appointment(
            appointment.appointment_id, AppointmentUpdate(status=AppointmentStatus.CANCELLED)
        )

        assert updated.cancel_reason == DEFAULT_REASON

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, machine: AppointmentStateMachine) -> None:
        with pytest.raises(NotFoundError, match="Appointment not found with id of nope"):
            await machine.update_appointment("nope", AppointmentUpdate(notes="x"))


class TestChangeStatus:
    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        first = await machine.change_status(
            appointment.appointment_id, "cancelled", "Feeling better"
        )
        second = await machine.change_status(appointment.appointment_id, "cancelled")

        assert first.status == second.status == AppointmentStatus.CANCELLED
        assert second.cancel_reason == "Feeling better"

    @pytest.mark.asyncio
    async def test_does_not_touch_reminders(
        self,
        machine: AppointmentStateMachine,
        store: InMemoryStore,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        appointment = await machine.create_appointment(make_request())
        await store.mark_earliest_unsent_sent(appointment.appointment_id, "msg-1", DAY_BEFORE)

        await machine.change_status(appointment.appointment_id, AppointmentStatus.CONFIRMED)

        reminders = store.reminders[appointment.appointment_id]
        assert [r.sent for r in reminders] == [True, False]

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())
        await machine.change_status(appointment.appointment_id, AppointmentStatus.COMPLETED)

        with pytest.raises(ValidationError, match="from completed to scheduled"):
            await machine.change_status(appointment.appointment_id, AppointmentStatus.SCHEDULED)

    @pytest.mark.asyncio
    async def test_patient_initiated_change_is_not_notified(
        self,
        machine: AppointmentStateMachine,
        notifier: RecordingNotifier,
        make_request: Callable[..., AppointmentRequest],
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        await machine.change_status(
            appointment.appointment_id, AppointmentStatus.CONFIRMED, patient_initiated=True
        )
        await machine.change_status(appointment.appointment_id, AppointmentStatus.CANCELLED)

        assert notifier.status_updates == [appointment.appointment_id]

    @pytest.mark.asyncio
    async def test_reschedule_reason_is_kept(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())

        updated = await machine.change_status(
            appointment.appointment_id, AppointmentStatus.RESCHEDULED, "Travelling"
        )

        assert updated.reschedule_details is not None
        assert updated.reschedule_details.reason == "Travelling"

    @pytest.mark.asyncio
    async def test_status_only_reschedule_drops_old_snapshot(
        self, machine: AppointmentStateMachine, make_request: Callable[..., AppointmentRequest]
    ) -> None:
        appointment = await machine.create_appointment(make_request())
        await machine.update_appointment(
            appointment.appointment_id,
            AppointmentUpdate(
                start_time="14:00", end_time="14:30", status=AppointmentStatus.RESCHEDULED
            ),
        )

        updated = await machine.change_status(
            appointment.appointment_id, AppointmentStatus.RESCHEDULED, "Doctor away"
        )

        assert updated.reschedule_details == RescheduleDetails(reason="Doctor away")


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED),
            (AppointmentStatus.CONFIRMED, AppointmentStatus.RESCHEDULED),
            (AppointmentStatus.RESCHEDULED, AppointmentStatus.SCHEDULED),
            (AppointmentStatus.CONFIRMED, AppointmentStatus.NO_SHOW),
            (AppointmentStatus.CANCELLED, AppointmentStatus.CANCELLED),
        ],
        ids=["confirm", "reschedule", "re-enter-lifecycle", "no-show", "re-cancel"],
    )
    def test_allowed(self, current: AppointmentStatus, target: AppointmentStatus) -> None:
        check_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (AppointmentStatus.CONFIRMED, AppointmentStatus.SCHEDULED),
            (AppointmentStatus.CANCELLED, AppointmentStatus.CONFIRMED),
            (AppointmentStatus.NO_SHOW, AppointmentStatus.COMPLETED),
        ],
        ids=["unconfirm", "revive-cancelled", "no-show-completed"],
    )
    def test_rejected(self, current: AppointmentStatus, target: AppointmentStatus) -> None:
        with pytest.raises(ValidationError):
            check_transition(current, target)

    def test_parse_status_lists_valid_values(self) -> None:
        with pytest.raises(ValidationError, match="Status must be one of: scheduled"):
            parse_status("postponed")

    def test_parse_status_accepts_wire_values(self) -> None:
        assert parse_status("no-show") == AppointmentStatus.NO_SHOW
