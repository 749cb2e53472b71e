from collections.abc import Callable

import pytest

from clinicflow.config import (
    AppConfig,
    ReminderConfig,
    TransportAdapter,
    TransportConfig,
    WebhookConfig,
)
from clinicflow.domain.models import (
    AppointmentRequest,
    Department,
    DepartmentLocation,
    MessageTemplate,
    Patient,
    Provider,
    TemplateType,
    Weekday,
    WorkingHours,
)
from clinicflow.factory import build_clinic_service
from clinicflow.notifications.adapters.fake import FakeMessageTransport
from clinicflow.service import ClinicService
from clinicflow.store.memory import InMemoryStore
from support import APPOINTMENT_DATE, START_OF_TEST, FrozenClock


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START_OF_TEST)


@pytest.fixture
def fake_transport() -> FakeMessageTransport:
    return FakeMessageTransport()


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_patient(Patient(patient_id="pat-1", name="Jane Doe", phone_number="(555) 123-4567"))
    store.add_patient(Patient(patient_id="pat-2", name="John Roe", phone_number="+44 20 7946 0958"))
    store.add_provider(
        Provider(
            provider_id="doc-1",
            name="Dr. Gregory House",
            specialization="Diagnostics",
            department_id="dep-1",
            available_hours=[
                WorkingHours(day=day, start_time="09:00", end_time="17:00")
                for day in (Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY)
            ],
            average_appointment_duration=30,
        )
    )
    store.add_provider(Provider(provider_id="doc-2", name="Dr. Lisa Cuddy"))
    store.add_department(
        Department(
            department_id="dep-1",
            name="Diagnostics",
            location=DepartmentLocation(building="Main", floor="2", room_number_prefix="DX"),
        )
    )
    for template_type, body in [
        (TemplateType.APPOINTMENT_REMINDER, "Hi {{patient_name}}, see you on {{appointment_date}}."),
        (TemplateType.APPOINTMENT_CONFIRMATION, "Booked with {{doctor_name}} at {{appointment_time}}."),
        (TemplateType.APPOINTMENT_RESCHEDULED, "Moved from {{previous_date}}: {{reason}}."),
        (TemplateType.APPOINTMENT_CANCELLED, "Cancelled: {{reason}}."),
    ]:
        store.add_template(
            MessageTemplate(
                template_id=f"tpl-{template_type.value}",
                name=template_type.value,
                type=template_type,
                content=body,
                external_template_id=f"ext-{template_type.value}",
            )
        )
    return store


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        clinic_timezone="America/New_York",
        default_country_code="1",
        transport=TransportConfig(adapter=TransportAdapter.FAKE, api_key="test-key"),
        reminders=ReminderConfig(enabled=False, sweep_interval_seconds=0.05, workers=2),
        webhook=WebhookConfig(verify_token="s3cret"),
    )


@pytest.fixture
def service(
    config: AppConfig,
    store: InMemoryStore,
    fake_transport: FakeMessageTransport,
    clock: FrozenClock,
) -> ClinicService:
    return build_clinic_service(config, store=store, transport=fake_transport, clock=clock)


@pytest.fixture
def make_request() -> Callable[..., AppointmentRequest]:
    """Build a booking for pat-1 with doc-1 on the test Monday; override any field."""

    def build(**overrides: object) -> AppointmentRequest:
        fields: dict[str, object] = {
            "patient_id": "pat-1",
            "provider_id": "doc-1",
            "department_id": "dep-1",
            "date": APPOINTMENT_DATE,
            "start_time": "10:00",
            "end_time": "10:30",
            "reason": "Persistent cough",
        }
        fields.update(overrides)
        return AppointmentRequest.model_validate(fields)

    return build
