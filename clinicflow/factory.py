import datetime as dt
from collections.abc import Callable

from loguru import logger

from clinicflow.config import AppConfig, TransportAdapter
from clinicflow.domain.models import utcnow
from clinicflow.locks import KeyedLocks
from clinicflow.notifications.adapters.fake import FakeMessageTransport
from clinicflow.notifications.adapters.http import HTTPMessageTransport
from clinicflow.notifications.correlator import MessageCorrelator, WebhookReceiver
from clinicflow.notifications.dispatcher import NotificationDispatcher
from clinicflow.notifications.ports import MessageTransportProtocol
from clinicflow.scheduling.availability import AvailabilityEngine
from clinicflow.scheduling.datetime_helpers import resolve_timezone
from clinicflow.scheduling.state_machine import AppointmentStateMachine
from clinicflow.scheduling.sweep import ReminderScheduler
from clinicflow.service import ClinicService
from clinicflow.store.memory import InMemoryStore
from clinicflow.store.ports import Store


def _build_http(config: AppConfig) -> MessageTransportProtocol:
    return HTTPMessageTransport(
        api_url=config.transport.api_url,
        api_key=config.transport.api_key,
        timeout=config.transport.timeout,
    )


def _build_fake(config: AppConfig) -> MessageTransportProtocol:
    return FakeMessageTransport()


_BUILDERS: dict[TransportAdapter, Callable[[AppConfig], MessageTransportProtocol]] = {
    TransportAdapter.HTTP: _build_http,
    TransportAdapter.FAKE: _build_fake,
}


def build_transport(config: AppConfig) -> MessageTransportProtocol:
    """Build the message transport selected in config."""
    adapter = config.transport.adapter
    logger.info("Building message transport with adapter: {}", adapter.value)
    return _BUILDERS[adapter](config)


def build_clinic_service(
    config: AppConfig,
    *,
    store: Store | None = None,
    transport: MessageTransportProtocol | None = None,
    clock: Callable[[], dt.datetime] = utcnow,
) -> ClinicService:
    """Wire the scheduling and notification core from config."""
    store = store or InMemoryStore(default_country_code=config.default_country_code)
    transport = transport or build_transport(config)
    clinic_tz = resolve_timezone(config.clinic_timezone)
    appointment_locks = KeyedLocks()

    availability = AvailabilityEngine(store, store)
    dispatcher = NotificationDispatcher(
        store,
        transport,
        default_country_code=config.default_country_code,
        appointment_locks=appointment_locks,
        clock=clock,
    )
    appointments = AppointmentStateMachine(
        store,
        availability,
        dispatcher,
        clinic_tz=clinic_tz,
        provider_locks=KeyedLocks(),
        appointment_locks=appointment_locks,
        clock=clock,
    )
    correlator = MessageCorrelator(
        store,
        appointments,
        dispatcher,
        default_country_code=config.default_country_code,
        window_days=config.correlation_window_days,
        clock=clock,
    )
    scheduler = ReminderScheduler(
        store,
        dispatcher,
        interval_seconds=config.reminders.sweep_interval_seconds,
        workers=config.reminders.workers,
        queue_size=config.reminders.queue_size,
        clock=clock,
    )

    return ClinicService(
        availability=availability,
        appointments=appointments,
        dispatcher=dispatcher,
        scheduler=scheduler,
        webhooks=WebhookReceiver(correlator),
        transport=transport,
        messages=store,
    )
