from dependency_injector import containers, providers

from courier_dispatch.application.container import ApplicationContainer
from courier_dispatch.presentation.event_relay_worker import EventRelayWorker
from courier_dispatch.presentation.outbox_worker import OutboxWorker
from courier_dispatch.presentation.overdue_worker import OverdueOrdersWorker


class PresentationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    application = providers.Container[ApplicationContainer](
        ApplicationContainer, config=config
    )

    outbox_worker = providers.Singleton[OutboxWorker](
        OutboxWorker,
        use_case=application.process_outbox_events_use_case,
        poll_interval=config.dispatch.outbox_poll_interval,
    )
    overdue_worker = providers.Singleton[OverdueOrdersWorker](
        OverdueOrdersWorker,
        use_case=application.expire_overdue_orders_use_case,
        interval=config.dispatch.overdue_sweep_interval,
    )
    event_relay_worker = providers.Singleton[EventRelayWorker](
        EventRelayWorker,
        relay_use_case=application.relay_order_events_use_case,
        bootstrap_servers=config.infrastructure.kafka.bootstrap_servers,
        topic=config.infrastructure.kafka.topic,
        group_id=config.infrastructure.kafka.relay_group_id,
    )
