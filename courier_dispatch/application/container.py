from dependency_injector import containers, providers

from courier_dispatch.application.create_order import CreateOrderUseCase
from courier_dispatch.application.expire_overdue_orders import ExpireOverdueOrdersUseCase
from courier_dispatch.application.order_claim import OrderClaimCoordinator
from courier_dispatch.application.process_outbox_events import ProcessOutboxEventsUseCase
from courier_dispatch.application.relay_order_events import RelayOrderEventsUseCase
from courier_dispatch.infrastructure.container import InfrastructureContainer


class ApplicationContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    infrastructure_container = providers.Container[InfrastructureContainer](
        InfrastructureContainer,
        config=config.infrastructure,
    )

    create_order_use_case = providers.Singleton[CreateOrderUseCase](
        CreateOrderUseCase, unit_of_work=infrastructure_container.unit_of_work
    )
    order_claim_coordinator = providers.Singleton[OrderClaimCoordinator](
        OrderClaimCoordinator, unit_of_work=infrastructure_container.unit_of_work
    )
    process_outbox_events_use_case = providers.Singleton[ProcessOutboxEventsUseCase](
        ProcessOutboxEventsUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        publisher=infrastructure_container.event_publisher,
        batch_size=config.dispatch.outbox_batch_size,
    )
    relay_order_events_use_case = providers.Singleton[RelayOrderEventsUseCase](
        RelayOrderEventsUseCase, channel_hub=infrastructure_container.channel_hub
    )
    expire_overdue_orders_use_case = providers.Singleton[ExpireOverdueOrdersUseCase](
        ExpireOverdueOrdersUseCase,
        unit_of_work=infrastructure_container.unit_of_work,
        coordinator=order_claim_coordinator,
        batch_size=config.dispatch.overdue_batch_size,
    )
