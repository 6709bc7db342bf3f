import json
import logging
from http import HTTPStatus

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from courier_dispatch.application.container import ApplicationContainer
from courier_dispatch.application.create_order import CreateOrderUseCase, OrderDTO
from courier_dispatch.application.order_claim import OrderClaimCoordinator
from courier_dispatch.core.errors import (
    InvalidArgument,
    InvalidOrderState,
    OrderActionError,
    OrderNotFound,
    PermissionDenied,
)
from courier_dispatch.core.models import (
    ClaimResult,
    DeliveryHistory,
    Envelope,
    EventTypeEnum,
    IdentifyPayload,
    Order,
    OrderStatusEnum,
    Role,
)
from courier_dispatch.infrastructure.channel_hub import ChannelHub
from courier_dispatch.infrastructure.repositories import DoesNotExist
from courier_dispatch.infrastructure.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_STATUS = {
    OrderNotFound: HTTPStatus.NOT_FOUND,
    PermissionDenied: HTTPStatus.FORBIDDEN,
    InvalidOrderState: HTTPStatus.CONFLICT,
    InvalidArgument: HTTPStatus.UNPROCESSABLE_ENTITY,
}

# client-originated countdown messages are relayed to these roles
COUNTDOWN_OBSERVERS = (Role.SHOP, Role.ADMIN)


def _http_error(error: OrderActionError) -> HTTPException:
    status = _ERROR_STATUS.get(type(error), HTTPStatus.BAD_REQUEST)
    return HTTPException(status_code=status, detail=str(error))


class OrderCreateRequest(OrderDTO):
    pass


class OrderResponseModel(Order):
    pass


class CourierActionRequest(BaseModel):
    courier_id: str


class SetEtaRequest(CourierActionRequest):
    minutes: int = Field(gt=0)


class CancelRequest(BaseModel):
    shop_id: str | None = None


class TransferRequest(BaseModel):
    to_courier_id: str
    from_courier_id: str | None = None


class ClaimResponseModel(BaseModel):
    result: ClaimResult
    order: Order | None = None


@router.get("/health")
@inject
async def health(
    hub: ChannelHub = Depends(
        Provide[ApplicationContainer.infrastructure_container.channel_hub]
    ),
):
    return {"status": "ok", "sessions": hub.counts()}


@router.post(
    "/orders",
    status_code=HTTPStatus.CREATED,
    response_model=OrderResponseModel,
)
@inject
async def create_order(
    order: OrderCreateRequest,
    create_order_use_case: CreateOrderUseCase = Depends(
        Provide[ApplicationContainer.create_order_use_case]
    ),
):
    return await create_order_use_case(order=order)


@router.get("/orders", response_model=list[OrderResponseModel])
@inject
async def list_orders(
    status: list[OrderStatusEnum] | None = Query(default=None),
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        return await uow.orders.list_all(statuses=status)


@router.get("/orders/available", response_model=list[OrderResponseModel])
@inject
async def list_available_orders(
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        return await uow.orders.list_available()


@router.get(
    "/orders/{order_id}",
    status_code=HTTPStatus.OK,
    response_model=OrderResponseModel,
)
@inject
async def get_order(
    order_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        async with unit_of_work() as uow:
            return await uow.orders.get_by_id(order_id)
    except DoesNotExist:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND, detail=f"Order {order_id} not found"
        )


@router.get("/couriers/{courier_id}/orders", response_model=list[OrderResponseModel])
@inject
async def list_courier_orders(
    courier_id: str,
    status: list[OrderStatusEnum] | None = Query(default=None),
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        return await uow.orders.list_by_courier(courier_id, statuses=status)


@router.get("/couriers/{courier_id}/history", response_model=list[DeliveryHistory])
@inject
async def list_courier_history(
    courier_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        return await uow.history.list_by_courier(courier_id)


@router.get("/shops/{shop_id}/orders", response_model=list[OrderResponseModel])
@inject
async def list_shop_orders(
    shop_id: str,
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    async with unit_of_work() as uow:
        return await uow.orders.list_by_shop(shop_id)


@router.post("/orders/{order_id}/claim", response_model=ClaimResponseModel)
@inject
async def claim_order(
    order_id: str,
    request: CourierActionRequest,
    coordinator: OrderClaimCoordinator = Depends(
        Provide[ApplicationContainer.order_claim_coordinator]
    ),
    unit_of_work: UnitOfWork = Depends(
        Provide[ApplicationContainer.infrastructure_container.unit_of_work]
    ),
):
    try:
        result = await coordinator.claim(order_id, request.courier_id)
    except OrderActionError as e:
        raise _http_error(e)

    if result == ClaimResult.ALREADY_TAKEN:
        return ClaimResponseModel(result=result)

    async with unit_of_work() as uow:
        order = await uow.orders.get_by_id(order_id)
    return ClaimResponseModel(result=result, order=order)


@router.post("/orders/{order_id}/eta", response_model=OrderResponseModel)
@inject
async def set_completion_time(
    order_id: str,
    request: SetEtaRequest,
    coordinator: OrderClaimCoordinator = Depends(
        Provide[ApplicationContainer.order_claim_coordinator]
    ),
):
    try:
        return await coordinator.set_completion_time(
            order_id, request.courier_id, request.minutes
        )
    except OrderActionError as e:
        raise _http_error(e)


@router.post("/orders/{order_id}/complete", response_model=OrderResponseModel)
@inject
async def complete_order(
    order_id: str,
    request: CourierActionRequest,
    coordinator: OrderClaimCoordinator = Depends(
        Provide[ApplicationContainer.order_claim_coordinator]
    ),
):
    try:
        return await coordinator.complete(order_id, request.courier_id)
    except OrderActionError as e:
        raise _http_error(e)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponseModel)
@inject
async def cancel_order(
    order_id: str,
    request: CancelRequest,
    coordinator: OrderClaimCoordinator = Depends(
        Provide[ApplicationContainer.order_claim_coordinator]
    ),
):
    try:
        return await coordinator.cancel(order_id, shop_id=request.shop_id)
    except OrderActionError as e:
        raise _http_error(e)


@router.post("/orders/{order_id}/transfer", response_model=OrderResponseModel)
@inject
async def transfer_order(
    order_id: str,
    request: TransferRequest,
    coordinator: OrderClaimCoordinator = Depends(
        Provide[ApplicationContainer.order_claim_coordinator]
    ),
):
    try:
        return await coordinator.transfer(
            order_id, request.to_courier_id, from_courier_id=request.from_courier_id
        )
    except OrderActionError as e:
        raise _http_error(e)


@router.websocket("/ws")
@inject
async def channel(
    websocket: WebSocket,
    hub: ChannelHub = Depends(
        Provide[ApplicationContainer.infrastructure_container.channel_hub]
    ),
):
    await websocket.accept()
    try:
        while True:
            raw = await websocket.receive_text()
            await handle_client_message(hub, websocket, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(websocket)


async def handle_client_message(hub: ChannelHub, websocket: WebSocket, raw: str) -> None:
    try:
        data = json.loads(raw)
        envelope = Envelope.model_validate(
            {"type": data.get("type"), "payload": data.get("payload") or {}}
        )
    except (ValueError, AttributeError, ValidationError) as e:
        logger.warning(f"Dropping undecodable client message: {e}")
        return

    if envelope.type == EventTypeEnum.IDENTIFY:
        try:
            identify = IdentifyPayload.model_validate(envelope.payload)
        except ValidationError as e:
            logger.warning(f"IDENTIFY without user id or role: {e}")
            return
        await hub.identify(websocket, identify.user_id, identify.role)

    elif envelope.type == EventTypeEnum.SUBSCRIBE:
        channel_name = envelope.payload.get("channel")
        if channel_name:
            hub.subscribe(websocket, channel_name)

    elif envelope.type in (
        EventTypeEnum.COUNTDOWN_STARTED,
        EventTypeEnum.COUNTDOWN_UPDATE,
    ):
        if hub.identity_of(websocket) is None:
            logger.warning(f"{envelope.type} from an unidentified session ignored")
            return
        delivered = await hub.fan_out(envelope, COUNTDOWN_OBSERVERS)
        logger.info(f"{envelope.type} relayed to {delivered} sessions")

    else:
        logger.warning(f"Unknown client message type {envelope.type}")
