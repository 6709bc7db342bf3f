from dependency_injector import containers, providers

from courier_dispatch.client.api_client import DispatchApiClient
from courier_dispatch.client.connection import ConnectionManager, ReconnectPolicy
from courier_dispatch.client.session import DispatchClient
from courier_dispatch.client.state_store import JsonStateStore


class ClientContainer(containers.DeclarativeContainer):
    config = providers.Configuration()

    reconnect_policy = providers.Singleton[ReconnectPolicy](
        ReconnectPolicy,
        base_delay=config.client.reconnect.base_delay,
        growth_factor=config.client.reconnect.growth_factor,
        max_delay=config.client.reconnect.max_delay,
        max_attempts=config.client.reconnect.max_attempts,
    )
    api_client = providers.Factory[DispatchApiClient](
        DispatchApiClient,
        base_url=config.client.api_url,
        timeout=config.client.request_timeout,
    )
    state_store = providers.Singleton[JsonStateStore](
        JsonStateStore, path=config.client.state_path
    )
    connection = providers.Factory[ConnectionManager](
        ConnectionManager, url=config.client.ws_url, policy=reconnect_policy
    )
    # call with user_id=..., role=... (and optionally listener=...)
    dispatch_client = providers.Factory[DispatchClient](
        DispatchClient,
        connection=connection,
        api=api_client,
        store=state_store,
        tick_interval=config.client.countdown.tick_interval,
        sync_every=config.client.countdown.sync_every,
        resync_interval=config.client.resync.interval,
        resync_min_interval=config.client.resync.min_interval,
    )
