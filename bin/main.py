import asyncio
import logging

import uvicorn
from fastapi import FastAPI

from courier_dispatch.application.container import ApplicationContainer
from courier_dispatch.presentation import api
from courier_dispatch.presentation.api import router
from courier_dispatch.presentation.container import PresentationContainer

CONFIG_PATH = "courier_dispatch/config.yaml"


def build_api(container: ApplicationContainer):
    app = FastAPI(title="courier-dispatch")
    app.include_router(router)
    container.wire(modules=[api])
    app.container = container
    return app


async def main():
    logging.basicConfig(level=logging.INFO)

    presentation_container = PresentationContainer()
    presentation_container.config.from_yaml(CONFIG_PATH, required=True)

    app = build_api(presentation_container.application)
    api_config = presentation_container.config.api

    api_task = asyncio.create_task(
        uvicorn.Server(
            uvicorn.Config(
                app,
                host=api_config.host(),
                port=api_config.port(),
                log_level="info",
            )
        ).serve()
    )
    outbox_task = asyncio.create_task(presentation_container.outbox_worker().run())
    relay_task = asyncio.create_task(presentation_container.event_relay_worker().run())
    overdue_task = asyncio.create_task(presentation_container.overdue_worker().run())

    try:
        await asyncio.gather(api_task, outbox_task, relay_task, overdue_task)
    finally:
        infrastructure = presentation_container.application.infrastructure_container
        await presentation_container.application.order_claim_coordinator().drain()
        await infrastructure.event_publisher().stop()
        await infrastructure.async_engine().dispose()


if __name__ == "__main__":
    asyncio.run(main())
