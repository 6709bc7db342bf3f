import argparse
import asyncio
import logging

from courier_dispatch.client.container import ClientContainer
from courier_dispatch.client.countdown import CountdownTick
from courier_dispatch.client.listener import ClientListener
from courier_dispatch.client.session import DispatchClient
from courier_dispatch.core.models import OrderPreview

CONFIG_PATH = "courier_dispatch/config.yaml"

logger = logging.getLogger("dispatch-client")


class LoggingListener(ClientListener):
    def on_connection_status(self, status: str, attempt: int | None = None) -> None:
        logger.info(f"channel {status}" + (f" (attempt {attempt})" if attempt else ""))

    def on_new_order(self, order: OrderPreview) -> None:
        logger.info(f"new order {order.order_number} at {order.delivery_address}")

    def on_claim_confirmed(self, order: OrderPreview) -> None:
        logger.info(f"order {order.order_number} is yours")

    def on_order_taken(self, order_id: str) -> None:
        logger.info(f"order {order_id} taken by another courier")

    def on_notification(self, message: str, kind: str) -> None:
        logger.info(f"[{kind}] {message}")

    def on_countdown_tick(self, tick: CountdownTick) -> None:
        if tick.remaining_seconds % 60 == 0:
            logger.info(f"{tick.order_id} {tick.display}{' urgent' if tick.urgent else ''}")

    def on_force_logout(self, reason: str) -> None:
        logger.warning(f"logged out: {reason}")


async def main():
    parser = argparse.ArgumentParser(description="Headless dispatch client")
    parser.add_argument("--user", required=True)
    parser.add_argument("--role", required=True, choices=["admin", "courier", "driver", "shop"])
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    container = ClientContainer()
    container.config.from_yaml(CONFIG_PATH, required=True)

    client: DispatchClient = container.dispatch_client(
        user_id=args.user, role=args.role, listener=LoggingListener()
    )
    await client.start()
    try:
        await asyncio.Event().wait()
    finally:
        await client.stop()


if __name__ == "__main__":
    asyncio.run(main())
