from courier_dispatch.core.models import OrderPreview


class ClientListener:
    """Hooks the surrounding UI implements. Every method defaults to a no-op."""

    def on_connection_status(self, status: str, attempt: int | None = None) -> None:
        pass

    def on_new_order(self, order: OrderPreview) -> None:
        pass

    def on_claim_confirmed(self, order: OrderPreview) -> None:
        pass

    def on_order_taken(self, order_id: str) -> None:
        pass

    def on_order_updated(self, order: OrderPreview) -> None:
        pass

    def on_notification(self, message: str, kind: str) -> None:
        pass

    def on_countdown_tick(self, tick) -> None:
        pass

    def on_countdown_expired(self, order_id: str) -> None:
        pass

    def on_resync(self, board) -> None:
        pass

    def on_force_logout(self, reason: str) -> None:
        pass

    def on_unavailable(self, action: str, error: Exception) -> None:
        pass
