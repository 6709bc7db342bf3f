class OrderActionError(Exception):
    """Base class for failures returned to the caller of an order action."""


class OrderNotFound(OrderActionError):
    pass


class PermissionDenied(OrderActionError):
    pass


class InvalidOrderState(OrderActionError):
    pass


class InvalidArgument(OrderActionError):
    pass
