class NotFoundError(LookupError):
    pass


class GatewayError(RuntimeError):
    """The payment gateway could not produce a payable artifact."""

    # set when the failure happened after an order was persisted
    order_id = None


class MembershipConflict(ValueError):
    """Manual activation would downgrade an active higher tier."""


class InvalidCredentials(ValueError):
    pass
