# payments/errors.py
class PaymentError(Exception):
    """Base payments error."""
    def __init__(self, msg: str = "", **ctx):
        super().__init__(msg)
        self.msg = msg
        self.ctx = ctx

    def __str__(self):
        base = self.msg or self.__class__.__name__
        if self.ctx:
            details = ", ".join(f"{k}={v}" for k, v in self.ctx.items())
            return f"{base} [{details}]"
        return base


class ValidationError(PaymentError):
    """Malformed or out-of-range caller input."""


class NotFoundError(PaymentError):
    """Unknown order id."""


class ConfigurationError(PaymentError):
    """Required external configuration is missing (merchant address, credentials)."""


class SignatureError(PaymentError):
    """Webhook HMAC signature missing or mismatched."""


class IllegalTransitionError(PaymentError):
    """Attempted transition out of a terminal state or along an undefined edge."""
    def __init__(self, order_id: str, current, target):
        super().__init__(
            f"illegal transition {getattr(current, 'value', current)} -> {getattr(target, 'value', target)}",
            order_id=order_id,
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class DuplicateTransactionError(PaymentError):
    """Transaction hash is already bound to a different order."""
    def __init__(self, tx_hash: str, owner_order_id: str, order_id: str):
        super().__init__("transaction already applied", tx=tx_hash, owner=owner_order_id, order_id=order_id)
        self.tx_hash = tx_hash
        self.owner_order_id = owner_order_id
        self.order_id = order_id


class SignalSourceError(PaymentError):
    """Transient failure of an external signal source (RPC, provider API)."""
    def __init__(self, source: str, msg: str):
        super().__init__(f"{source}: {msg}")
        self.source = source


class ConcurrentUpdateError(PaymentError):
    """Conditional write kept losing to concurrent writers."""
