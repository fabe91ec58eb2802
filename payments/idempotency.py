# payments/idempotency.py
import uuid

from payments.errors import ValidationError


def make_order_id() -> str:
    """Generate an opaque order id (UUID4, canonical form)."""
    return str(uuid.uuid4())


def parse_order_id(raw: str) -> str:
    """Validate and canonicalise an order id; raises ValidationError on malformed input."""
    try:
        return str(uuid.UUID(str(raw).strip()))
    except (ValueError, AttributeError, TypeError) as e:
        raise ValidationError("invalid order id format", order_id=raw) from e
