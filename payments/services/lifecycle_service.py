# payments/services/lifecycle_service.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional, Sequence

from payments.config import PaymentSettings
from payments.enums import PaymentStatus, SignalSource
from payments.errors import ConcurrentUpdateError, ConfigurationError, IllegalTransitionError, ValidationError
from payments.event_bus import EventBus, TOPIC_ORDER_CREATED, TOPIC_ORDER_STATUS
from payments.idempotency import make_order_id
from payments.models import AssetSelector, Order, OrderItem, PaymentStatusRecord, StatusHistoryEntry
from payments.networks import is_evm_address
from payments.state_machine import OPEN, TERMINAL, ensure_transition
from payments.stores.record_store import InMemoryRecordStore
from utils.logger import logger as _default_logger
from utils.time import utc_now

MAX_DESCRIPTION = 500


def _to_decimal(v: Any, what: str) -> Decimal:
    try:
        d = Decimal(str(v))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"{what} must be a number", value=v) from e
    if not d.is_finite():
        raise ValidationError(f"{what} must be finite", value=v)
    return d


class OrderLifecycleService:
    """
    Creation, expiry and status transitions for a single order.

    Every mutation goes through the store's conditional write keyed on the
    status/revision that was read, so concurrent channels linearize per order.
    """

    def __init__(
        self,
        store: InMemoryRecordStore,
        settings: PaymentSettings,
        *,
        clock: Callable[[], datetime] = utc_now,
        bus: Optional[EventBus] = None,
        logger=None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._bus = bus or EventBus()
        self._log = logger or _default_logger

    @property
    def store(self) -> InMemoryRecordStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    # ---- creation -----------------------------------------------------------------
    async def create_order(
        self,
        amount_fiat: Any,
        asset: Optional[AssetSelector] = None,
        merchant_address: Optional[str] = None,
        description: Optional[str] = None,
        items: Sequence[OrderItem] = (),
    ) -> Order:
        amount = _to_decimal(amount_fiat, "amountFiat")
        if amount <= 0 or amount > self._settings.max_amount:
            raise ValidationError(
                f"amountFiat must be > 0 and <= {self._settings.max_amount}", amount=amount_fiat
            )
        asset = asset or AssetSelector.auto()
        if not asset.is_valid():
            raise ValidationError("unsupported asset selector", selector=asset.to_dict())
        if description is not None and len(description) > MAX_DESCRIPTION:
            raise ValidationError(f"description longer than {MAX_DESCRIPTION} chars")
        for it in items:
            if it.quantity <= 0 or it.price <= 0 or not it.name:
                raise ValidationError("invalid order item", item=it.name)

        merchant = (merchant_address or self._settings.merchant_address or "").strip()
        if not merchant:
            raise ConfigurationError("merchant wallet address not configured")
        if not is_evm_address(merchant):
            raise ConfigurationError("merchant wallet address is malformed", address=merchant)

        now = self._clock()
        order = Order(
            order_id=make_order_id(),
            amount_fiat=amount,
            asset=asset,
            merchant_address=merchant,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=self._settings.ttl_minutes),
            description=description,
            items=tuple(items),
            currency=self._settings.currency,
        )
        record = PaymentStatusRecord(
            order_id=order.order_id,
            status=PaymentStatus.PENDING,
            status_history=(StatusHistoryEntry(PaymentStatus.PENDING, now, "Order created", SignalSource.MERCHANT),),
        )
        await self._store.create(order, record)
        self._log.info(f"Order created id={order.order_id} amount={amount} asset={asset.to_dict()}")
        self._bus.publish(TOPIC_ORDER_CREATED, order)
        return order

    # ---- transitions --------------------------------------------------------------
    async def transition(
        self,
        order: Order,
        target: PaymentStatus,
        fields: Optional[Mapping[str, Any]] = None,
        *,
        message: Optional[str] = None,
        source: SignalSource = SignalSource.SYSTEM,
    ) -> Order:
        """
        Move `order` to `target`. The current state is re-read before each
        conditional write; on a lost race the edge is re-validated against the
        fresh state, so an order that became terminal raises IllegalTransitionError.
        """
        order_id = order.order_id
        for attempt in range(1, self._settings.max_commit_attempts + 1):
            current, record = await self._store.get(order_id)
            ensure_transition(order_id, current.status, target)
            now = self._clock()
            new_order = replace(current, status=target, updated_at=now)
            new_record = record.with_transition(target, now, message=message, fields=fields, source=source)
            ok = await self._store.compare_and_set(
                order_id,
                expected_status=current.status,
                expected_revision=record.revision,
                order=new_order,
                record=new_record,
            )
            if ok:
                self._log.info(
                    f"Order {order_id} {current.status.value} -> {target.value} via {source.value}"
                    + (f" tx={new_record.transaction_hash}" if new_record.transaction_hash else "")
                )
                self._bus.publish(TOPIC_ORDER_STATUS, (new_order, new_record, current.status))
                return new_order
            self._log.debug(f"Order {order_id} lost commit race (attempt {attempt}), re-reading")
        raise ConcurrentUpdateError("conditional write retries exhausted", order_id=order_id, target=target.value)

    async def annotate(self, order: Order, fields: Mapping[str, Any]) -> PaymentStatusRecord:
        """Attach write-once fields without a status change (non-terminal orders only)."""
        order_id = order.order_id
        for _ in range(self._settings.max_commit_attempts):
            current, record = await self._store.get(order_id)
            if current.status in TERMINAL:
                raise IllegalTransitionError(order_id, current.status, current.status)
            if not record.new_fields(fields):
                return record
            new_record = record.with_fields(fields)
            ok = await self._store.compare_and_set(
                order_id,
                expected_status=current.status,
                expected_revision=record.revision,
                order=current,
                record=new_record,
            )
            if ok:
                return new_record
        raise ConcurrentUpdateError("conditional write retries exhausted", order_id=order_id)

    async def check_expiry(self, order: Order) -> Order:
        """Expire an open order past its TTL; otherwise return it unchanged."""
        if order.status not in OPEN or self._clock() <= order.expires_at:
            return order
        try:
            return await self.transition(
                order, PaymentStatus.EXPIRED, message="Order expired", source=SignalSource.SYSTEM
            )
        except (IllegalTransitionError, ConcurrentUpdateError):
            # someone else moved it first
            return await self._store.get_order(order.order_id)

    async def get_fresh(self, order_id: str) -> Order:
        """Read an order, applying opportunistic expiry."""
        order = await self._store.get_order(order_id)
        return await self.check_expiry(order)

    async def require_open(self, order_id: str) -> Order:
        order = await self.get_fresh(order_id)
        if order.status not in OPEN:
            raise ValidationError(f"order is {order.status.value}", order_id=order_id)
        return order

    async def mark_scanning(self, order_id: str) -> Order:
        order = await self.require_open(order_id)
        if order.status == PaymentStatus.SCANNING:
            return order
        return await self.transition(
            order, PaymentStatus.SCANNING, message="Payment request scanned", source=SignalSource.MERCHANT
        )

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> Order:
        order = await self.get_fresh(order_id)
        if order.status in TERMINAL:
            raise ValidationError(f"order is already {order.status.value}", order_id=order_id)
        try:
            return await self.transition(
                order, PaymentStatus.CANCELLED, message=reason or "Cancelled by merchant", source=SignalSource.MERCHANT
            )
        except IllegalTransitionError as e:
            raise ValidationError(f"order is already {e.current.value}", order_id=order_id) from e
