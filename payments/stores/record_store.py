# payments/stores/record_store.py
from __future__ import annotations

import asyncio
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from payments.enums import PaymentStatus
from payments.errors import DuplicateTransactionError, NotFoundError, PaymentError
from payments.models import Order, PaymentStatusRecord

Entry = Tuple[Order, PaymentStatusRecord]


class RecordStore(Protocol):
    async def create(self, order: Order, record: PaymentStatusRecord) -> None: ...
    async def get(self, order_id: str) -> Entry: ...
    async def scan(self, predicate: Callable[[Order], bool]) -> List[Entry]: ...
    async def compare_and_set(
        self,
        order_id: str,
        *,
        expected_status: PaymentStatus,
        expected_revision: int,
        order: Order,
        record: PaymentStatusRecord,
    ) -> bool: ...
    async def find_by_transaction(self, tx_hash: str) -> Optional[str]: ...


class InMemoryRecordStore:
    """
    In-memory Order + PaymentStatusRecord repository keyed by orderId.

    The conditional write is the only mutation path after creation; it is
    atomic with respect to other coroutines on the same loop.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._records: Dict[str, PaymentStatusRecord] = {}
        self._by_tx: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.cas_conflicts = 0

    async def create(self, order: Order, record: PaymentStatusRecord) -> None:
        if order.order_id != record.order_id:
            raise PaymentError("order/record id mismatch", order_id=order.order_id)
        async with self._lock:
            if order.order_id in self._orders:
                raise PaymentError("order already exists", order_id=order.order_id)
            self._orders[order.order_id] = order
            self._records[order.order_id] = record

    async def get(self, order_id: str) -> Entry:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise NotFoundError("order not found", order_id=order_id)
            return order, self._records[order_id]

    async def get_order(self, order_id: str) -> Order:
        order, _ = await self.get(order_id)
        return order

    async def get_status(self, order_id: str) -> PaymentStatusRecord:
        _, record = await self.get(order_id)
        return record

    async def scan(self, predicate: Callable[[Order], bool]) -> List[Entry]:
        async with self._lock:
            return [(o, self._records[oid]) for oid, o in self._orders.items() if predicate(o)]

    async def scan_by_merchant(
        self, merchant_address: str, statuses: Optional[Iterable[PaymentStatus]] = None
    ) -> List[Entry]:
        addr = (merchant_address or "").lower()
        wanted = frozenset(statuses) if statuses is not None else None
        return await self.scan(
            lambda o: o.merchant_address.lower() == addr and (wanted is None or o.status in wanted)
        )

    async def compare_and_set(
        self,
        order_id: str,
        *,
        expected_status: PaymentStatus,
        expected_revision: int,
        order: Order,
        record: PaymentStatusRecord,
    ) -> bool:
        """
        Write order and record together iff the stored order is still in
        `expected_status` at `expected_revision`. Returns False on a lost race.
        Raises DuplicateTransactionError if the record's transaction hash is
        already bound to another order.
        """
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise NotFoundError("order not found", order_id=order_id)
            current_rec = self._records[order_id]
            if current.status != expected_status or current_rec.revision != expected_revision:
                self.cas_conflicts += 1
                return False
            tx_key = (record.transaction_hash or "").lower()
            if tx_key:
                owner = self._by_tx.get(tx_key)
                if owner is not None and owner != order_id:
                    raise DuplicateTransactionError(record.transaction_hash, owner, order_id)
            self._orders[order_id] = order
            self._records[order_id] = record
            if tx_key:
                self._by_tx[tx_key] = order_id
            return True

    async def find_by_transaction(self, tx_hash: str) -> Optional[str]:
        async with self._lock:
            return self._by_tx.get((tx_hash or "").lower())

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            by_status = Counter(o.status.value for o in self._orders.values())
        out = {"orders": sum(by_status.values()), "casConflicts": self.cas_conflicts}
        out.update(by_status)
        return out
