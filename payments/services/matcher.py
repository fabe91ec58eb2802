# payments/services/matcher.py
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional, Sequence

from payments.enums import ToleranceBand
from payments.models import Order, TransferEvent
from payments.state_machine import OPEN


def relative_diff(expected: Decimal, observed: Decimal) -> Decimal:
    return abs(observed - expected) / expected


def amount_within(expected: Decimal, observed: Decimal, tolerance: Decimal) -> bool:
    """abs(observed - expected) / expected <= tolerance."""
    if expected <= 0:
        return False
    return relative_diff(expected, observed) <= tolerance


class AmountMatcher:
    """
    Picks the open order an observed transfer pays for.

    Candidates must be open, addressed to the transfer's destination, accept
    the transfer's (network, symbol) and lie within the tolerance band.
    Closest amount wins; ties go to the oldest order.
    """

    def __init__(self, strict: Decimal = Decimal("0.01"), loose: Decimal = Decimal("0.05")) -> None:
        self.strict = Decimal(strict)
        self.loose = Decimal(loose)

    def tolerance(self, band: ToleranceBand) -> Decimal:
        return self.strict if band == ToleranceBand.STRICT else self.loose

    def eligible(self, order: Order, transfer: TransferEvent, band: ToleranceBand) -> bool:
        if order.status not in OPEN:
            return False
        merchant = order.merchant_address.lower()
        if (transfer.to_address or "").lower() != merchant:
            return False
        # merchant moving its own funds is never a payment
        if (transfer.from_address or "").lower() == merchant:
            return False
        if not order.asset.accepts(transfer.network_id, transfer.asset_symbol):
            return False
        return amount_within(order.amount_fiat, transfer.amount, self.tolerance(band))

    def match(
        self, candidates: Iterable[Order], transfer: TransferEvent, band: ToleranceBand
    ) -> Optional[Order]:
        hits: Sequence[Order] = [o for o in candidates if self.eligible(o, transfer, band)]
        if not hits:
            return None
        return min(hits, key=lambda o: (abs(transfer.amount - o.amount_fiat), o.created_at))
