# payments/models.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from payments.enums import PaymentStatus, SignalSource
from payments.state_machine import TERMINAL
from payments.networks import ANY_STABLECOIN, AUTO, NETWORKS, is_supported, normalize_network_id, normalize_symbol


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat().replace("+00:00", "Z") if ts else None


def _money(v: Optional[Decimal]) -> Optional[str]:
    return None if v is None else format(v, "f")


@dataclass(frozen=True)
class AssetSelector:
    """
    Concrete (network, symbol) pair, or a wildcard on either part.
    Both parts None is the "auto" selector.
    """
    network_id: Optional[str] = None
    symbol: Optional[str] = None

    @classmethod
    def auto(cls) -> "AssetSelector":
        return cls(None, None)

    @classmethod
    def parse(cls, network_id: Optional[str], symbol: Optional[str]) -> "AssetSelector":
        return cls(normalize_network_id(network_id), normalize_symbol(symbol))

    @property
    def is_auto(self) -> bool:
        return self.network_id is None and self.symbol is None

    def is_valid(self) -> bool:
        if self.network_id is not None and self.network_id not in NETWORKS:
            return False
        if self.network_id and self.symbol:
            return is_supported(self.network_id, self.symbol)
        if self.symbol:
            return any(is_supported(n, self.symbol) for n in NETWORKS)
        return True

    def accepts(self, network_id: str, symbol: str) -> bool:
        if self.network_id is not None and self.network_id != network_id:
            return False
        if self.symbol is not None and self.symbol != symbol:
            return False
        return is_supported(network_id, symbol)

    def networks(self) -> Tuple[str, ...]:
        """Networks a scan for this selector must cover."""
        if self.network_id is not None:
            return (self.network_id,)
        if self.symbol is not None:
            return tuple(n for n in NETWORKS if is_supported(n, self.symbol))
        return tuple(NETWORKS)

    def to_dict(self) -> Any:
        if self.is_auto:
            return AUTO
        return {"networkId": self.network_id or AUTO, "symbol": self.symbol or ANY_STABLECOIN}


@dataclass(frozen=True)
class OrderItem:
    name: str
    quantity: int
    price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "quantity": self.quantity, "price": _money(self.price)}


@dataclass(frozen=True)
class Order:
    order_id: str
    amount_fiat: Decimal
    asset: AssetSelector
    merchant_address: str
    status: PaymentStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    description: Optional[str] = None
    items: Tuple[OrderItem, ...] = ()
    currency: str = "USD"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "amountFiat": _money(self.amount_fiat),
            "currency": self.currency,
            "assetSelector": self.asset.to_dict(),
            "merchantAddress": self.merchant_address,
            "status": self.status.value,
            "description": self.description,
            "items": [i.to_dict() for i in self.items],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "expiresAt": _iso(self.expires_at),
        }


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: PaymentStatus
    timestamp: datetime
    message: Optional[str] = None
    source: Optional[SignalSource] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"status": self.status.value, "timestamp": _iso(self.timestamp)}
        if self.message:
            d["message"] = self.message
        if self.source:
            d["source"] = self.source.value
        return d


# fields a transition may populate; each is written at most once
RECORD_FIELDS = (
    "transaction_hash",
    "block_number",
    "sender_address",
    "amount_received",
    "network_id",
    "asset_symbol",
    "provider_transfer_id",
    "error_message",
    "error_code",
)


@dataclass(frozen=True)
class PaymentStatusRecord:
    order_id: str
    status: PaymentStatus
    status_history: Tuple[StatusHistoryEntry, ...] = ()
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    sender_address: Optional[str] = None
    amount_received: Optional[Decimal] = None
    network_id: Optional[str] = None
    asset_symbol: Optional[str] = None
    provider_transfer_id: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    completed_via: Optional[SignalSource] = None
    revision: int = 0

    def new_fields(self, fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for k, v in (fields or {}).items():
            if k not in RECORD_FIELDS:
                raise KeyError(f"unknown record field: {k}")
            if v is None or getattr(self, k) is not None:
                continue
            out[k] = v
        return out

    def with_transition(
        self,
        status: PaymentStatus,
        ts: datetime,
        *,
        message: Optional[str] = None,
        fields: Optional[Mapping[str, Any]] = None,
        source: Optional[SignalSource] = None,
    ) -> "PaymentStatusRecord":
        changes = self.new_fields(fields)
        if status == PaymentStatus.COMPLETED:
            changes["completed_via"] = source
        return replace(
            self,
            status=status,
            status_history=self.status_history + (StatusHistoryEntry(status, ts, message, source),),
            revision=self.revision + 1,
            **changes,
        )

    def with_fields(self, fields: Mapping[str, Any]) -> "PaymentStatusRecord":
        """Annotate without a status change; no history entry."""
        return replace(self, revision=self.revision + 1, **self.new_fields(fields))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "status": self.status.value,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
            "senderAddress": self.sender_address,
            "amountReceived": _money(self.amount_received),
            "networkId": self.network_id,
            "assetSymbol": self.asset_symbol,
            "providerTransferId": self.provider_transfer_id,
            "errorMessage": self.error_message,
            "errorCode": self.error_code,
            "completedVia": self.completed_via.value if self.completed_via else None,
            "statusHistory": [h.to_dict() for h in self.status_history],
        }


@dataclass(frozen=True)
class TransferEvent:
    """A candidate observed transfer; consumed once by the matcher."""
    transaction_hash: str
    block_number: Optional[int]
    from_address: str
    to_address: str
    amount: Decimal
    asset_symbol: str
    network_id: str

    def completion_fields(self) -> Dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "sender_address": self.from_address,
            "amount_received": self.amount,
            "network_id": self.network_id,
            "asset_symbol": self.asset_symbol,
        }


@dataclass(frozen=True)
class ProviderTransfer:
    """Transfer object as reported by the transfer provider."""
    transfer_id: str
    status: PaymentStatus
    raw_status: str
    transaction_hash: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    amount: Optional[Decimal] = None
    symbol: Optional[str] = None
    network_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class StatusView:
    status: PaymentStatus
    payment_details: PaymentStatusRecord
    order: Order

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "paymentDetails": self.payment_details.to_dict(),
            "order": self.order.to_dict(),
        }
