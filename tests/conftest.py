# tests/conftest.py
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from payments.config import PaymentSettings
from payments.event_bus import EventBus
from payments.models import ProviderTransfer, TransferEvent
from payments.services.lifecycle_service import OrderLifecycleService
from payments.services.reconcile_service import ReconcileService
from payments.stores.record_store import InMemoryRecordStore
from payments.webhooks import sign

MERCHANT = "0x" + "ab" * 20
PAYER = "0x" + "cd" * 20
PROVIDER_SECRET = "provider-secret"
INDEXER_KEY = "indexer-key"
USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


class FakeScanner:
    """Per-network canned transfers, errors and delays."""

    def __init__(self) -> None:
        self.events: dict[str, list[TransferEvent]] = {}
        self.errors: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[tuple] = []

    async def scan_network(self, network_id, merchant_address, symbols=None):
        self.calls.append((network_id, merchant_address, tuple(symbols) if symbols else None))
        if network_id in self.delays:
            await asyncio.sleep(self.delays[network_id])
        if network_id in self.errors:
            raise self.errors[network_id]
        return [e for e in self.events.get(network_id, []) if not symbols or e.asset_symbol in symbols]


class FakeProvider:
    def __init__(self) -> None:
        self.transfers: dict[str, ProviderTransfer] = {}
        self.executed: ProviderTransfer | None = None
        self.networks: list[dict] = []
        self.error: Exception | None = None
        self.calls: list[tuple] = []

    async def get_transfer(self, transfer_id):
        self.calls.append(("get", transfer_id))
        if self.error:
            raise self.error
        return self.transfers[transfer_id]

    async def preview_transfer(self, order, network_id, symbol, *, from_type="exchange"):
        self.calls.append(("preview", order.order_id, network_id, symbol))
        if self.error:
            raise self.error
        amt = format(order.amount_fiat, "f")
        return {"amount": amt, "fee": "0", "total": amt, "symbol": symbol}

    async def execute_transfer(self, order, auth_token, network_id, symbol, *, from_type="exchange"):
        self.calls.append(("execute", order.order_id, auth_token, network_id, symbol))
        if self.error:
            raise self.error
        return self.executed

    async def list_networks(self):
        self.calls.append(("networks",))
        if self.error:
            raise self.error
        return self.networks


def transfer(amount, *, tx="0x" + "11" * 32, network="base", symbol="USDC", to=MERCHANT, frm=PAYER, block=100):
    return TransferEvent(
        transaction_hash=tx,
        block_number=block,
        from_address=frm,
        to_address=to,
        amount=Decimal(str(amount)),
        asset_symbol=symbol,
        network_id=network,
    )


def provider_webhook_body(order_id, status, *, tx=None, amount=None, transfer_id="tr-1", to=MERCHANT,
                          chain="Base", token="USDC"):
    body = {
        "Id": "wh-1",
        "EventId": "evt-1",
        "UserId": f"user_{order_id}",
        "TransactionId": order_id,
        "TransferId": transfer_id,
        "TransferStatus": status,
        "TxHash": tx,
        "Chain": chain,
        "Token": token,
        "DestinationAddress": to,
        "DestinationAmount": amount,
        "Timestamp": 1735732800000,
    }
    raw = json.dumps(body).encode()
    return raw, sign(raw, PROVIDER_SECRET, "base64")


def indexer_webhook_body(amount_units, *, tx="0x" + "22" * 32, network="BASE_MAINNET", asset="USDC",
                         category="token", removed=False, to=MERCHANT, decimals=6, block_num="0x1b4"):
    body = {
        "webhookId": "wh_1",
        "id": "whevt_1",
        "createdAt": "2025-01-01T12:00:05Z",
        "type": "ADDRESS_ACTIVITY",
        "event": {
            "network": network,
            "activity": [{
                "blockNum": block_num,
                "hash": tx,
                "fromAddress": PAYER,
                "toAddress": to,
                "value": amount_units / 10 ** decimals,
                "asset": asset,
                "category": category,
                "rawContract": {"rawValue": hex(amount_units), "address": USDC_BASE, "decimals": decimals},
                "log": {"removed": removed},
            }],
        },
    }
    raw = json.dumps(body).encode()
    return raw, sign(raw, INDEXER_KEY, "hex")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return PaymentSettings(
        merchant_address=MERCHANT,
        provider_webhook_secret=PROVIDER_SECRET,
        indexer_signing_key=INDEXER_KEY,
        scan_timeout_s=0.2,
    )


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def lifecycle(store, settings, clock, bus):
    return OrderLifecycleService(store, settings, clock=clock, bus=bus)


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def reconcile(lifecycle, scanner, provider, settings, bus):
    return ReconcileService(lifecycle, scanner, provider, settings, bus=bus)
