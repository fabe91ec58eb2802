import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import asyncio
import json
from dataclasses import replace
from decimal import Decimal

import pytest
from aioresponses import CallbackResult, aioresponses

from conftest import (
    INDEXER_KEY,
    MERCHANT,
    PAYER,
    PROVIDER_SECRET,
    indexer_webhook_body,
    provider_webhook_body,
    transfer,
)
from infra.http_client import HttpClient
from payments.enums import PaymentStatus, SignalSource, ToleranceBand
from payments.errors import NotFoundError, SignalSourceError, SignatureError, ValidationError
from payments.event_bus import TOPIC_SIGNAL_ERROR, TOPIC_TRANSITION_REJECTED, TOPIC_TRANSFER_UNMATCHED
from payments.models import AssetSelector, ProviderTransfer
from payments.services.chain_scanner import ChainScanner
from payments.services.reconcile_service import ReconcileService
from payments.webhooks import sign
from utils.logger import logger

TX_A = "0x" + "aa" * 32
TX_B = "0x" + "bb" * 32


@pytest.mark.asyncio
async def test_end_to_end_auto_order_completed_by_chain_poll(reconcile, lifecycle, scanner):
    order = await lifecycle.create_order("5.00", AssetSelector.auto())
    scanner.events["base"] = [transfer("5.00", tx=TX_A, network="base", symbol="USDC")]

    view = await reconcile.check_status(order.order_id)

    assert view.status == PaymentStatus.COMPLETED
    rec = view.payment_details
    assert rec.transaction_hash == TX_A
    assert rec.amount_received == Decimal("5.00")
    assert rec.network_id == "base" and rec.asset_symbol == "USDC"
    assert rec.completed_via == SignalSource.POLL_CHAIN
    assert [h.status for h in rec.status_history] == [PaymentStatus.PENDING, PaymentStatus.COMPLETED]
    # auto orders fan out over every supported network
    assert {c[0] for c in scanner.calls} == {"ethereum", "polygon", "arbitrum", "optimism", "base", "avalanche", "bsc"}


@pytest.mark.asyncio
async def test_concrete_order_scans_only_its_network(reconcile, lifecycle, scanner):
    order = await lifecycle.create_order("5", AssetSelector.parse("polygon", "USDT"))
    await reconcile.check_status(order.order_id)
    assert scanner.calls == [("polygon", MERCHANT, ("USDT",))]


@pytest.mark.asyncio
async def test_signal_source_failures_are_masked(reconcile, lifecycle, scanner, bus):
    order = await lifecycle.create_order("5")
    scanner.errors["base"] = SignalSourceError("rpc:base", "boom")
    scanner.delays["ethereum"] = 5
    scanner.events["polygon"] = [transfer("7.00", network="polygon")]

    view = await reconcile.check_status(order.order_id)

    assert view.status == PaymentStatus.PENDING
    assert bus.counts[TOPIC_SIGNAL_ERROR] == 2
    assert bus.counts[TOPIC_TRANSFER_UNMATCHED] == 1


@pytest.mark.asyncio
async def test_status_check_validates_id(reconcile):
    with pytest.raises(ValidationError):
        await reconcile.check_status("not-a-uuid")
    with pytest.raises(NotFoundError):
        await reconcile.check_status("00000000-0000-4000-8000-000000000000")


@pytest.mark.asyncio
async def test_expired_order_cannot_be_completed(reconcile, lifecycle, clock, scanner):
    order = await lifecycle.create_order("5")
    clock.advance(minutes=16)
    scanner.events["base"] = [transfer("5", tx=TX_A)]

    view = await reconcile.check_status(order.order_id)
    assert view.status == PaymentStatus.EXPIRED
    assert scanner.calls == []

    raw, sig = indexer_webhook_body(5_000_000, tx=TX_B)
    result = await reconcile.handle_indexer_webhook(raw, sig)
    assert result["matched"] == []
    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=5)
    await reconcile.handle_provider_webhook(raw, sig)

    _, rec = await lifecycle.store.get(order.order_id)
    assert rec.status == PaymentStatus.EXPIRED
    assert rec.transaction_hash is None


@pytest.mark.asyncio
async def test_webhook_expires_stale_order_before_matching(reconcile, lifecycle, clock):
    order = await lifecycle.create_order("5")
    clock.advance(minutes=20)
    raw, sig = indexer_webhook_body(5_000_000, tx=TX_A)
    assert (await reconcile.handle_indexer_webhook(raw, sig))["matched"] == []
    assert (await lifecycle.store.get_order(order.order_id)).status == PaymentStatus.EXPIRED


@pytest.mark.asyncio
async def test_provider_webhook_redelivery_is_idempotent(reconcile, lifecycle, clock, bus):
    order = await lifecycle.create_order("10.00")
    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=10)

    clock.advance(seconds=10)
    first = await reconcile.handle_provider_webhook(raw, sig)
    assert first["status"] == "completed"
    done_order, done_rec = await lifecycle.store.get(order.order_id)

    clock.advance(seconds=10)
    again = await reconcile.handle_provider_webhook(raw, sig)
    assert again["status"] == "completed"

    after_order, after_rec = await lifecycle.store.get(order.order_id)
    assert after_order.updated_at == done_order.updated_at
    assert after_rec.status_history == done_rec.status_history
    assert len(after_rec.status_history) == 2
    assert bus.counts[TOPIC_TRANSITION_REJECTED] == 1


@pytest.mark.asyncio
async def test_provider_pending_then_poll_completes(reconcile, lifecycle, provider):
    order = await lifecycle.create_order("10.00")
    raw, sig = provider_webhook_body(order.order_id, "pending", transfer_id="tr-9")
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "processing"
    assert (await lifecycle.store.get_status(order.order_id)).provider_transfer_id == "tr-9"

    provider.transfers["tr-9"] = ProviderTransfer("tr-9", PaymentStatus.PROCESSING, "pending")
    assert (await reconcile.check_status(order.order_id)).status == PaymentStatus.PROCESSING

    provider.error = SignalSourceError("provider", "HTTP 503")
    assert (await reconcile.check_status(order.order_id)).status == PaymentStatus.PROCESSING

    provider.error = None
    provider.transfers["tr-9"] = ProviderTransfer(
        "tr-9", PaymentStatus.COMPLETED, "completed", transaction_hash=TX_B, amount=Decimal("10.00"),
        to_address=MERCHANT,
    )
    view = await reconcile.check_status(order.order_id)
    assert view.status == PaymentStatus.COMPLETED
    assert view.payment_details.transaction_hash == TX_B
    assert view.payment_details.completed_via == SignalSource.POLL_PROVIDER
    assert [h.status for h in view.payment_details.status_history] == [
        PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_provider_failure_sets_error_and_blocks_resurrection(reconcile, lifecycle):
    order = await lifecycle.create_order("10.00")
    raw, sig = provider_webhook_body(order.order_id, "failed", transfer_id="tr-1")
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "failed"

    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=10)
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "failed"
    raw, sig = indexer_webhook_body(10_000_000, tx=TX_B)
    assert (await reconcile.handle_indexer_webhook(raw, sig))["matched"] == []

    rec = await lifecycle.store.get_status(order.order_id)
    assert rec.status == PaymentStatus.FAILED
    assert rec.error_code == "failed"
    assert rec.transaction_hash is None


@pytest.mark.asyncio
async def test_provider_amount_outside_strict_band_is_not_applied(reconcile, lifecycle, bus):
    order = await lifecycle.create_order("10.00")
    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=10.15)
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "pending"
    assert bus.counts[TOPIC_TRANSFER_UNMATCHED] == 1

    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=10.09)
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "completed"


@pytest.mark.asyncio
async def test_concurrent_provider_and_indexer_webhooks_commit_once(reconcile, lifecycle):
    order = await lifecycle.create_order("10.00")
    p_raw, p_sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=10)
    i_raw, i_sig = indexer_webhook_body(10_000_000, tx=TX_B)

    await asyncio.gather(
        reconcile.handle_provider_webhook(p_raw, p_sig),
        reconcile.handle_indexer_webhook(i_raw, i_sig),
    )

    rec = await lifecycle.store.get_status(order.order_id)
    assert rec.status == PaymentStatus.COMPLETED
    assert len(rec.status_history) == 2
    if rec.transaction_hash == TX_A:
        assert rec.completed_via == SignalSource.PROVIDER_WEBHOOK
        assert rec.sender_address is None
    else:
        assert rec.transaction_hash == TX_B
        assert rec.completed_via == SignalSource.INDEXER_WEBHOOK
        assert rec.sender_address == PAYER
        assert rec.provider_transfer_id is None


@pytest.mark.asyncio
async def test_indexer_transfer_goes_to_oldest_matching_order(reconcile, lifecycle, clock):
    first = await lifecycle.create_order("5.00")
    clock.advance(seconds=30)
    second = await lifecycle.create_order("5.00")

    raw, sig = indexer_webhook_body(5_000_000, tx=TX_A)
    assert (await reconcile.handle_indexer_webhook(raw, sig))["matched"] == [first.order_id]
    # redelivery of the same transaction must not pay the second order
    assert (await reconcile.handle_indexer_webhook(raw, sig))["matched"] == []
    assert (await lifecycle.store.get_order(second.order_id)).status == PaymentStatus.PENDING

    raw, sig = indexer_webhook_body(5_000_000, tx=TX_B)
    assert (await reconcile.handle_indexer_webhook(raw, sig))["matched"] == [second.order_id]


@pytest.mark.asyncio
async def test_indexer_filters_and_signature(reconcile, lifecycle):
    await lifecycle.create_order("5.00")
    for kw in ({"category": "external"}, {"asset": "WETH"}, {"removed": True}):
        raw, sig = indexer_webhook_body(5_000_000, **kw)
        assert (await reconcile.handle_indexer_webhook(raw, sig))["transfers"] == 0

    raw, _ = indexer_webhook_body(5_000_000)
    with pytest.raises(SignatureError):
        await reconcile.handle_indexer_webhook(raw, "00" * 32)
    with pytest.raises(SignatureError):
        await reconcile.handle_indexer_webhook(raw, None)


@pytest.mark.asyncio
async def test_unparsable_or_unknown_payloads_are_acknowledged(reconcile):
    raw = b"{not json"
    res = await reconcile.handle_provider_webhook(raw, sign(raw, PROVIDER_SECRET, "base64"))
    assert res["received"] and res["ignored"] == "unparsable payload"

    raw, sig = provider_webhook_body("00000000-0000-4000-8000-000000000000", "succeeded")
    assert (await reconcile.handle_provider_webhook(raw, sig))["ignored"] == "unknown order"

    raw, sig = provider_webhook_body("garbage", "succeeded")
    assert (await reconcile.handle_provider_webhook(raw, sig))["ignored"] == "no order key"

    raw = b"[]"
    res = await reconcile.handle_indexer_webhook(raw, sign(raw, INDEXER_KEY, "hex"))
    assert res["ignored"] == "unparsable payload"


@pytest.mark.asyncio
async def test_unsigned_webhooks_rejected_without_secret(lifecycle, scanner, provider, settings):
    svc = ReconcileService(lifecycle, scanner, provider, replace(settings, provider_webhook_secret=""))
    raw, sig = provider_webhook_body("00000000-0000-4000-8000-000000000000", "pending")
    with pytest.raises(SignatureError):
        await svc.handle_provider_webhook(raw, sig)

    lenient = ReconcileService(
        lifecycle, scanner, provider, replace(settings, provider_webhook_secret="", allow_unsigned_webhooks=True)
    )
    assert (await lenient.handle_provider_webhook(raw, None))["received"]


@pytest.mark.asyncio
async def test_initiate_provider_payment(reconcile, lifecycle, provider):
    order = await lifecycle.create_order("12.50", AssetSelector.parse("polygon", "USDC"))
    provider.executed = ProviderTransfer("tr-7", PaymentStatus.PROCESSING, "pending")

    result = await reconcile.initiate_provider_payment(order.order_id, "auth-token")

    assert result["transferId"] == "tr-7"
    assert result["order"]["status"] == "processing"
    assert result["paymentDetails"]["providerTransferId"] == "tr-7"
    assert ("execute", order.order_id, "auth-token", "polygon", "USDC") in provider.calls


@pytest.mark.asyncio
async def test_initiate_provider_payment_failure_leaves_order_open(reconcile, lifecycle, provider):
    order = await lifecycle.create_order("12.50")
    provider.error = SignalSourceError("provider", "HTTP 500")
    with pytest.raises(SignalSourceError):
        await reconcile.initiate_provider_payment(order.order_id, "auth-token")
    assert (await lifecycle.store.get_order(order.order_id)).status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_stats_counts_rejections(reconcile, lifecycle):
    order = await lifecycle.create_order("5")
    await lifecycle.cancel(order.order_id)
    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=5)
    await reconcile.handle_provider_webhook(raw, sig)

    stats = await reconcile.stats()
    assert stats["store"]["cancelled"] == 1
    assert stats["events"][TOPIC_TRANSITION_REJECTED] == 1


@pytest.mark.asyncio
async def test_malformed_rpc_logs_are_masked_on_status_check(lifecycle, provider, settings, bus):
    rpc = "https://rpc.base.test"
    settings = replace(settings, rpc_urls={"base": rpc})
    http = HttpClient({"retries": {"rest_max_attempts": 1}})
    svc = ReconcileService(lifecycle, ChainScanner(http, settings), provider, settings, bus=bus)
    order = await lifecycle.create_order("5.00", AssetSelector.parse("base", "USDC"))

    def _rpc(url, **kwargs):
        method = json.loads(kwargs["data"])["method"]
        result = "0x100" if method == "eth_blockNumber" else "0x"
        return CallbackResult(status=200, payload={"jsonrpc": "2.0", "id": 1, "result": result})

    try:
        with aioresponses() as m:
            m.post(rpc, callback=_rpc, repeat=True)
            view = await svc.check_status(order.order_id)
    finally:
        await http.close()

    assert view.status == PaymentStatus.PENDING
    assert bus.counts[TOPIC_SIGNAL_ERROR] == 1


@pytest.mark.asyncio
async def test_provider_completion_must_fit_concrete_asset(reconcile, lifecycle, bus):
    order = await lifecycle.create_order("5.00", AssetSelector.parse("base", "USDC"))

    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=5, chain="Polygon", token="USDC")
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "pending"
    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=5, chain="Base", token="USDT")
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "pending"
    assert bus.counts[TOPIC_TRANSFER_UNMATCHED] == 2

    raw, sig = provider_webhook_body(order.order_id, "succeeded", tx=TX_A, amount=5, chain="Base", token="usdc")
    assert (await reconcile.handle_provider_webhook(raw, sig))["status"] == "completed"
    rec = await lifecycle.store.get_status(order.order_id)
    assert rec.network_id == "base" and rec.asset_symbol == "USDC"


@pytest.mark.asyncio
async def test_unmatched_chain_poll_transfers_log_at_debug(reconcile, lifecycle, scanner):
    records = []
    sink = logger.add(lambda m: records.append(m.record), level="DEBUG")
    try:
        order = await lifecycle.create_order("5.00")
        scanner.events["base"] = [transfer("99", tx=TX_B)]
        await reconcile.check_status(order.order_id)
        await reconcile.ingest_transfer(transfer("77", tx=TX_A), ToleranceBand.LOOSE, SignalSource.INDEXER_WEBHOOK)
    finally:
        logger.remove(sink)

    levels = {
        r["message"].rsplit(" via ", 1)[-1]: r["level"].name
        for r in records if r["message"].startswith("Unmatched transfer")
    }
    assert levels == {"poll_chain": "DEBUG", "indexer_webhook": "INFO"}
