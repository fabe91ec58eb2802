# payments/services/reconcile_service.py
from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as PayloadError

from payments.config import PaymentSettings
from payments.enums import PaymentStatus, SignalSource, ToleranceBand, map_provider_status
from payments.errors import (
    ConcurrentUpdateError,
    ConfigurationError,
    DuplicateTransactionError,
    IllegalTransitionError,
    NotFoundError,
    SignalSourceError,
    SignatureError,
)
from payments.event_bus import (
    EventBus,
    TOPIC_SIGNAL_ERROR,
    TOPIC_TRANSFER_UNMATCHED,
    TOPIC_TRANSITION_REJECTED,
    TOPIC_WEBHOOK_REJECTED,
)
from payments.idempotency import parse_order_id
from payments.models import Order, StatusView, TransferEvent
from payments.networks import NETWORKS
from payments.services.chain_scanner import ChainScanner
from payments.services.lifecycle_service import OrderLifecycleService
from payments.services.matcher import AmountMatcher, amount_within
from payments.services.payment_request import resolve_pair
from payments.services.provider_client import PROVIDER_NETWORK_IDS, TransferProviderClient
from payments.state_machine import OPEN, TERMINAL
from payments.webhooks import (
    IndexerWebhook,
    ProviderWebhook,
    decode_indexer_activities,
    extract_order_id,
    verify_signature,
)
from utils.logger import logger as _default_logger

P = PaymentStatus


class ReconcileService:
    """
    Multi-source payment reconciliation.

    Three channels drive order state: the poll channel (chain scan or provider
    status, triggered by a status check), the provider webhook and the chain
    indexer webhook. They run as independent request handlers; the only
    shared state is the record store and every commit goes through the
    lifecycle's conditional transition, so the first committed channel wins
    and later ones become logged no-ops.
    """

    def __init__(
        self,
        lifecycle: OrderLifecycleService,
        scanner: ChainScanner,
        provider: TransferProviderClient,
        settings: PaymentSettings,
        *,
        matcher: Optional[AmountMatcher] = None,
        bus: Optional[EventBus] = None,
        logger=None,
    ) -> None:
        self._lc = lifecycle
        self._store = lifecycle.store
        self._scanner = scanner
        self._provider = provider
        self._settings = settings
        self._matcher = matcher or AmountMatcher(settings.strict_tolerance, settings.loose_tolerance)
        self._bus = bus or EventBus()
        self._log = logger or _default_logger

    # ================================================================================
    # status check (poll channel)
    # ================================================================================
    async def check_status(self, order_id: str) -> StatusView:
        """
        Expire if due, then poll the channel that fits the order's state.
        Signal-source failures are masked; the last committed status is returned.
        """
        order_id = parse_order_id(order_id)
        order = await self._lc.get_fresh(order_id)

        if order.status in OPEN:
            await self._poll_chain(order)
        elif order.status == P.PROCESSING:
            record = await self._store.get_status(order_id)
            if record.provider_transfer_id:
                await self._poll_provider(order, record.provider_transfer_id)

        order, record = await self._store.get(order_id)
        return StatusView(order.status, record, order)

    async def _scan_one(self, network_id: str, merchant: str, symbols: Optional[Sequence[str]]) -> List[TransferEvent]:
        try:
            return await asyncio.wait_for(
                self._scanner.scan_network(network_id, merchant, symbols),
                timeout=self._settings.scan_timeout_s,
            )
        except asyncio.TimeoutError:
            self._signal_error(f"rpc:{network_id}", f"scan timed out after {self._settings.scan_timeout_s}s")
        except (SignalSourceError, ConfigurationError) as e:
            self._signal_error(f"rpc:{network_id}", str(e))
        return []

    async def _poll_chain(self, order: Order) -> None:
        """Fan out one bounded scan per network; stop once this order has left the open states."""
        symbols = [order.asset.symbol] if order.asset.symbol else None
        tasks = [
            asyncio.create_task(self._scan_one(net, order.merchant_address, symbols), name=f"scan:{net}")
            for net in order.asset.networks()
        ]
        try:
            for fut in asyncio.as_completed(tasks):
                for transfer in await fut:
                    await self.ingest_transfer(transfer, ToleranceBand.LOOSE, SignalSource.POLL_CHAIN)
                current = await self._store.get_order(order.order_id)
                if current.status not in OPEN:
                    break
        finally:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _poll_provider(self, order: Order, transfer_id: str) -> None:
        try:
            transfer = await self._provider.get_transfer(transfer_id)
        except (SignalSourceError, ConfigurationError) as e:
            self._signal_error("provider", str(e))
            return
        if transfer.status == P.PROCESSING:
            return
        await self._apply_provider_status(
            order,
            transfer.status,
            source=SignalSource.POLL_PROVIDER,
            transfer_id=transfer.transfer_id,
            raw_status=transfer.raw_status,
            tx_hash=transfer.transaction_hash,
            amount=transfer.amount,
            to_address=transfer.to_address,
            sender=transfer.from_address,
            network_id=transfer.network_id,
            symbol=transfer.symbol,
        )

    # ================================================================================
    # transfer ingestion (chain poll + indexer webhook)
    # ================================================================================
    async def ingest_transfer(
        self, transfer: TransferEvent, band: ToleranceBand, source: SignalSource
    ) -> Optional[Order]:
        """
        Match one observed transfer against every open order of its destination
        and complete the chosen one. Returns the completed order, or None.
        """
        owner = await self._store.find_by_transaction(transfer.transaction_hash)
        if owner is not None:
            self._log.debug(f"Transfer {transfer.transaction_hash} already applied to {owner}")
            return None

        entries = await self._store.scan_by_merchant(transfer.to_address, OPEN)
        candidates: List[Order] = []
        for order, _ in entries:
            fresh = await self._lc.check_expiry(order)
            if fresh.status in OPEN:
                candidates.append(fresh)

        tried: set[str] = set()
        while True:
            chosen = self._matcher.match(
                [o for o in candidates if o.order_id not in tried], transfer, band
            )
            if chosen is None:
                # chain polls see the whole lookback window on every call
                level = "DEBUG" if source == SignalSource.POLL_CHAIN else "INFO"
                self._log.log(
                    level,
                    f"Unmatched transfer tx={transfer.transaction_hash} {transfer.amount} "
                    f"{transfer.asset_symbol}@{transfer.network_id} to={transfer.to_address} via {source.value}"
                )
                self._bus.publish(TOPIC_TRANSFER_UNMATCHED, (transfer, source))
                return None
            tried.add(chosen.order_id)
            try:
                return await self._lc.transition(
                    chosen,
                    P.COMPLETED,
                    transfer.completion_fields(),
                    message=f"Payment matched: {transfer.amount} {transfer.asset_symbol} on {transfer.network_id}",
                    source=source,
                )
            except DuplicateTransactionError as e:
                self._rejected(chosen.order_id, e, source)
                return None
            except (IllegalTransitionError, ConcurrentUpdateError) as e:
                # lost to another channel; the next best candidate may still be open
                self._rejected(chosen.order_id, e, source, tx=transfer.transaction_hash)

    # ================================================================================
    # provider status application (provider webhook + provider poll)
    # ================================================================================
    async def _apply_provider_status(
        self,
        order: Order,
        target: PaymentStatus,
        *,
        source: SignalSource,
        transfer_id: Optional[str] = None,
        raw_status: str = "",
        tx_hash: Optional[str] = None,
        amount: Optional[Decimal] = None,
        to_address: Optional[str] = None,
        sender: Optional[str] = None,
        network_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ) -> Optional[Order]:
        order = await self._lc.check_expiry(order)

        if target == P.PROCESSING:
            if order.status == target:
                if transfer_id:
                    await self._annotate(order, {"provider_transfer_id": transfer_id}, source)
                return order
            return await self._commit(
                order, P.PROCESSING, {"provider_transfer_id": transfer_id},
                message="Transfer pending at provider", source=source,
            )

        if target == P.COMPLETED:
            if to_address and to_address.lower() != order.merchant_address.lower():
                return self._provider_mismatch(order, source, f"destination {to_address}")
            if amount is not None and not amount_within(order.amount_fiat, amount, self._matcher.strict):
                return self._provider_mismatch(order, source, f"amount {amount} vs {order.amount_fiat}")
            symbol = symbol.upper() if symbol else None
            if network_id and order.asset.network_id and network_id != order.asset.network_id:
                return self._provider_mismatch(order, source, f"network {network_id} vs {order.asset.network_id}")
            if symbol and order.asset.symbol and symbol != order.asset.symbol:
                return self._provider_mismatch(order, source, f"token {symbol} vs {order.asset.symbol}")
            fields = {
                "provider_transfer_id": transfer_id,
                "transaction_hash": tx_hash,
                "amount_received": amount,
                "sender_address": sender,
                "network_id": network_id,
                "asset_symbol": symbol,
            }
            return await self._commit(order, P.COMPLETED, fields, message="Transfer completed at provider", source=source)

        fields = {
            "provider_transfer_id": transfer_id,
            "transaction_hash": tx_hash,
            "error_message": f"Provider reported transfer {raw_status or 'failed'}",
            "error_code": raw_status or "failed",
        }
        return await self._commit(order, P.FAILED, fields, message="Transfer failed at provider", source=source)

    def _provider_mismatch(self, order: Order, source: SignalSource, what: str) -> None:
        self._log.warning(f"Provider completion for {order.order_id} not applied: {what}")
        self._bus.publish(TOPIC_TRANSFER_UNMATCHED, (order.order_id, source, what))
        return None

    async def _commit(
        self,
        order: Order,
        target: PaymentStatus,
        fields: Mapping[str, Any],
        *,
        message: str,
        source: SignalSource,
    ) -> Optional[Order]:
        try:
            return await self._lc.transition(order, target, fields, message=message, source=source)
        except (IllegalTransitionError, DuplicateTransactionError, ConcurrentUpdateError) as e:
            self._rejected(order.order_id, e, source, tx=fields.get("transaction_hash"))
            return None

    async def _annotate(self, order: Order, fields: Mapping[str, Any], source: SignalSource) -> None:
        try:
            await self._lc.annotate(order, fields)
        except (IllegalTransitionError, ConcurrentUpdateError) as e:
            self._rejected(order.order_id, e, source)

    def _rejected(self, order_id: str, err: Exception, source: SignalSource, tx: Optional[str] = None) -> None:
        self._log.warning(
            f"Dropped update for order {order_id} via {source.value}: {err}" + (f" tx={tx}" if tx else "")
        )
        self._bus.publish(TOPIC_TRANSITION_REJECTED, (order_id, source, err))

    def _signal_error(self, source: str, msg: str) -> None:
        self._log.warning(f"Signal source {source} failed: {msg}")
        self._bus.publish(TOPIC_SIGNAL_ERROR, (source, msg))

    # ================================================================================
    # webhooks
    # ================================================================================
    def _verify(self, channel: str, raw: bytes, signature: Optional[str], secret: str, encoding: str) -> None:
        try:
            verify_signature(
                raw, signature, secret, encoding=encoding, allow_unsigned=self._settings.allow_unsigned_webhooks
            )
        except SignatureError as e:
            self._log.error(f"Rejected {channel} webhook: {e}")
            self._bus.publish(TOPIC_WEBHOOK_REJECTED, (channel, str(e)))
            raise

    async def handle_provider_webhook(self, raw: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Raises SignatureError on a bad signature; anything else is acknowledged."""
        self._verify("provider", raw, signature, self._settings.provider_webhook_secret, "base64")
        try:
            event = ProviderWebhook.model_validate_json(raw)
        except PayloadError as e:
            self._log.warning(f"Ignoring unparsable provider webhook: {e.error_count()} errors")
            return {"received": True, "ignored": "unparsable payload"}

        order_id = extract_order_id(event, self._settings.provider_user_prefix)
        if order_id is None:
            self._log.warning(f"Provider webhook without decodable order key UserId={event.user_id!r}")
            return {"received": True, "ignored": "no order key"}
        try:
            order = await self._store.get_order(order_id)
        except NotFoundError:
            self._log.warning(f"Provider webhook for unknown order {order_id}")
            return {"received": True, "ignored": "unknown order"}

        self._log.info(
            f"Provider webhook order={order_id} transfer={event.transfer_id} status={event.transfer_status} tx={event.tx_hash}"
        )
        await self._apply_provider_status(
            order,
            map_provider_status(event.transfer_status),
            source=SignalSource.PROVIDER_WEBHOOK,
            transfer_id=event.transfer_id,
            raw_status=event.transfer_status,
            tx_hash=event.tx_hash,
            amount=event.destination_amount,
            to_address=event.destination_address,
            network_id=event.network_id,
            symbol=event.token,
        )
        current = await self._store.get_order(order_id)
        return {"received": True, "orderId": order_id, "status": current.status.value}

    async def handle_indexer_webhook(self, raw: bytes, signature: Optional[str]) -> Dict[str, Any]:
        self._verify("indexer", raw, signature, self._settings.indexer_signing_key, "hex")
        try:
            payload = IndexerWebhook.model_validate_json(raw)
        except PayloadError as e:
            self._log.warning(f"Ignoring unparsable indexer webhook: {e.error_count()} errors")
            return {"received": True, "ignored": "unparsable payload"}

        transfers = decode_indexer_activities(payload)
        matched: List[str] = []
        for transfer in transfers:
            order = await self.ingest_transfer(transfer, ToleranceBand.LOOSE, SignalSource.INDEXER_WEBHOOK)
            if order is not None:
                matched.append(order.order_id)
        self._log.info(
            f"Indexer webhook network={payload.event.network} activities={len(payload.event.activity)} "
            f"transfers={len(transfers)} matched={len(matched)}"
        )
        return {"received": True, "transfers": len(transfers), "matched": matched}

    # ================================================================================
    # caller-initiated provider transfer
    # ================================================================================
    async def initiate_provider_payment(
        self, order_id: str, auth_token: str, *, from_type: str = "exchange"
    ) -> Dict[str, Any]:
        """
        Execute a transfer through the provider for an open order and track it
        via the provider channel. Provider failures propagate as SignalSourceError.
        """
        order = await self._lc.require_open(parse_order_id(order_id))
        network_id, symbol = resolve_pair(order.asset, self._settings)

        preview = await self._provider.preview_transfer(order, network_id, symbol, from_type=from_type)
        transfer = await self._provider.execute_transfer(order, auth_token, network_id, symbol, from_type=from_type)

        await self._apply_provider_status(
            order, P.PROCESSING, source=SignalSource.MERCHANT, transfer_id=transfer.transfer_id
        )
        if transfer.status in TERMINAL:
            await self._apply_provider_status(
                order,
                transfer.status,
                source=SignalSource.POLL_PROVIDER,
                transfer_id=transfer.transfer_id,
                raw_status=transfer.raw_status,
                tx_hash=transfer.transaction_hash,
                amount=transfer.amount,
                to_address=transfer.to_address,
                sender=transfer.from_address,
                network_id=transfer.network_id or network_id,
                symbol=transfer.symbol or symbol,
            )
        order, record = await self._store.get(order.order_id)
        return {
            "order": order.to_dict(),
            "paymentDetails": record.to_dict(),
            "transferId": transfer.transfer_id,
            "preview": preview,
        }

    # ================================================================================
    # diagnostics
    # ================================================================================
    async def debug_scan(
        self, address: str, network_id: Optional[str] = None, amount: Optional[Decimal] = None
    ) -> Dict[str, Any]:
        """Run the chain scanner without touching any order."""
        networks = [network_id] if network_id else list(NETWORKS)
        results = await asyncio.gather(*(self._scan_one(n, address, None) for n in networks))
        transfers = [t for batch in results for t in batch]
        if amount is not None:
            transfers = [t for t in transfers if amount_within(amount, t.amount, self._matcher.loose)]
        return {
            "address": address,
            "networks": networks,
            "transfers": [
                {
                    "transactionHash": t.transaction_hash,
                    "blockNumber": t.block_number,
                    "from": t.from_address,
                    "amount": format(t.amount, "f"),
                    "stablecoin": t.asset_symbol,
                    "networkId": t.network_id,
                }
                for t in transfers
            ],
        }

    async def provider_networks(self) -> Dict[str, Any]:
        """Our network-id mapping next to what the provider reports live."""
        out: Dict[str, Any] = {
            "currentConfig": {
                "verifiedNetworks": sorted(PROVIDER_NETWORK_IDS),
                "networkIds": dict(PROVIDER_NETWORK_IDS),
            },
        }
        try:
            out["providerNetworks"] = await self._provider.list_networks()
            out["success"] = True
        except (SignalSourceError, ConfigurationError) as e:
            self._signal_error("provider", str(e))
            out.update(success=False, error=str(e))
        return out

    async def stats(self) -> Dict[str, Any]:
        return {"store": await self._store.stats(), "events": self._bus.stats()}
