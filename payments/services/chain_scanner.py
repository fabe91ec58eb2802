# payments/services/chain_scanner.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from infra.http_client import HttpError, RpcError
from payments.config import PaymentSettings
from payments.errors import SignalSourceError
from payments.models import TransferEvent
from payments.networks import TOKEN_CONTRACTS, decimals_for
from utils.logger import logger as _default_logger

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def pad_address_topic(address: str) -> str:
    """20-byte address -> 32-byte left-padded topic."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _hex_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    if isinstance(v, int):
        return v
    s = str(v)
    if s in ("0x", "0x0"):
        return 0
    return int(s, 16) if s.startswith("0x") else int(s)


def scale_amount(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


class ChainScanner:
    """
    Reads recent ERC-20 Transfer logs addressed to the merchant via JSON-RPC.

    One eth_blockNumber per scan, then one eth_getLogs per token contract over
    the last `lookback_blocks` blocks. A failing token query is logged and
    skipped; a failing block-number query fails the whole network scan.
    """

    def __init__(self, http_client, settings: PaymentSettings, logger=None) -> None:
        self._http = http_client
        self._settings = settings
        self._log = logger or _default_logger

    async def block_number(self, network_id: str) -> int:
        url = self._settings.rpc_url(network_id)
        try:
            return _hex_int(await self._http.rpc_call(url, "eth_blockNumber", [])) or 0
        except (HttpError, RpcError, ValueError, TypeError) as e:
            raise SignalSourceError(f"rpc:{network_id}", f"eth_blockNumber failed: {e}") from e

    async def scan_network(
        self, network_id: str, merchant_address: str, symbols: Optional[Iterable[str]] = None
    ) -> List[TransferEvent]:
        tokens: Dict[str, str] = TOKEN_CONTRACTS.get(network_id, {})
        wanted = [s for s in (symbols or tokens) if s in tokens]
        if not wanted:
            return []

        url = self._settings.rpc_url(network_id)
        current = await self.block_number(network_id)
        from_block = max(current - self._settings.lookback_blocks, 0)
        to_topic = pad_address_topic(merchant_address)

        events: List[TransferEvent] = []
        for symbol in wanted:
            contract = tokens[symbol]
            flt = {
                "address": contract,
                "topics": [TRANSFER_TOPIC, None, to_topic],
                "fromBlock": hex(from_block),
                "toBlock": "latest",
            }
            try:
                logs = await self._http.rpc_call(url, "eth_getLogs", [flt])
            except (HttpError, RpcError) as e:
                self._log.warning(f"eth_getLogs failed network={network_id} token={symbol}: {e}")
                continue
            if logs is None:
                continue
            if not isinstance(logs, list):
                raise SignalSourceError(f"rpc:{network_id}", f"eth_getLogs returned {type(logs).__name__}")
            for entry in logs:
                ev = self._parse_log(entry, network_id, symbol)
                if ev is not None:
                    events.append(ev)

        self._log.debug(f"Scanned {network_id} blocks {from_block}..{current} -> {len(events)} transfers")
        return events

    def _parse_log(self, entry: Any, network_id: str, symbol: str) -> Optional[TransferEvent]:
        if not isinstance(entry, dict):
            self._log.warning(f"Skipping non-object log on {network_id}: {entry!r}")
            return None
        try:
            topics = entry.get("topics") or []
            if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_TOPIC or entry.get("removed"):
                return None
            raw = _hex_int(entry.get("data")) or 0
            return TransferEvent(
                transaction_hash=str(entry["transactionHash"]),
                block_number=_hex_int(entry.get("blockNumber")),
                from_address=topic_to_address(topics[1]),
                to_address=topic_to_address(topics[2]),
                amount=scale_amount(raw, decimals_for(network_id, symbol)),
                asset_symbol=symbol,
                network_id=network_id,
            )
        except (KeyError, ValueError, TypeError) as e:
            self._log.warning(f"Skipping malformed log on {network_id}: {e}")
            return None
