# payments/webhooks.py
"""
Webhook signature verification and payload decoding for the two push channels:

- transfer provider: HMAC-SHA256 over the raw body, base64, keyed per order via UserId
- chain indexer:     HMAC-SHA256 over the raw body, hex, raw address activity
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import uuid
from decimal import Decimal
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from payments.errors import SignatureError
from payments.models import TransferEvent
from payments.networks import (
    INDEXER_STABLECOINS,
    decimals_for,
    indexer_network,
    normalize_network_id,
    token_symbol,
)
from utils.logger import logger

TOKEN_CATEGORIES = frozenset({"token", "erc20"})

CHAIN_NAME_ALIASES = {
    "bnb smart chain": "bsc",
    "binance smart chain": "bsc",
    "bnb": "bsc",
    "avalanche c-chain": "avalanche",
    "arbitrum one": "arbitrum",
    "op mainnet": "optimism",
}


# ---- signatures ---------------------------------------------------------------------
def sign(raw: bytes, secret: str, encoding: str = "hex") -> str:
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).digest()
    if encoding == "base64":
        return base64.b64encode(digest).decode()
    return digest.hex()


def verify_signature(
    raw: bytes,
    signature: Optional[str],
    secret: Optional[str],
    *,
    encoding: str = "hex",
    allow_unsigned: bool = False,
) -> None:
    """
    Constant-time HMAC check. Raises SignatureError unless the signature matches.
    With no secret configured the call is rejected unless allow_unsigned is set.
    """
    if not secret:
        if allow_unsigned:
            return
        raise SignatureError("webhook secret not configured")
    if not signature:
        raise SignatureError("missing signature")
    expected = sign(raw, secret, encoding)
    given = signature.strip()
    if encoding == "hex":
        given = given.lower().removeprefix("sha256=")
    if not hmac.compare_digest(given.encode(), expected.encode()):
        raise SignatureError("signature mismatch")


# ---- provider payload ---------------------------------------------------------------
class ProviderWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = Field(default=None, alias="Id")
    event_id: Optional[str] = Field(default=None, alias="EventId")
    user_id: Optional[str] = Field(default=None, alias="UserId")
    transaction_id: Optional[str] = Field(default=None, alias="TransactionId")
    transfer_id: Optional[str] = Field(default=None, alias="TransferId")
    transfer_status: str = Field(alias="TransferStatus")
    tx_hash: Optional[str] = Field(default=None, alias="TxHash")
    chain: Optional[str] = Field(default=None, alias="Chain")
    token: Optional[str] = Field(default=None, alias="Token")
    destination_address: Optional[str] = Field(default=None, alias="DestinationAddress")
    source_amount: Optional[Decimal] = Field(default=None, alias="SourceAmount")
    destination_amount: Optional[Decimal] = Field(default=None, alias="DestinationAmount")
    timestamp: Optional[Union[int, float, str]] = Field(default=None, alias="Timestamp")

    @property
    def network_id(self) -> Optional[str]:
        if not self.chain:
            return None
        name = self.chain.strip().lower()
        return CHAIN_NAME_ALIASES.get(name) or normalize_network_id(name)


def _as_order_id(raw: Optional[str], prefix: str) -> Optional[str]:
    if not raw:
        return None
    s = raw.strip()
    if prefix and s.startswith(prefix):
        s = s[len(prefix):]
    try:
        return str(uuid.UUID(s))
    except ValueError:
        return None


def extract_order_id(event: ProviderWebhook, prefix: str = "user_") -> Optional[str]:
    """UserId carries '<prefix><orderId>'; TransactionId is the fallback carrier."""
    return _as_order_id(event.user_id, prefix) or _as_order_id(event.transaction_id, prefix)


# ---- indexer payload ----------------------------------------------------------------
class RawContract(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rawValue: Optional[str] = None
    address: Optional[str] = None
    decimals: Optional[Union[int, str]] = None


class ActivityLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    removed: bool = False


class Activity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    blockNum: Optional[str] = None
    hash: str
    fromAddress: str
    toAddress: str
    value: Optional[float] = None
    asset: Optional[str] = None
    category: str
    rawContract: Optional[RawContract] = None
    log: Optional[ActivityLog] = None


class IndexerEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    network: str
    activity: List[Activity] = []


class IndexerWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    webhookId: Optional[str] = None
    id: Optional[str] = None
    createdAt: Optional[str] = None
    type: Optional[str] = None
    event: IndexerEvent


def _int_any(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    if isinstance(v, int):
        return v
    s = str(v)
    return int(s, 16) if s.startswith("0x") else int(s)


def _block_num(a: Activity) -> Optional[int]:
    try:
        return _int_any(a.blockNum)
    except ValueError:
        logger.warning(f"Indexer activity {a.hash} has unparsable blockNum {a.blockNum!r}")
        return None


def _activity_amount(a: Activity, network_id: str, symbol: str) -> Optional[Decimal]:
    rc = a.rawContract
    if rc is not None and rc.rawValue:
        try:
            raw = _int_any(rc.rawValue)
            dec = _int_any(rc.decimals)
            if dec is None:
                dec = decimals_for(network_id, symbol)
            return Decimal(raw).scaleb(-dec)
        except ValueError:
            logger.warning(f"Indexer activity {a.hash} has unparsable rawValue {rc.rawValue!r}")
    if a.value is None:
        return None
    return Decimal(str(a.value))


def decode_indexer_activities(payload: IndexerWebhook) -> List[TransferEvent]:
    """Keep stablecoin token transfers on known networks; drop reorged (removed) logs."""
    net_raw = payload.event.network
    network_id = indexer_network(net_raw) or normalize_network_id(net_raw)
    out: List[TransferEvent] = []
    for a in payload.event.activity:
        if a.category.lower() not in TOKEN_CATEGORIES:
            continue
        if a.log is not None and a.log.removed:
            logger.info(f"Skipping removed log tx={a.hash}")
            continue
        symbol = (a.asset or "").upper()
        if not symbol and a.rawContract and a.rawContract.address:
            symbol = token_symbol(network_id, a.rawContract.address) or ""
        if symbol not in INDEXER_STABLECOINS:
            continue
        amount = _activity_amount(a, network_id, symbol)
        if amount is None:
            continue
        out.append(TransferEvent(
            transaction_hash=a.hash,
            block_number=_block_num(a),
            from_address=a.fromAddress.lower(),
            to_address=a.toAddress.lower(),
            amount=amount,
            asset_symbol=symbol,
            network_id=network_id or "",
        ))
    return out
