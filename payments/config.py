# payments/config.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Generic, Mapping, Optional, TypeVar

from payments.errors import ConfigurationError
from payments.networks import NETWORKS

T = TypeVar("T")


@dataclass(frozen=True)
class PaymentSettings:
    """Payments runtime configuration, built once at process start."""
    merchant_address: str
    merchant_name: str = "Merchant"

    ttl_minutes: int = 15
    max_amount: Decimal = Decimal("10000")
    default_network: str = "base"
    default_stablecoin: str = "USDC"
    currency: str = "USD"

    strict_tolerance: Decimal = Decimal("0.01")   # provider transfer objects
    loose_tolerance: Decimal = Decimal("0.05")    # raw on-chain amounts

    lookback_blocks: int = 100
    scan_timeout_s: float = 5.0
    rpc_urls: Dict[str, str] = field(default_factory=dict)

    provider_api_base: str = "https://integration-api.meshconnect.com"
    provider_client_id: str = ""
    provider_client_secret: str = ""
    provider_webhook_secret: str = ""
    provider_signature_header: str = "X-Mesh-Signature-256"
    provider_user_prefix: str = "user_"

    indexer_signing_key: str = ""
    indexer_signature_header: str = "X-Alchemy-Signature"

    allow_unsigned_webhooks: bool = False
    max_commit_attempts: int = 3

    def rpc_url(self, network_id: str) -> str:
        url = self.rpc_urls.get(network_id)
        if url:
            return url
        info = NETWORKS.get(network_id)
        if info is None:
            raise ConfigurationError("no RPC endpoint for network", network=network_id)
        return info.default_rpc


def _dec(v: Any, key: str) -> Decimal:
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(f"invalid decimal for {key}", value=v) from e


def make_settings_from_cfg(cfg: Mapping[str, Any]) -> PaymentSettings:
    try:
        merchant = cfg.get("merchant", {}) or {}
        orders = cfg.get("orders", {}) or {}
        matching = cfg.get("matching", {}) or {}
        chain = cfg.get("chain", {}) or {}
        provider = cfg.get("provider", {}) or {}
        indexer = cfg.get("indexer", {}) or {}
        webhooks = cfg.get("webhooks", {}) or {}
        reconcile = cfg.get("reconcile", {}) or {}

        rpc_urls = {k: str(v) for k, v in (chain.get("rpc", {}) or {}).items() if v}

        return PaymentSettings(
            merchant_address=str(merchant.get("wallet_address") or "").strip(),
            merchant_name=str(merchant.get("name") or "Merchant"),
            ttl_minutes=int(orders.get("ttl_minutes", 15)),
            max_amount=_dec(orders.get("max_amount", "10000"), "orders.max_amount"),
            default_network=str(orders.get("default_network", "base")),
            default_stablecoin=str(orders.get("default_stablecoin", "USDC")).upper(),
            currency=str(orders.get("currency", "USD")),
            strict_tolerance=_dec(matching.get("strict_tolerance", "0.01"), "matching.strict_tolerance"),
            loose_tolerance=_dec(matching.get("loose_tolerance", "0.05"), "matching.loose_tolerance"),
            lookback_blocks=int(chain.get("lookback_blocks", 100)),
            scan_timeout_s=float(chain.get("scan_timeout_s", 5)),
            rpc_urls=rpc_urls,
            provider_api_base=str(provider.get("api_base") or "https://integration-api.meshconnect.com").rstrip("/"),
            provider_client_id=str(provider.get("client_id") or ""),
            provider_client_secret=str(provider.get("client_secret") or ""),
            provider_webhook_secret=str(provider.get("webhook_secret") or ""),
            provider_signature_header=str(provider.get("signature_header", "X-Mesh-Signature-256")),
            provider_user_prefix=str(provider.get("user_id_prefix", "user_")),
            indexer_signing_key=str(indexer.get("signing_key") or ""),
            indexer_signature_header=str(indexer.get("signature_header", "X-Alchemy-Signature")),
            allow_unsigned_webhooks=bool(webhooks.get("allow_unsigned", False)),
            max_commit_attempts=int(reconcile.get("max_commit_attempts", 3)),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"Invalid cfg: {e}") from e


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str


class CredentialCache(Generic[T]):
    """
    Lazily populated, single-flight value cache.

    Concurrent first callers await one shared load task; a failed load is
    dropped so the next call retries. A cancelled caller does not cancel the
    load for the others.
    """

    def __init__(self, loader: Callable[[], Awaitable[T]]) -> None:
        self._loader = loader
        self._task: Optional[asyncio.Future] = None
        self.loads = 0

    async def get(self) -> T:
        if self._task is None:
            self.loads += 1
            self._task = asyncio.ensure_future(self._loader())
        task = self._task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._task is task:
                self._task = None
            raise


def provider_credentials_loader(settings: PaymentSettings) -> Callable[[], Awaitable[ProviderCredentials]]:
    async def _load() -> ProviderCredentials:
        if not (settings.provider_client_id and settings.provider_client_secret):
            raise ConfigurationError("missing transfer-provider credentials")
        return ProviderCredentials(settings.provider_client_id, settings.provider_client_secret)
    return _load
