# payments/app/bootstrap.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from payments.config import CredentialCache, PaymentSettings, make_settings_from_cfg, provider_credentials_loader
from payments.event_bus import EventBus
from payments.services.chain_scanner import ChainScanner
from payments.services.endpoints import make_provider_endpoints
from payments.services.lifecycle_service import OrderLifecycleService
from payments.services.matcher import AmountMatcher
from payments.services.provider_client import TransferProviderClient
from payments.services.reconcile_service import ReconcileService
from payments.stores.record_store import InMemoryRecordStore
from utils.logger import logger as _default_logger
from utils.time import utc_now


@dataclass
class PaymentServices:
    settings: PaymentSettings
    store: InMemoryRecordStore
    bus: EventBus
    lifecycle: OrderLifecycleService
    reconcile: ReconcileService


def build_services(
    cfg: Mapping[str, Any],
    http_client,
    *,
    clock: Callable[[], datetime] = utc_now,
    logger=None,
) -> PaymentServices:
    """Composition root: one settings object shared by reference across all components."""
    log = logger or _default_logger
    settings = make_settings_from_cfg(cfg)

    store = InMemoryRecordStore()
    bus = EventBus()
    lifecycle = OrderLifecycleService(store, settings, clock=clock, bus=bus, logger=log)
    scanner = ChainScanner(http_client, settings, logger=log)
    provider = TransferProviderClient(
        http_client,
        make_provider_endpoints(settings),
        CredentialCache(provider_credentials_loader(settings)),
        logger=log,
    )
    reconcile = ReconcileService(
        lifecycle,
        scanner,
        provider,
        settings,
        matcher=AmountMatcher(settings.strict_tolerance, settings.loose_tolerance),
        bus=bus,
        logger=log,
    )
    if not settings.merchant_address:
        log.warning("merchant.wallet_address is not set; order creation will fail")
    return PaymentServices(settings, store, bus, lifecycle, reconcile)
