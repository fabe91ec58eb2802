# payments/enums.py
from enum import Enum
from typing import Dict

from utils.logger import logger


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SignalSource(Enum):
    POLL_CHAIN = "poll_chain"
    POLL_PROVIDER = "poll_provider"
    PROVIDER_WEBHOOK = "provider_webhook"
    INDEXER_WEBHOOK = "indexer_webhook"
    MERCHANT = "merchant"
    SYSTEM = "system"


class ToleranceBand(Enum):
    STRICT = "strict"   # provider transfer object with an exact fiat field
    LOOSE = "loose"     # raw on-chain token amounts


class ProviderStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    COMPLETED = "completed"
    FAILED = "failed"


_PROVIDER_TO_PAYMENT: Dict[ProviderStatus, PaymentStatus] = {
    ProviderStatus.PENDING: PaymentStatus.PROCESSING,
    ProviderStatus.SUCCEEDED: PaymentStatus.COMPLETED,
    ProviderStatus.COMPLETED: PaymentStatus.COMPLETED,
    ProviderStatus.FAILED: PaymentStatus.FAILED,
}


def map_provider_status(raw: object) -> PaymentStatus:
    """
    Map the provider's status vocabulary onto PaymentStatus.

    Unrecognised strings fall back to PROCESSING, which is non-terminal, so
    a vocabulary change on the provider side can never complete or fail an order.
    """
    text = str(raw or "").strip().lower()
    try:
        return _PROVIDER_TO_PAYMENT[ProviderStatus(text)]
    except ValueError:
        logger.warning(f"Unknown provider status {raw!r}, treating as processing")
        return PaymentStatus.PROCESSING
