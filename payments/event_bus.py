# payments/event_bus.py
from collections import Counter
from typing import Any, Callable, Dict

from utils.logger import logger


class EventBus:
    """
    Lightweight in-process pub/sub for order status and reconciliation audit events.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, list[Callable[[Any], None]]] = {}
        self.counts: Counter = Counter()

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> None:
        """Register a synchronous callback; wrap async handlers externally."""
        self._subs.setdefault(topic, []).append(handler)

    def publish(self, topic: str, payload: Any) -> None:
        """Publish an event to subscribers (fire-and-forget)."""
        self.counts[topic] += 1
        for h in self._subs.get(topic, []):
            try:
                h(payload)
            except Exception as e:
                logger.exception(f"EventBus handler failed topic={topic}: {e}")

    def stats(self) -> Dict[str, int]:
        return dict(self.counts)


# Common topics
TOPIC_ORDER_CREATED = "order.created"
TOPIC_ORDER_STATUS = "order.status"
TOPIC_TRANSITION_REJECTED = "order.transition_rejected"
TOPIC_TRANSFER_UNMATCHED = "transfer.unmatched"
TOPIC_SIGNAL_ERROR = "signal.error"
TOPIC_WEBHOOK_REJECTED = "webhook.rejected"
