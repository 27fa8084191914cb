"""
Routing decision events

One structured event per routing decision, for external metrics and
monitoring collaborators. Client ids are hashed before they leave the router.
"""
from typing import Any, Callable, Dict, List
from dataclasses import dataclass, field
from datetime import datetime
import json

from logger import get_decision_logger, get_logger
from metrics import routing_decisions
from security import hash_client_id

logger = get_logger(__name__)
decision_log = get_decision_logger()


@dataclass(frozen=True)
class DecisionEvent:
    """Observable record of one routing decision"""
    client_hash: str
    chosen_version: str
    reason: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_hash": self.client_hash,
            "chosen_version": self.chosen_version,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


EventSubscriber = Callable[[DecisionEvent], None]


class DecisionEventPublisher:
    """
    Fans decision events out to subscribers

    Every event is counted in ``canary_routing_decisions_total`` and written
    as a JSON line to the decision log. A failing subscriber is logged and
    skipped; it never affects the request being routed.
    """

    def __init__(self):
        self._subscribers: List[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber):
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: EventSubscriber):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, client_id: str, chosen_version: str, reason: str) -> DecisionEvent:
        event = DecisionEvent(
            client_hash=hash_client_id(client_id),
            chosen_version=chosen_version,
            reason=reason,
        )

        routing_decisions.labels(chosen_version, reason).inc()
        decision_log.info(json.dumps({"event": "routing_decision", **event.to_dict()}))

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Decision event subscriber failed: {e}")

        return event
