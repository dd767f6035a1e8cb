# Sync/notifier.py
# Description: Typed publish/subscribe registry for local data change events.
#
# Imports
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from unforgotten_sync.app.core.Utils.Utils import entity_key
from .models import ChangeKind
#
########################################################################################################################
#
# Functions:

ALL_ENTITIES = "*"


@dataclass(frozen=True)
class ChangeEvent:
    entity_type: str
    account_id: Optional[str]
    entity_id: Optional[str]
    kind: ChangeKind


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangeNotifier.subscribe. cancel() is idempotent."""

    def __init__(self, notifier: 'ChangeNotifier', topic: str, callback: ChangeCallback):
        self._notifier = notifier
        self.topic = topic
        self.callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self._notifier._remove(self)
            self.active = False


class ChangeNotifier:
    """
    Registry of change callbacks keyed by entity type.

    Subscribers registered under ALL_ENTITIES ("*") receive every event.
    Callbacks run synchronously on the publisher's thread. A callback that
    raises is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, entity_type, callback: ChangeCallback) -> Subscription:
        topic = entity_key(entity_type)
        subscription = Subscription(self, topic, callback)
        self._subscribers.setdefault(topic, []).append(subscription)
        logger.debug(f"Subscribed {getattr(callback, '__name__', callback)!r} to '{topic}' changes")
        return subscription

    def _remove(self, subscription: Subscription):
        subs = self._subscribers.get(subscription.topic, [])
        if subscription in subs:
            subs.remove(subscription)

    def subscriber_count(self, entity_type=None) -> int:
        if entity_type is None:
            return sum(len(v) for v in self._subscribers.values())
        return len(self._subscribers.get(entity_key(entity_type), []))

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to type-specific then wildcard subscribers. Returns the number delivered."""
        targets = list(self._subscribers.get(ALL_ENTITIES, []))
        if event.entity_type != ALL_ENTITIES:
            targets = list(self._subscribers.get(event.entity_type, [])) + targets
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Change subscriber {getattr(subscription.callback, '__name__', subscription.callback)!r} "
                             f"failed for {event.entity_type}/{event.entity_id} ({event.kind}): {e}")
        return delivered

    def emit(self, entity_type, account_id: Optional[str], entity_id: Optional[str], kind: ChangeKind) -> ChangeEvent:
        event = ChangeEvent(entity_type=entity_key(entity_type), account_id=account_id, entity_id=entity_id,
                            kind=ChangeKind(kind))
        self.publish(event)
        return event

#
# End of Sync/notifier.py
########################################################################################################################
