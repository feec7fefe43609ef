import asyncio
import logging
import uuid
from collections import OrderedDict, deque
from datetime import datetime
from typing import Any

from app.config import (
    EVENT_REPLAY_BUFFER,
    GCP_PROJECT_ID,
    GCP_PUBSUB_SUBSCRIPTION_PREFIX,
    GCP_PUBSUB_TOPIC,
)
from app.models.events import ALL_ACTIVE_TOPIC, DispatchEvent

logger = logging.getLogger(__name__)

try:  # Optional dependency for GCP Pub/Sub
    from google.cloud import pubsub_v1  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    pubsub_v1 = None

# Requests whose recent events are kept for replay
MAX_REPLAY_REQUESTS = 1000


def parse_topic(topic: str) -> tuple[str, str | None]:
    """Split a topic into (kind, key). Raises ValueError for unknown topics."""
    if topic == ALL_ACTIVE_TOPIC:
        return ALL_ACTIVE_TOPIC, None
    kind, _, key = topic.partition(":")
    if kind in ("request", "mine") and key:
        return kind, key
    raise ValueError(f"Unknown topic: {topic!r}")


class Subscription:
    """One subscriber's inbox.

    State events are queued in publish order and never dropped. Location
    events are coalesced per (request, actor): while one is waiting to be read,
    a sample with a later timestamp replaces it in place, so a slow reader
    skips intermediate samples but always gets the latest. A sample older than
    one already offered for the same actor is dropped, whatever order the
    publishes arrived in.
    """

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self.id = uuid.uuid4().hex
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending_locations: dict[tuple[str, str], DispatchEvent] = {}
        self._last_location_at: dict[tuple[str, str], datetime] = {}

    def offer(self, event: DispatchEvent) -> None:
        if event.is_location:
            self._offer_location(event)
            return
        self._queue.put_nowait(event)

    def _offer_location(self, event: DispatchEvent) -> None:
        key = (event.request_id, event.actor_ref or "")
        sampled_at = event.timestamp or event.occurred_at
        last = self._last_location_at.get(key)
        if last is not None and sampled_at < last:
            return
        self._last_location_at[key] = sampled_at

        already_queued = key in self._pending_locations
        self._pending_locations[key] = event
        if not already_queued:
            self._queue.put_nowait(key)

    def _resolve(self, item: Any) -> DispatchEvent:
        if isinstance(item, tuple):
            return self._pending_locations.pop(item)
        return item

    async def get(self) -> DispatchEvent:
        return self._resolve(await self._queue.get())

    def get_nowait(self) -> DispatchEvent:
        return self._resolve(self._queue.get_nowait())

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class DispatchEventBus:
    """In-memory pub/sub fanning dispatch events out to topic subscribers.

    Topics: ``all-active``, ``request:<id>``, ``mine:<actorRef>``.
    """

    def __init__(self, replay_buffer: int = EVENT_REPLAY_BUFFER) -> None:
        self._subscribers: dict[str, set[Subscription]] = {}
        self._replay_buffer = replay_buffer
        self._recent: OrderedDict[str, deque[DispatchEvent]] = OrderedDict()

    def subscribe(self, topic: str, after: int | None = None) -> Subscription:
        """Subscribe to a topic.

        With ``after`` on a ``request:<id>`` topic, buffered events with a
        higher sequence are delivered first.
        """
        kind, key = parse_topic(topic)
        subscription = Subscription(topic)
        if after is not None and kind == "request":
            for event in self.replay(key, after):
                subscription.offer(event)
        self._subscribers.setdefault(topic, set()).add(subscription)
        logger.debug("Subscriber %s joined %s", subscription.id, topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.topic]

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def replay(self, request_id: str, after: int = 0) -> list[DispatchEvent]:
        """Buffered events for a request with sequence greater than ``after``."""
        return [e for e in self._recent.get(request_id, ()) if e.sequence > after]

    def _remember(self, event: DispatchEvent) -> None:
        recent = self._recent.get(event.request_id)
        if recent is None:
            recent = deque(maxlen=self._replay_buffer)
            self._recent[event.request_id] = recent
            while len(self._recent) > MAX_REPLAY_REQUESTS:
                self._recent.popitem(last=False)
        else:
            self._recent.move_to_end(event.request_id)
        recent.append(event)

    def _deliver(self, event: DispatchEvent) -> None:
        for topic in event.topics():
            for subscription in self._subscribers.get(topic, set()):
                subscription.offer(event)

    async def publish(self, event: DispatchEvent) -> None:
        """Publish an event to every topic it belongs to."""
        self._remember(event)
        self._deliver(event)

    def reset(self) -> None:
        self._subscribers.clear()
        self._recent.clear()


class PubSubEventBus(DispatchEventBus):
    """Pub/Sub-backed event bus for multi-instance deployments.

    Messages are published with the request id as ordering key and read
    through ordered subscriptions, so events for one request arrive in commit
    order. Pub/Sub delivers at least once; a state event whose sequence is not
    newer than the last one delivered for its request is dropped.
    """

    def __init__(self, project_id: str, topic: str, replay_buffer: int = EVENT_REPLAY_BUFFER) -> None:
        super().__init__(replay_buffer)
        self._project_id = project_id
        self._publisher = pubsub_v1.PublisherClient(  # type: ignore[call-arg]
            publisher_options=pubsub_v1.types.PublisherOptions(enable_message_ordering=True)
        )
        self._subscriber = pubsub_v1.SubscriberClient()  # type: ignore[call-arg]
        if topic.startswith("projects/"):
            self._topic_path = topic
        else:
            self._topic_path = self._publisher.topic_path(project_id, topic)
        # subscription id -> (topic, subscription path, streaming pull future)
        self._subscriptions: dict[str, tuple[str, str, Any]] = {}
        # subscription id -> request id -> last delivered state sequence
        self._delivered: dict[str, dict[str, int]] = {}

    @staticmethod
    def _filter_for(topic: str) -> str | None:
        kind, key = parse_topic(topic)
        if kind == "request":
            return f'attributes.request_id = "{key}"'
        if kind == "mine":
            return f'attributes.patient_ref = "{key}" OR attributes.paramedic_ref = "{key}"'
        return None

    def _create_subscription(self, topic: str) -> str:
        subscription_id = f"{GCP_PUBSUB_SUBSCRIPTION_PREFIX}-{uuid.uuid4().hex}"
        sub_path = self._subscriber.subscription_path(self._project_id, subscription_id)
        request = {
            "name": sub_path,
            "topic": self._topic_path,
            "enable_message_ordering": True,
        }
        filter_expr = self._filter_for(topic)
        if filter_expr:
            request["filter"] = filter_expr
        try:
            self._subscriber.create_subscription(request=request)
        except Exception as exc:
            if not filter_expr:
                raise
            logger.warning("Failed to create filtered subscription: %s", exc)
            unfiltered = {k: v for k, v in request.items() if k != "filter"}
            self._subscriber.create_subscription(request=unfiltered)
        return sub_path

    def _offer_in_order(self, subscription: Subscription, event: DispatchEvent) -> None:
        delivered = self._delivered.setdefault(subscription.id, {})
        if not event.is_location:
            if event.sequence <= delivered.get(event.request_id, 0):
                logger.debug(
                    "Dropping redelivered %s seq %s on %s", event.type.value, event.sequence, event.request_id
                )
                return
            delivered[event.request_id] = event.sequence
        subscription.offer(event)

    def _start_listener(self, subscription: Subscription, sub_path: str) -> Any:
        loop = asyncio.get_running_loop()

        def _callback(message) -> None:
            try:
                event = DispatchEvent.model_validate_json(message.data)
            except Exception:
                logger.warning("Dropping malformed Pub/Sub event on %s", sub_path)
                message.ack()
                return

            # Subscriptions created without a server-side filter see everything
            if subscription.topic in event.topics():
                loop.call_soon_threadsafe(self._offer_in_order, subscription, event)
            message.ack()

        return self._subscriber.subscribe(sub_path, callback=_callback)

    def subscribe(self, topic: str, after: int | None = None) -> Subscription:
        kind, key = parse_topic(topic)
        subscription = Subscription(topic)
        if after is not None and kind == "request":
            for event in self.replay(key, after):
                self._offer_in_order(subscription, event)
        sub_path = self._create_subscription(topic)
        future = self._start_listener(subscription, sub_path)
        self._subscriptions[subscription.id] = (topic, sub_path, future)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._delivered.pop(subscription.id, None)
        sub = self._subscriptions.pop(subscription.id, None)
        if not sub:
            return
        _, sub_path, future = sub
        try:
            future.cancel()
        except Exception:
            logger.debug("Failed to cancel subscription future")
        try:
            self._subscriber.delete_subscription(subscription=sub_path)
        except Exception as exc:
            logger.warning("Failed to delete subscription %s: %s", sub_path, exc)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return sum(1 for sub_topic, _, _ in self._subscriptions.values() if sub_topic == topic)
        return len(self._subscriptions)

    async def publish(self, event: DispatchEvent) -> None:
        self._remember(event)
        payload = event.model_dump_json().encode("utf-8")
        try:
            self._publisher.publish(
                self._topic_path,
                payload,
                ordering_key=event.request_id,
                request_id=event.request_id,
                patient_ref=event.request.patient_ref,
                paramedic_ref=event.request.paramedic_ref or "",
                type=event.type.value,
            )
        except Exception as exc:
            logger.error("Failed to publish Pub/Sub event: %s", exc)
            # A failed ordered publish pauses its key until resumed
            try:
                self._publisher.resume_publish(self._topic_path, event.request_id)
            except Exception:
                logger.debug("Failed to resume publishing for %s", event.request_id)


if GCP_PROJECT_ID and GCP_PUBSUB_TOPIC and pubsub_v1 is not None:
    logger.info("Using GCP Pub/Sub event bus for dispatch events")
    event_bus: DispatchEventBus = PubSubEventBus(GCP_PROJECT_ID, GCP_PUBSUB_TOPIC)
else:
    if GCP_PROJECT_ID or GCP_PUBSUB_TOPIC:
        logger.warning("Pub/Sub config set but google-cloud-pubsub not installed; falling back to in-memory bus")
    event_bus = DispatchEventBus()
