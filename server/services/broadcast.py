import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from icecream import ic

from core.models.ws import BaseEvent
from core.types import LobbyId, MatchId, Topic, UserId

logger = logging.getLogger(__name__)


def match_topic(match_id: MatchId) -> Topic:
    return f"match:{match_id}"


def lobby_topic(lobby_id: LobbyId) -> Topic:
    return f"lobby:{lobby_id}"


def user_topic(user_id: UserId) -> Topic:
    return f"user:{user_id}"


class Subscription:
    """One client session listening on a topic."""

    def __init__(self, broadcaster: "Broadcaster", topic: Topic, maxsize: int) -> None:
        self.broadcaster = broadcaster
        self.topic = topic
        self.queue: asyncio.Queue[BaseEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, event: BaseEvent) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    async def get(self) -> BaseEvent | None:
        """Next event, or None once the subscription is closed."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.broadcaster._detach(self)
        # wake a reader blocked on get()
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> AsyncIterator[BaseEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BaseEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class Broadcaster:
    """Per-topic fan-out of durable state changes to connected sessions."""

    def __init__(self, queue_size: int = 256) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[Topic, set[Subscription]] = {}

    def subscribe(self, topic: Topic) -> Subscription:
        sub = Subscription(self, topic, self.queue_size)
        self._subscribers.setdefault(topic, set()).add(sub)
        logger.debug(f"Subscribed to {topic}: {len(self._subscribers[topic])} total")
        return sub

    @asynccontextmanager
    async def subscription(self, topic: Topic) -> AsyncGenerator[Subscription, None]:
        sub = self.subscribe(topic)
        try:
            yield sub
        finally:
            sub.close()

    def _detach(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.topic]
        logger.debug(f"Unsubscribed from {sub.topic}: {len(subs)} remaining")

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: Topic, event: BaseEvent) -> int:
        """Deliver ``event`` to every subscriber; returns how many received it.

        Call only after the state change behind ``event`` is durable.
        """
        subs = list(self._subscribers.get(topic, ()))
        ic(topic, event.__class__.__name__, len(subs))
        delivered = 0
        dead: list[Subscription] = []
        for sub in subs:
            if sub.offer(event):
                delivered += 1
            else:
                dead.append(sub)
        for sub in dead:
            logger.warning(f"Dropping slow subscriber on {topic}")
            sub.close()
        return delivered

    def close_all(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
