"""Room-based fan-out of competition events to connected clients.

Publishers are request handlers running on worker threads; subscribers are
WebSocket tasks on the event loop. Each message is handed to the subscriber's
own loop with ``call_soon_threadsafe`` while the broadcaster lock is held, so
every subscriber sees one room's events in publish order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from threading import Lock
from typing import Any, Iterable
from uuid import uuid4

from pydantic import BaseModel

logger = logging.getLogger(__name__)

COMPETITION_JOINED = "competitionJoined"
PARTICIPANT_JOINED = "participantJoined"
COMPETITION_UPDATED = "competitionUpdated"
COMPETITION_STARTED = "competitionStarted"
TEAM_MESSAGE = "teamMessage"
LEADERBOARD_UPDATED = "leaderboardUpdated"
COMPETITION_COMPLETED = "competitionCompleted"
CURRENT_QUESTION = "currentQuestion"
ANSWER_RESULT = "answerResult"

DEFAULT_QUEUE_SIZE = 1000


def competition_room(competition_id: str) -> str:
    return f"competition:{competition_id}"


def team_room(team_id: str) -> str:
    return f"team:{team_id}"


def to_payload(value: Any) -> Any:
    """JSON-ready form of a view model, list of models or plain value."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_payload(item) for item in value]
    return value


def make_message(event: str, room: str, payload: Any) -> dict[str, Any]:
    return {"event": event, "room": room, "payload": to_payload(payload)}


@dataclass(slots=True, eq=False)
class Subscription:
    """One client's inbox, bound to the event loop that drains it."""

    rooms: set[str]
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    id: str = field(default_factory=lambda: uuid4().hex)


class RealtimeBroadcaster:
    """Thread-safe publish/subscribe hub keyed by room name."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: set[Subscription] = set()
        self._lock = Lock()

    def subscribe(self, rooms: Iterable[str]) -> Subscription:
        """Register an inbox for ``rooms``; call from the coroutine that will read it."""
        subscription = Subscription(
            rooms=set(rooms),
            queue=asyncio.Queue(maxsize=self._queue_size),
            loop=asyncio.get_running_loop(),
        )
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def set_rooms(self, subscription: Subscription, rooms: Iterable[str]) -> None:
        """Replace the rooms a subscription listens to, e.g. after a team switch."""
        with self._lock:
            subscription.rooms = set(rooms)

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)

    def subscriber_count(self, room: str) -> int:
        with self._lock:
            return sum(1 for s in self._subscriptions if room in s.rooms)

    def publish(self, room: str, event: str, payload: Any = None) -> int:
        """Queue an event for every subscriber of ``room``; returns how many were reached."""
        message = make_message(event, room, payload)
        delivered = 0
        with self._lock:
            for subscription in list(self._subscriptions):
                if room not in subscription.rooms:
                    continue
                try:
                    subscription.loop.call_soon_threadsafe(self._offer, subscription, message)
                except RuntimeError:
                    # Loop already closed; the client is gone.
                    self._subscriptions.discard(subscription)
                    continue
                delivered += 1
        logger.debug("Published %s to %s (%d subscriber(s))", event, room, delivered)
        return delivered

    def _offer(self, subscription: Subscription, message: dict[str, Any]) -> None:
        try:
            subscription.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Dropping slow realtime subscriber %s", subscription.id)
            self.unsubscribe(subscription)
