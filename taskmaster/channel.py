from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

from taskmaster.schemas import AgentAction, AgentTransaction

logger = logging.getLogger(__name__)

Message = AgentAction | AgentTransaction
Subscriber = Callable[[Message], None]

HISTORY_LIMIT = 200


class MessageChannel:
    """Outbound typed publish/subscribe channel for agent actions and transactions.

    Transports subscribe here; the engine never knows who is listening. The most
    recent messages of each kind are retained so late subscribers can catch up.
    """

    def __init__(self, *, history_limit: int = HISTORY_LIMIT) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._actions: deque[AgentAction] = deque(maxlen=history_limit)
        self._transactions: deque[AgentTransaction] = deque(maxlen=history_limit)

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(fn)
        return lambda: self.unsubscribe(fn)

    def unsubscribe(self, fn: Subscriber) -> None:
        with self._lock:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

    def publish(self, message: Message) -> None:
        with self._lock:
            if isinstance(message, AgentAction):
                self._actions.appendleft(message)
            else:
                self._transactions.appendleft(message)
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(message)
            except Exception:
                logger.exception("channel subscriber %r failed", fn)

    def recent_actions(self) -> list[AgentAction]:
        with self._lock:
            return list(self._actions)

    def recent_transactions(self) -> list[AgentTransaction]:
        with self._lock:
            return list(self._transactions)
