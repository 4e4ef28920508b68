from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    CONFIG_CHANGED = "configChanged"
    NETWORK_ONLINE = "networkOnline"
    NODE_SWITCHED = "nodeSwitched"
    EVALUATION_COMPLETED = "evaluationCompleted"
    PERFORMANCE_THRESHOLD_BREACHED = "performanceThresholdBreached"
    REQUEST_DETECTED = "requestDetected"


Listener = Callable[..., Any]


class EventBus:
    """Publish/subscribe over the fixed set of `Topic`s.

    A failing listener is logged and does not stop the others. Listeners that
    return a coroutine are scheduled on the running loop.
    """

    def __init__(self):
        self._listeners: Dict[Topic, List[Listener]] = {topic: [] for topic in Topic}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, topic: Topic, listener: Listener) -> None:
        if not callable(listener):
            return
        self._listeners[Topic(topic)].append(listener)

    def unsubscribe(self, topic: Topic, listener: Listener) -> None:
        listeners = self._listeners[Topic(topic)]
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, topic: Topic) -> int:
        return len(self._listeners[Topic(topic)])

    def publish(self, topic: Topic, *args: Any) -> None:
        for listener in list(self._listeners[Topic(topic)]):
            try:
                result = listener(*args)
            except Exception as e:
                logger.error(f"Listener for {topic.value} failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._spawn(topic, result)

    def _spawn(self, topic: Topic, awaitable: Any) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError as e:
            logger.error(f"Cannot schedule async listener for {topic.value}: {e}")
            return
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finish(topic, t))

    def _finish(self, topic: Topic, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async listener for {topic.value} failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
