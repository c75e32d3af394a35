"""Fan-out topics and the one-shot watch used for every bounded wait.

The issuer's outcome wait and the agent's chat-log watch are both expressed as
``resolve_once`` over a subscribe function: subscribe, resolve on the first
accepted value, always unsubscribe.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Generic, TypeVar

from rollrelay.errors import WatchTimeoutError


T = TypeVar("T")

Listener = Callable[[T], None]
Unsubscribe = Callable[[], None]
SubscribeFn = Callable[[Listener[T]], Unsubscribe]

logger = logging.getLogger(__name__)


class Topic(Generic[T]):
    """Synchronous fan-out of values to the current listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener[T]] = []

    def subscribe(self, listener: Listener[T]) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("topic_listener_failed")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class TopicHub:
    """In-process broadcast channel addressed by topic key (one topic per pairing)."""

    def __init__(self) -> None:
        self._topics: dict[str, Topic[dict[str, Any]]] = defaultdict(Topic)

    def subscribe(self, key: str, listener: Listener[dict[str, Any]]) -> Unsubscribe:
        topic = self._topics[key]
        unsubscribe = topic.subscribe(listener)

        def release() -> None:
            unsubscribe()
            if topic.listener_count == 0 and self._topics.get(key) is topic:
                self._topics.pop(key, None)

        return release

    async def publish(self, key: str, message: dict[str, Any]) -> None:
        topic = self._topics.get(key)
        if topic is not None:
            topic.publish(message)


async def resolve_once(
    subscribe: SubscribeFn[T],
    *,
    timeout_s: float,
    accept: Callable[[T], bool] | None = None,
    trigger: Callable[[], Awaitable[None]] | None = None,
) -> T:
    """Wait for the first accepted value from ``subscribe``.

    ``trigger`` runs after the subscription is in place, so values caused by it
    cannot be missed. A source may hand the listener an exception instead of a
    value; it is raised from the wait. The subscription is released on success,
    timeout, error and cancellation alike.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def listener(value: T) -> None:
        if future.done():
            return
        if isinstance(value, BaseException):
            future.set_exception(value)
            return
        try:
            if accept is not None and not accept(value):
                return
        except Exception as exc:
            future.set_exception(exc)
            return
        future.set_result(value)

    unsubscribe = subscribe(listener)
    try:
        if trigger is not None:
            await trigger()
        return await asyncio.wait_for(future, timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        raise WatchTimeoutError(f"No matching value within {timeout_s:g}s") from exc
    finally:
        unsubscribe()


def polling_source(
    fetch: Callable[[], Awaitable[T | None]],
    interval_s: float,
    *,
    fatal: tuple[type[Exception], ...] = (),
) -> SubscribeFn[T]:
    """Turn a fetch coroutine into a subscribe function.

    Each subscription owns a task that fetches immediately and then every
    ``interval_s``; non-``None`` values go to the listener. A failing fetch is
    logged and retried on the next tick, except for the ``fatal`` error types,
    which are handed to the listener and end the poll.
    """

    def subscribe(listener: Listener[T]) -> Unsubscribe:
        async def poll() -> None:
            while True:
                try:
                    value = await fetch()
                except asyncio.CancelledError:
                    raise
                except fatal as exc:
                    listener(exc)
                    return
                except Exception as exc:
                    logger.warning("poll_fetch_failed", extra={"error": repr(exc)})
                else:
                    if value is not None:
                        listener(value)
                await asyncio.sleep(interval_s)

        task = asyncio.get_running_loop().create_task(poll(), name="polling-source")
        return task.cancel

    return subscribe
