"""In-process, fire-and-forget message channel between surfaces."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from common.schemas import Message, parse_message

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Union[Awaitable[None], None]]


def _tag(type_tag: Union[str, Enum]) -> str:
    return type_tag.value if isinstance(type_tag, Enum) else str(type_tag)


@dataclass(frozen=True)
class Subscription:
    type_tag: str
    handler: Handler = field(compare=False)
    id: int = 0


class MessageRouter:
    """Delivers each sent message to every handler registered for its type.

    Delivery is at-most-once with no acknowledgement and no ordering between
    independent sends. A message nobody listens for is dropped.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Subscription]] = {}
        self._pending: set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    def on_message(self, type_tag: Union[str, Enum], handler: Handler) -> Subscription:
        sub = Subscription(type_tag=_tag(type_tag), handler=handler, id=next(self._ids))
        self._handlers.setdefault(sub.type_tag, []).append(sub)
        return sub

    def off(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.type_tag, [])
        self._handlers[subscription.type_tag] = [s for s in handlers if s.id != subscription.id]

    def listeners(self, type_tag: Union[str, Enum]) -> int:
        return len(self._handlers.get(_tag(type_tag), []))

    def send(self, message: Union[Message, dict[str, Any]]) -> None:
        if isinstance(message, dict):
            message = parse_message(message)
        handlers = list(self._handlers.get(message.type, []))
        if not handlers:
            logger.debug("No listener for %s; message dropped", message.type)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; %s dropped", message.type)
            return
        for sub in handlers:
            task = loop.create_task(self._deliver(sub, message.model_copy(deep=True)))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, sub: Subscription, message: Message) -> None:
        try:
            result = sub.handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Handler for %s failed", sub.type_tag)

    async def drain(self) -> None:
        """Wait until every scheduled delivery, including chained sends, has run."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
