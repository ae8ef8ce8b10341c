"""Event delivery for completion calls.

Every router call gets a ``call_id``; its request, retry, response and error
events are delivered in the order they were emitted and kept together as
that call's trail.
"""

from __future__ import annotations

import inspect
import logging
from collections import OrderedDict
from typing import Any, Callable

from docpilot.types import CompletionEvent, EventType

_logger = logging.getLogger(__name__)

Handler = Callable[[CompletionEvent], Any]


class EventBus:
    """Deliver ``CompletionEvent`` objects to subscribers and keep call trails.

    Handlers may be sync or async and run one after another in subscription
    order, so no subscriber sees a retry before the request it belongs to.
    A failing handler is logged and never reaches the completion call.

    Parameters
    ----------
    max_calls:
        Number of most recent calls whose trails are retained.
    """

    def __init__(self, max_calls: int = 50) -> None:
        self._subscriptions: list[tuple[frozenset[EventType] | None, Handler]] = []
        self._trails: OrderedDict[str, list[CompletionEvent]] = OrderedDict()
        self._max_calls = max_calls

    def subscribe(self, handler: Handler, *event_types: EventType) -> Callable[[], None]:
        """Call *handler* for *event_types*, or for every event when none given.

        Returns a function that removes this subscription.
        """
        entry = (frozenset(event_types) or None, handler)
        self._subscriptions.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return unsubscribe

    async def emit(self, event: CompletionEvent) -> None:
        self._record(event)
        for event_types, handler in list(self._subscriptions):
            if event_types is None or event.type in event_types:
                await self._call_handler(handler, event)

    @property
    def calls(self) -> list[str]:
        """Retained call ids, oldest first."""
        return list(self._trails)

    def trail(self, call_id: str | None = None) -> list[CompletionEvent]:
        """Events of *call_id* in emission order; the latest call by default."""
        if call_id is None:
            if not self._trails:
                return []
            call_id = next(reversed(self._trails))
        return list(self._trails.get(call_id, []))

    def clear(self) -> None:
        self._subscriptions.clear()
        self._trails.clear()

    def _record(self, event: CompletionEvent) -> None:
        trail = self._trails.get(event.call_id)
        if trail is None:
            trail = self._trails[event.call_id] = []
            while len(self._trails) > self._max_calls:
                self._trails.popitem(last=False)
        trail.append(event)

    @staticmethod
    async def _call_handler(handler: Handler, event: CompletionEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Event handler %s failed on %s for call %s",
                getattr(handler, "__name__", handler),
                event.type.value,
                event.call_id,
            )
