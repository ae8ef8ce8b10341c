"""Cooperative cancellation tokens.

A ``CancelToken`` is passed explicitly through every async call.  Timeouts are
child tokens cancelled by a loop timer, so a timeout and a caller abort travel
the same path: the awaited operation is raced against the token and cancelled
when the token fires.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, TypeVar

_logger = logging.getLogger(__name__)

T = TypeVar("T")

REASON_CALLER = "caller"
REASON_TIMEOUT = "timeout"


class OperationAborted(Exception):
    """Raised by ``CancelToken.run`` when the token fires first."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"operation aborted ({reason})")
        self.reason = reason


class CancelToken:
    """Idempotent cancellation signal.

    Usage::

        token = CancelToken()
        result = await router.complete("Hi", CompletionOptions(cancel=token))
        # elsewhere
        token.cancel()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[CancelToken] = []
        self._parent: CancelToken | None = None
        self._timer: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = REASON_CALLER) -> None:
        """Fire the token.  Later calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    @classmethod
    def derive(
        cls,
        parent: CancelToken | None = None,
        timeout: float | None = None,
    ) -> CancelToken:
        """Child token cancelled by *parent* or after *timeout* seconds.

        Must be called from inside a running event loop when *timeout* is
        set.  Call ``release()`` once the guarded operation finishes.
        """
        child = cls()
        if parent is not None:
            if parent.cancelled:
                child.cancel(parent.reason or REASON_CALLER)
                return child
            parent._children.append(child)
            child._parent = parent
        if timeout is not None and timeout > 0:
            loop = asyncio.get_running_loop()
            child._timer = loop.call_later(timeout, child.cancel, REASON_TIMEOUT)
        return child

    def release(self) -> None:
        """Stop the timer and detach from the parent token."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass
            self._parent = None

    # ------------------------------------------------------------------
    # Racing
    # ------------------------------------------------------------------

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        Raises ``OperationAborted`` when the token wins the race; the losing
        operation is cancelled and awaited before returning.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationAborted(self._reason or REASON_CALLER)

        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        _logger.debug("Operation aborted by token (%s)", self._reason)
        raise OperationAborted(self._reason or REASON_CALLER)
