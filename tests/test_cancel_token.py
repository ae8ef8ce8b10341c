"""Tests for CancelToken."""

import asyncio

import pytest

from docpilot.llm.cancellation import (
    REASON_CALLER,
    REASON_TIMEOUT,
    CancelToken,
    OperationAborted,
)


class TestCancel:
    def test_idempotent(self):
        token = CancelToken()
        token.cancel()
        token.cancel(REASON_TIMEOUT)
        assert token.cancelled
        assert token.reason == REASON_CALLER

    def test_parent_propagates_to_child(self):
        parent = CancelToken()
        child = CancelToken.derive(parent)
        parent.cancel()
        assert child.cancelled
        assert child.reason == REASON_CALLER

    def test_child_of_cancelled_parent(self):
        parent = CancelToken()
        parent.cancel()
        assert CancelToken.derive(parent).cancelled

    def test_child_cancel_leaves_parent(self):
        parent = CancelToken()
        child = CancelToken.derive(parent)
        child.cancel()
        assert not parent.cancelled


class TestTimeout:
    @pytest.mark.asyncio
    async def test_timer_fires(self):
        token = CancelToken.derive(None, timeout=0.01)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.reason == REASON_TIMEOUT

    @pytest.mark.asyncio
    async def test_release_stops_timer(self):
        parent = CancelToken()
        token = CancelToken.derive(parent, timeout=0.01)
        token.release()
        await asyncio.sleep(0.05)
        assert not token.cancelled
        parent.cancel()
        assert not token.cancelled


class TestRun:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        token = CancelToken()
        assert await token.run(asyncio.sleep(0, result=5)) == 5

    @pytest.mark.asyncio
    async def test_aborts_pending_operation(self):
        token = CancelToken()
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            try:
                await asyncio.sleep(5)
            finally:
                finished.append(True)

        asyncio.get_running_loop().call_later(0.02, token.cancel)
        with pytest.raises(OperationAborted) as exc_info:
            await token.run(slow())
        assert exc_info.value.reason == REASON_CALLER
        assert started.is_set()
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationAborted):
            await token.run(asyncio.sleep(1))

    @pytest.mark.asyncio
    async def test_operation_errors_propagate(self):
        async def broken():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await CancelToken().run(broken())

    @pytest.mark.asyncio
    async def test_outer_cancel_waits_for_operation(self):
        cleaned_up = []

        async def operation():
            try:
                await asyncio.sleep(10)
            finally:
                await asyncio.sleep(0)
                cleaned_up.append(True)

        outer = asyncio.ensure_future(CancelToken().run(operation()))
        await asyncio.sleep(0.01)
        outer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await outer
        assert cleaned_up == [True]
