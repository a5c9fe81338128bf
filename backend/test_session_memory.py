import asyncio

import pytest

from dialog import DialogState
from session_memory import SessionStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestSessionStore:
    def test_unknown_key_gets_fresh_session(self, store):
        session = store.get("sms:a:b")

        assert session.key == "sms:a:b"
        assert session.current_step_index == 0
        assert session.collected_values == {}
        assert "sms:a:b" in store
        assert len(store) == 1

    def test_get_returns_same_session(self, store):
        first = store.get("k")
        first.state = DialogState.AWAITING_NAME
        store.save("k", first)

        assert store.get("k") is first
        assert store.get("k").state == DialogState.AWAITING_NAME

    def test_idle_session_expires(self, clock):
        store = SessionStore(max_sessions=10, ttl_seconds=60, clock=clock)
        old = store.get("k")
        old.state = DialogState.AWAITING_DATETIME

        clock.now += 61

        assert "k" not in store
        fresh = store.get("k")
        assert fresh is not old
        assert fresh.state == DialogState.NEW

    def test_activity_refreshes_ttl(self, clock):
        store = SessionStore(max_sessions=10, ttl_seconds=60, clock=clock)
        session = store.get("k")
        clock.now += 50
        store.save("k", session)
        clock.now += 50

        assert store.get("k") is session

    def test_least_recently_used_is_evicted(self, clock):
        store = SessionStore(max_sessions=2, ttl_seconds=60, clock=clock)
        store.get("a")
        store.get("b")
        store.get("a")  # b is now the oldest
        store.get("c")

        assert "a" in store
        assert "c" in store
        assert "b" not in store
        assert len(store) == 2

    def test_discard(self, store):
        store.get("k")
        store.discard("k")
        store.discard("missing")
        assert "k" not in store

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            SessionStore(max_sessions=0)


class TestSessionLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self, store):
        order = []

        async def worker(name):
            async with store.lock("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one"), worker("two"))

        assert order == ["one-in", "one-out", "two-in", "two-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self, store):
        entered = asyncio.Event()

        async def holder():
            async with store.lock("a"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other():
            async with store.lock("b"):
                entered.set()

        await asyncio.gather(holder(), other())
        assert entered.is_set()

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self, store):
        with pytest.raises(RuntimeError):
            async with store.lock("k"):
                raise RuntimeError("boom")

        async with store.lock("k"):
            pass
        assert store._locks == {}
