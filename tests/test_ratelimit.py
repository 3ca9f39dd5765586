"""ratelimit モジュールのユニットテスト."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from productfinder.ratelimit import AdmissionController, FixedDelayPolicy, TokenBucket


class TestTokenBucket:
    """TokenBucket のテスト."""

    @pytest.mark.asyncio
    async def test_refill_after_capacity(self, clock):
        """容量 20 に 25 件同時要求 → 20 件は即時、残り 5 件は補充後に許可されること."""
        bucket = TokenBucket(20, 60.0, safety_margin=1.0, clock=clock, sleep=clock.sleep)
        granted = []

        async def worker(i):
            await bucket.acquire(1)
            granted.append((i, clock.now))

        await asyncio.gather(*(worker(i) for i in range(25)))

        assert [i for i, _ in granted] == list(range(25))
        assert all(t == 0.0 for _, t in granted[:20])
        assert all(t >= 60.0 for _, t in granted[20:])
        assert clock.sleeps == [61.0]

    @pytest.mark.asyncio
    async def test_available_stays_in_bounds(self, clock):
        """残りトークンが 0..capacity を外れず、1ウィンドウの許可量が容量以下であること."""
        bucket = TokenBucket(10, 60.0, clock=clock, sleep=clock.sleep)
        grants = []
        snapshots = []

        async def worker(n):
            await bucket.acquire(n)
            grants.append((clock.now, n))
            snapshots.append(bucket.state.available)

        await asyncio.gather(*(worker(n) for n in [3, 5, 2, 4, 1, 6, 2, 3, 7, 1]))

        assert all(0 <= a <= 10 for a in snapshots)
        for start, _ in grants:
            in_window = sum(n for t, n in grants if start <= t < start + 60.0)
            assert in_window <= 10

    @pytest.mark.asyncio
    async def test_fifo_order(self, clock):
        """先に並んだ要求が満たせない間、後続の要求を先に許可しないこと."""
        bucket = TokenBucket(5, 60.0, clock=clock, sleep=clock.sleep)
        await bucket.acquire(3)
        order = []

        async def worker(name, n):
            await bucket.acquire(n)
            order.append((name, clock.now))

        await asyncio.gather(worker("A", 4), worker("B", 1))

        assert [name for name, _ in order] == ["A", "B"]
        assert order[1][1] >= 60.0

    @pytest.mark.asyncio
    async def test_returns_remaining_tokens(self, clock):
        bucket = TokenBucket(5, 60.0, clock=clock, sleep=clock.sleep)

        assert await bucket.acquire(2) == 3
        assert bucket.state.available == 3
        assert bucket.pending == 0

    @pytest.mark.asyncio
    async def test_sleep_failure_fails_head_only(self, clock):
        """待機が失敗したら先頭の要求だけ失敗し、後続は処理が続くこと."""
        calls = 0

        async def flaky_sleep(seconds):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("timer broken")
            await clock.sleep(seconds)

        bucket = TokenBucket(1, 60.0, clock=clock, sleep=flaky_sleep)
        await bucket.acquire(1)

        results = await asyncio.gather(
            bucket.acquire(1), bucket.acquire(1), return_exceptions=True
        )

        assert isinstance(results[0], RuntimeError)
        assert results[1] == 0
        assert bucket.pending == 0

    @pytest.mark.asyncio
    async def test_invalid_token_count(self, clock):
        bucket = TokenBucket(5, 60.0, clock=clock, sleep=clock.sleep)

        with pytest.raises(ValueError):
            await bucket.acquire(0)
        with pytest.raises(ValueError):
            await bucket.acquire(6)

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            TokenBucket(0, 60.0)


class TestFixedDelayPolicy:
    """FixedDelayPolicy のテスト."""

    @pytest.mark.asyncio
    async def test_spacing(self, clock):
        """同時に呼ばれても開始間隔が interval 以上空くこと."""
        policy = FixedDelayPolicy(2.0, clock=clock, sleep=clock.sleep)

        await asyncio.gather(policy.admit(), policy.admit(), policy.admit())

        assert clock.sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_disabled(self, clock):
        policy = FixedDelayPolicy(0, clock=clock, sleep=clock.sleep)

        await policy.admit()
        await policy.admit()

        assert clock.sleeps == []


class TestAdmissionController:
    """AdmissionController のテスト."""

    @pytest.mark.asyncio
    async def test_policies_in_order(self):
        manager = MagicMock()
        first = AsyncMock()
        second = AsyncMock()
        manager.attach_mock(first.admit, "first")
        manager.attach_mock(second.admit, "second")

        controller = AdmissionController([first, second])
        await controller.admit(1)

        assert manager.mock_calls == [call.first(1), call.second(1)]

    @pytest.mark.asyncio
    async def test_cooldown(self):
        sleep = AsyncMock()
        controller = AdmissionController([], cooldown_seconds=3.0, sleep=sleep)

        await controller.cooldown()

        sleep.assert_awaited_once_with(3.0)

    @pytest.mark.asyncio
    async def test_cooldown_disabled(self):
        sleep = AsyncMock()
        controller = AdmissionController([], cooldown_seconds=0, sleep=sleep)

        await controller.cooldown()

        sleep.assert_not_awaited()
