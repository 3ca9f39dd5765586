"""共通フィクスチャ."""

import asyncio

import pytest


class FakeClock:
    """時刻を sleep でだけ進める疑似クロック."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        # 先に他のタスクを走らせてから時刻を進める
        await asyncio.sleep(0)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
