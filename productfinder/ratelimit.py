"""トークンバケットによるアドミッション制御モジュール.

Keepa API は1分あたりのトークン数で呼び出しを制限する。
全リモート呼び出しは AdmissionController.admit() を通過してから行う:
  1. TokenBucket      : 共有クォータ（細粒度）
  2. FixedDelayPolicy : 呼び出し開始間隔の下限（粗粒度）
カテゴリ単位の固定待機は AdmissionController.cooldown() で行う。
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
import time
from collections import deque
from typing import Awaitable, Callable

from productfinder.models import AdmissionRequest, TokenBucketState

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class TokenBucket:
    """リフィル式のトークンバケット + FIFO 待ち行列.

    クォータ状態は _drain() ループの中でのみ変更するため、ロックは不要。
    先頭のリクエストが満たせない間は後続を先に許可しない。
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        safety_margin: float = 1.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1: {capacity}")
        self.capacity = capacity
        self.window_seconds = window_seconds
        self.safety_margin = safety_margin
        self._clock = clock
        self._sleep = sleep
        self._available = capacity
        self._window_start = clock()
        self._pending: deque[AdmissionRequest] = deque()
        self._sequence = itertools.count()
        self._drain_task: asyncio.Task | None = None

    @property
    def state(self) -> TokenBucketState:
        return TokenBucketState(
            capacity=self.capacity,
            available=self._available,
            window_start=self._window_start,
        )

    @property
    def pending(self) -> int:
        """待機中のリクエスト数."""
        return len(self._pending)

    async def acquire(self, tokens_needed: int = 1) -> int:
        """トークンを確保するまで待機する.

        Returns:
            確保後の残りトークン数。

        Raises:
            ValueError: tokens_needed が 1..capacity の範囲外。
            Exception: 待機処理そのものが失敗した場合はその例外。
        """
        if not 1 <= tokens_needed <= self.capacity:
            raise ValueError(
                f"tokens_needed must be between 1 and {self.capacity}: {tokens_needed}"
            )

        loop = asyncio.get_running_loop()
        request = AdmissionRequest(
            sequence=next(self._sequence),
            tokens_needed=tokens_needed,
            future=loop.create_future(),
        )
        self._pending.append(request)

        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())

        return await request.future

    async def admit(self, cost: int = 1) -> None:
        """AdmissionController 用のポリシーインターフェース."""
        await self.acquire(cost)

    async def _drain(self) -> None:
        """待ち行列を先頭から順に処理する."""
        while self._pending:
            request = self._pending[0]

            # 呼び出し側でキャンセル済み
            if request.future.done():
                self._pending.popleft()
                continue

            now = self._clock()
            elapsed = now - self._window_start
            if elapsed >= self.window_seconds:
                self._available = self.capacity
                self._window_start = now
                elapsed = 0.0

            if self._available >= request.tokens_needed:
                self._available -= request.tokens_needed
                self._pending.popleft()
                request.future.set_result(self._available)
                continue

            wait_time = self.window_seconds - elapsed + self.safety_margin
            logger.info(
                "トークン補充待ち: %d 秒 (残り %d トークン, 待機 %d 件)",
                math.ceil(wait_time), self._available, len(self._pending),
            )
            try:
                await self._sleep(wait_time)
            except Exception as e:
                logger.error("トークン待機に失敗: request=#%d, error=%s", request.sequence, e)
                self._pending.popleft()
                if not request.future.done():
                    request.future.set_exception(e)


class FixedDelayPolicy:
    """呼び出し開始の最小間隔を保証するポリシー.

    次の開始時刻を先に予約してから待機するので、同時に呼ばれても間隔は詰まらない。
    """

    def __init__(
        self,
        interval: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._next_start: float | None = None

    async def admit(self, cost: int = 1) -> None:
        if self.interval <= 0:
            return

        now = self._clock()
        start = now if self._next_start is None else max(now, self._next_start)
        self._next_start = start + self.interval

        wait_time = start - now
        if wait_time > 0:
            await self._sleep(wait_time)


class AdmissionController:
    """複数のアドミッションポリシーを順に評価する.

    Args:
        policies: admit(cost) を持つポリシーのリスト。先頭から順に評価する。
        cooldown_seconds: cooldown() で待機する秒数（カテゴリ単位の固定待機）。
    """

    def __init__(
        self,
        policies: list[TokenBucket | FixedDelayPolicy],
        cooldown_seconds: float = 0.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self.policies = list(policies)
        self.cooldown_seconds = cooldown_seconds
        self._sleep = sleep

    async def admit(self, cost: int = 1) -> None:
        """全ポリシーを満たすまで待機する."""
        for policy in self.policies:
            await policy.admit(cost)

    async def cooldown(self) -> None:
        """固定の待機を入れる."""
        if self.cooldown_seconds > 0:
            await self._sleep(self.cooldown_seconds)
