# backend/core/debounce.py
# 功能: 防抖 + 丢弃过期结果（搜索类辅助查询使用）
# 主要类: Debouncer, DebounceOutcome

"""
防抖

调用在静默期（默认 SEARCH_DEBOUNCE_MS）之后才执行；
如果执行前或执行中有更新的调用到来，本次结果被标记为 superseded 并丢弃。
不做真正的取消，只比较调用时取得的代次号。
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core.config import settings


@dataclass
class DebounceOutcome:
    value: Any = None
    superseded: bool = False


class Debouncer:

    def __init__(self, delay_ms: Optional[int] = None):
        if delay_ms is None:
            delay_ms = settings.search_debounce_ms
        self.delay = max(delay_ms, 0) / 1000
        self._generation = 0

    def cancel(self) -> None:
        """让所有进行中的调用失效"""
        self._generation += 1

    async def run(self, func: Callable, *args, **kwargs) -> DebounceOutcome:
        self._generation += 1
        token = self._generation

        await asyncio.sleep(self.delay)
        if token != self._generation:
            return DebounceOutcome(superseded=True)

        value = func(*args, **kwargs)
        if inspect.isawaitable(value):
            value = await value
        if token != self._generation:
            return DebounceOutcome(superseded=True)
        return DebounceOutcome(value=value)
