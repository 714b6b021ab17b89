# app/services/side_effects.py
# 狀態轉換 commit 之後的後續動作 (通知、寄信、推播、撥款…)

import logging
from typing import Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)

SideEffect = Callable[[], Awaitable[object]]


class SideEffectQueue:
    """
    依序執行具名的後續任務，每個任務獨立：
    失敗只記錄並回報在 failed 之中，不影響後面的任務，也不往外拋。
    """

    def __init__(self, label: str):
        self.label = label
        self.tasks: List[Tuple[str, SideEffect]] = []
        self.completed: List[str] = []
        self.failed: List[str] = []

    def add(self, name: str, task: SideEffect) -> None:
        self.tasks.append((name, task))

    async def run(self) -> "SideEffectQueue":
        for name, task in self.tasks:
            try:
                await task()
                self.completed.append(name)
            except Exception as e:
                self.failed.append(name)
                logger.error(f"[{self.label}] 後續任務 '{name}' 失敗: {e}", exc_info=True)
        self.tasks = []
        if self.failed:
            logger.warning(f"[{self.label}] 失敗的後續任務: {self.failed}")
        return self
