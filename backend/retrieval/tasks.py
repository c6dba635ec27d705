"""
相关文章增量刷新任务队列 (asyncio + tenacity)

新文章入库后的增量刷新不再 "发出去就不管"，而是进入任务队列由 worker 消费:
- 失败按指数退避重试 (MAX_RETRIES / RETRY_DELAY)，重试策略交给 tenacity
- 重试耗尽的任务进入 failed 列表 (死信)，可后续人工处理或重新入队
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import RefreshError
from .refresh import RelatedRefresher

logger = logging.getLogger("retrieval.tasks")

MAX_RETRIES = 3
RETRY_DELAY = 5  # 秒，第 n 次重试等待 RETRY_DELAY * 2^(n-1)


@dataclass
class RefreshTask:
    article_id: int
    user_id: int
    attempts: int = 0
    error: Optional[str] = None


def _log_retry(task: RefreshTask):
    def _before_sleep(state: RetryCallState) -> None:
        err = state.outcome.exception() if state.outcome else None
        wait = state.next_action.sleep if state.next_action else 0
        logger.warning(
            f"[Related] 增量刷新任务失败，{wait:.1f}s 后重试: article={task.article_id}, "
            f"attempt={state.attempt_number}, err={err}"
        )
    return _before_sleep


class RefreshTaskQueue:

    def __init__(
        self,
        refresher: RelatedRefresher,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ):
        self._refresher = refresher
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue[RefreshTask | None] | None = None
        self._worker: asyncio.Task | None = None
        self.failed: list[RefreshTask] = []
        self.completed = 0

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="retrieval-refresh-tasks")

    def enqueue(self, article_id: int, user_id: int) -> RefreshTask:
        """新文章增量刷新事件入队"""
        self.start()
        assert self._queue is not None
        task = RefreshTask(article_id=article_id, user_id=user_id)
        self._queue.put_nowait(task)
        return task

    async def join(self) -> None:
        """等待队列中的任务 (含重试) 处理完毕"""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._worker is None or self._queue is None:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            task = await self._queue.get()
            try:
                if task is None:
                    return
                await self._process(task)
            finally:
                self._queue.task_done()

    def _retrying(self, task: RefreshTask) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay),
            retry=retry_if_exception_type(RefreshError),
            before_sleep=_log_retry(task),
            reraise=True,
        )

    async def _process(self, task: RefreshTask) -> None:
        try:
            async for attempt in self._retrying(task):
                with attempt:
                    task.attempts = attempt.retry_state.attempt_number
                    await self._refresher.incremental_refresh(task.article_id, task.user_id, raise_errors=True)
        except Exception as e:
            task.error = str(e)
            self.failed.append(task)
            logger.error(
                f"[Related] 增量刷新任务重试耗尽: article={task.article_id}, "
                f"user={task.user_id}, attempts={task.attempts}, err={e}"
            )
            return
        task.error = None
        self.completed += 1
