"""
相关文章定时刷新调度器

asyncio 定时循环：每隔 interval_seconds 对所有拥有订阅源的用户执行一次过期缓存刷新。
单个用户失败不影响其他用户；支持手动触发 (refresh_now) 与运行时修改配置。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from config import SchedulerConfig

from .models import RefreshResult, RunStats, SchedulerStatus
from .refresh import RelatedRefresher
from .related_cache import RelatedCache, stale_before

logger = logging.getLogger("retrieval.scheduler")

UserLister = Callable[[], Awaitable[list[int]]]


def _summarize(results: list[RefreshResult]) -> RunStats:
    success = sum(1 for r in results if r.success)
    return RunStats(total=len(results), success=success, failed=len(results) - success)


class RelatedScheduler:

    def __init__(
        self,
        refresher: RelatedRefresher,
        cache: RelatedCache,
        list_user_ids: UserLister,
        config: Optional[SchedulerConfig] = None,
    ):
        self._refresher = refresher
        self._cache = cache
        self._list_user_ids = list_user_ids
        self.config = config or SchedulerConfig()
        self._task: asyncio.Task | None = None
        self._run_lock = asyncio.Lock()
        self.last_run_time: datetime | None = None
        self.next_run_time: datetime | None = None
        self.last_run_stats: RunStats | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("[Related] 定时刷新已在运行")
            return
        if not self.config.enabled:
            logger.info("[Related] 定时刷新已在配置中关闭")
            return
        self._task = asyncio.create_task(self._loop(), name="retrieval-related-scheduler")
        logger.info(
            f"[Related] 定时刷新已启动: interval={self.config.interval_seconds}s, "
            f"batch_size={self.config.batch_size}, stale_days={self.config.stale_days}"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.next_run_time = None
        logger.info("[Related] 定时刷新已停止")

    async def update_config(self, **changes) -> None:
        was_running = self.is_running
        if was_running:
            await self.stop()
        self.config = self.config.model_copy(update=changes)
        if was_running and self.config.enabled:
            self.start()

    async def _loop(self) -> None:
        while True:
            self.next_run_time = datetime.now(timezone.utc) + timedelta(seconds=self.config.interval_seconds)
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[Related] 定时刷新执行异常: {e}")

    async def run_once(self) -> RunStats:
        """对所有用户执行一次过期缓存刷新"""
        async with self._run_lock:
            user_ids = await self._list_user_ids()
            before = stale_before(stale_days=self.config.stale_days)
            results: list[RefreshResult] = []
            for user_id in user_ids:
                try:
                    results.extend(await self._refresher.batch_refresh(
                        user_id,
                        limit=self.config.batch_size,
                        stale_before=before,
                    ))
                except Exception as e:
                    logger.error(f"[Related] 用户 {user_id} 定时刷新失败: {e}")
            stats = _summarize(results)
            self.last_run_time = datetime.now(timezone.utc)
            self.last_run_stats = stats
            logger.info(
                f"[Related] 定时刷新完成: users={len(user_ids)}, total={stats.total}, "
                f"success={stats.success}, failed={stats.failed}"
            )
            return stats

    async def refresh_now(self, user_id: Optional[int] = None) -> RunStats:
        """手动触发；指定 user_id 时只刷新该用户"""
        if user_id is None:
            return await self.run_once()
        async with self._run_lock:
            results = await self._refresher.batch_refresh(
                user_id,
                limit=self.config.batch_size,
                stale_before=stale_before(stale_days=self.config.stale_days),
            )
            stats = _summarize(results)
            self.last_run_time = datetime.now(timezone.utc)
            self.last_run_stats = stats
            return stats

    async def get_status(self, user_id: Optional[int] = None) -> SchedulerStatus:
        status = SchedulerStatus(
            is_running=self.is_running,
            enabled=self.config.enabled,
            interval_seconds=self.config.interval_seconds,
            last_run_time=self.last_run_time,
            next_run_time=self.next_run_time,
            last_run_stats=self.last_run_stats,
        )
        if user_id is not None:
            try:
                status.stats = await self._cache.stats(user_id)
            except Exception as e:
                logger.warning(f"[Related] 读取刷新统计失败: user={user_id}, err={e}")
        return status
