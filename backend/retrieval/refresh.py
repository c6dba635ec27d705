"""
相关文章缓存刷新

- 增量刷新: 新文章入库后，找出与它最相似的若干旧文章，重算它们的相关列表
- 定时刷新: 找出缓存超过 stale_days 未更新的文章，逐批重算

两条路径都按 concurrency (默认 3) 分批并发，上一批全部结束后才开始下一批；
单条失败只记录在结果里，不中断整批，也不向调用方抛出。
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from config import RefreshSettings

from .errors import RefreshError
from .models import RefreshResult
from .ports import EmbeddingPort, RelatedRefreshPort, VectorStoreProvider
from .related_cache import RelatedCache, stale_before as default_stale_before
from .text_builder import build_vector_text

logger = logging.getLogger("retrieval.refresh")

RefreshHook = Callable[[int], Any]


class RelatedRefresher:
    """
    on_refresh_start / on_refresh_end: 每条刷新开始/结束时以 article_id 调用，用于统计在途数量。
    """

    def __init__(
        self,
        related: RelatedRefreshPort,
        embedder: EmbeddingPort,
        stores: VectorStoreProvider,
        articles: Any,
        cache: RelatedCache,
        settings: Optional[RefreshSettings] = None,
        on_refresh_start: Optional[RefreshHook] = None,
        on_refresh_end: Optional[RefreshHook] = None,
    ):
        self._related = related
        self._embedder = embedder
        self._stores = stores
        self._articles = articles
        self._cache = cache
        self.settings = settings or RefreshSettings()
        self.on_refresh_start = on_refresh_start
        self.on_refresh_end = on_refresh_end

    # ------------------------------------------------------------------
    # 单条 / 分批
    # ------------------------------------------------------------------

    async def _refresh_one(self, article_id: int, user_id: int) -> RefreshResult:
        if self.on_refresh_start:
            self.on_refresh_start(article_id)
        try:
            await self._related.refresh_related(article_id, user_id, self.settings.related_limit)
            return RefreshResult(article_id=article_id, success=True)
        finally:
            if self.on_refresh_end:
                self.on_refresh_end(article_id)

    async def refresh_many(self, article_ids: list[int], user_id: int) -> list[RefreshResult]:
        """按 concurrency 分批并发刷新，批与批之间串行"""
        size = max(1, self.settings.concurrency)
        results: list[RefreshResult] = []
        for i in range(0, len(article_ids), size):
            batch = article_ids[i:i + size]
            outcomes = await asyncio.gather(
                *(self._refresh_one(aid, user_id) for aid in batch),
                return_exceptions=True,
            )
            for aid, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.warning(f"[Related] 刷新失败: article={aid}, user={user_id}, err={outcome}")
                    results.append(RefreshResult(article_id=aid, success=False, error=str(outcome)))
                else:
                    results.append(outcome)
        return results

    # ------------------------------------------------------------------
    # 增量刷新
    # ------------------------------------------------------------------

    async def find_affected(
        self,
        new_article_id: int,
        user_id: int,
        top_n: int,
        min_score: float,
    ) -> list[int]:
        """与新文章最相似的旧文章 id (查询 2 * top_n 个候选，按分数过滤后取前 top_n)"""
        article = await self._articles.get_by_id(new_article_id, user_id)
        if not article:
            return []
        text = build_vector_text(article)
        if not text:
            return []
        embedding = await self._embedder.embed(text, user_id)
        store = await self._stores.for_user(user_id)
        hits = await store.query(embedding, top_n * 2)

        affected: list[int] = []
        for hit in hits:
            if hit.article_id in (0, new_article_id) or hit.article_id in affected:
                continue
            if hit.score < min_score:
                continue
            affected.append(hit.article_id)
        return affected[:top_n]

    async def incremental_refresh(
        self,
        new_article_id: int,
        user_id: int,
        top_n: Optional[int] = None,
        min_score: Optional[float] = None,
        raise_errors: bool = False,
    ) -> list[RefreshResult]:
        top_n = top_n if top_n is not None else self.settings.incremental_top_n
        min_score = min_score if min_score is not None else self.settings.incremental_min_score
        try:
            affected = await self.find_affected(new_article_id, user_id, top_n, min_score)
        except Exception as e:
            logger.warning(f"[Related] 增量刷新候选查找失败: article={new_article_id}, user={user_id}, err={e}")
            if raise_errors:
                raise RefreshError(str(e)) from e
            return []

        if not affected:
            logger.info(f"[Related] 增量刷新: article={new_article_id} 没有需要刷新的相似文章")
            return []

        results = await self.refresh_many(affected, user_id)
        ok = sum(1 for r in results if r.success)
        logger.info(
            f"[Related] 增量刷新完成: article={new_article_id}, user={user_id}, "
            f"success={ok}, failed={len(results) - ok}"
        )
        return results

    # ------------------------------------------------------------------
    # 定时刷新
    # ------------------------------------------------------------------

    async def batch_refresh(
        self,
        user_id: int,
        limit: Optional[int] = None,
        stale_before: Optional[datetime] = None,
    ) -> list[RefreshResult]:
        limit = limit if limit is not None else self.settings.batch_limit
        before = stale_before or default_stale_before(stale_days=self.settings.stale_days)
        try:
            article_ids = await self._cache.articles_needing_refresh(user_id, limit, before)
        except Exception as e:
            logger.error(f"[Related] 查询待刷新文章失败: user={user_id}, err={e}")
            return []

        if not article_ids:
            logger.info(f"[Related] 定时刷新: user={user_id} 没有过期的相关文章缓存")
            return []

        results = await self.refresh_many(article_ids, user_id)
        ok = sum(1 for r in results if r.success)
        logger.info(
            f"[Related] 定时刷新完成: user={user_id}, total={len(results)}, "
            f"success={ok}, failed={len(results) - ok}"
        )
        return results
