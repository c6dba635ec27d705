"""
检索子系统对外入口

流水线 / 接口层只依赖这里：检索、相关文章、索引与删除、缓存刷新，
以及文章处理流水线的向量化 (vector) 与相关文章 (related) 两个阶段。
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from .indexer import IndexerQueue, OnComplete
from .models import (
    IndexResult,
    RefreshResult,
    RefreshStats,
    RelatedArticle,
    SearchMode,
    SearchRequest,
    SearchResponse,
    SearchResult,
    StageStatus,
)
from .refresh import RelatedRefresher
from .related_cache import RelatedCache
from .service import SearchService
from .tasks import RefreshTaskQueue

logger = logging.getLogger("retrieval.facade")

RELATED_LIMIT = 5


def to_related_article(result: SearchResult) -> RelatedArticle:
    meta = result.metadata
    return RelatedArticle(
        id=result.article_id,
        title=meta.title,
        url=meta.url,
        summary=meta.summary,
        published_at=meta.published_at,
        source_name=meta.source_name,
        score=result.score,
    )


class RetrievalFacade:

    def __init__(
        self,
        service: SearchService,
        indexer: IndexerQueue,
        cache: RelatedCache,
        refresher: RelatedRefresher,
        refresh_tasks: RefreshTaskQueue,
        articles: Any,
    ):
        self.service = service
        self.indexer = indexer
        self.cache = cache
        self.refresher = refresher
        self.refresh_tasks = refresh_tasks
        self._articles = articles

    # ------------------------------------------------------------------
    # 检索 / 相关文章
    # ------------------------------------------------------------------

    async def search(self, request: SearchRequest) -> SearchResponse:
        return await self.service.search(request)

    async def get_related_articles(self, article_id: int, user_id: int, limit: int = RELATED_LIMIT) -> list[RelatedArticle]:
        """优先读缓存，未命中时计算并写入缓存"""
        resp = await self.service.search(SearchRequest(
            mode=SearchMode.RELATED,
            user_id=user_id,
            article_id=article_id,
            limit=limit,
            normalize_scores=False,
        ))
        return [to_related_article(r) for r in resp.results]

    async def refresh_related_articles(self, article_id: int, user_id: int, limit: int = RELATED_LIMIT) -> list[RelatedArticle]:
        """强制重算并写入缓存"""
        resp = await self.service.search(SearchRequest(
            mode=SearchMode.RELATED,
            user_id=user_id,
            article_id=article_id,
            limit=limit,
            normalize_scores=False,
            refresh_cache=True,
        ))
        return [to_related_article(r) for r in resp.results]

    # ------------------------------------------------------------------
    # 索引 / 删除
    # ------------------------------------------------------------------

    async def index_article(self, article_id: int, user_id: int, on_complete: Optional[OnComplete] = None) -> IndexResult:
        return await self.indexer.index_article(article_id, user_id, on_complete)

    async def index_articles(self, article_ids: list[int], user_id: int) -> list[IndexResult]:
        return await self.indexer.index_articles(article_ids, user_id)

    async def delete_article(self, article_id: int, user_id: int) -> IndexResult:
        """删除向量记录，并从所有相关文章缓存中移除该文章"""
        result = await self.indexer.delete_article(article_id, user_id)
        removed = await self.cache.remove_article(article_id)
        logger.info(
            f"[Related] 文章已删除: article={article_id}, vector_ok={result.success}, cache_rows={removed}"
        )
        return result

    # ------------------------------------------------------------------
    # 缓存刷新
    # ------------------------------------------------------------------

    async def incremental_refresh_related(self, new_article_id: int, user_id: int) -> list[RefreshResult]:
        return await self.refresher.incremental_refresh(new_article_id, user_id)

    async def batch_refresh_related(
        self,
        user_id: int,
        limit: int = 50,
        stale_before: Optional[datetime] = None,
    ) -> list[RefreshResult]:
        return await self.refresher.batch_refresh(user_id, limit=limit, stale_before=stale_before)

    async def get_articles_needing_refresh(self, user_id: int, limit: int = 50) -> list[int]:
        return await self.cache.articles_needing_refresh(user_id, limit)

    async def get_refresh_stats(self, user_id: int) -> RefreshStats:
        return await self.cache.stats(user_id)

    # ------------------------------------------------------------------
    # 流水线阶段
    # ------------------------------------------------------------------

    async def _mark_stage(self, article_id: int, stage: str, status: StageStatus, error: str | None = None) -> None:
        try:
            await self._articles.update_process_stage(article_id, stage, status.value, error)
        except Exception as e:
            logger.warning(f"[Pipeline] 更新阶段状态失败: article={article_id}, stage={stage}, err={e}")

    async def process_vector_stages(self, article_id: int, user_id: int) -> IndexResult:
        """
        文章分析完成后的两个非致命阶段:

        1. vector: 入队向量化并等待结果
        2. related: 重算该文章自己的相关文章，然后发出增量刷新事件
        """
        await self._mark_stage(article_id, "vector", StageStatus.PROCESSING)

        async def _on_indexed(result: IndexResult) -> None:
            if result.success:
                await self._mark_stage(article_id, "vector", StageStatus.COMPLETED)
            else:
                await self._mark_stage(article_id, "vector", StageStatus.FAILED, result.error)

        result = await self.indexer.index_article(article_id, user_id, _on_indexed)
        if not result.success:
            logger.warning(f"[Pipeline] 向量化失败 (非致命): article={article_id}, err={result.error}")
            return result

        await self._mark_stage(article_id, "related", StageStatus.PROCESSING)
        try:
            await self.service.refresh_related(article_id, user_id, RELATED_LIMIT)
        except Exception as e:
            logger.warning(f"[Pipeline] 相关文章计算失败 (非致命): article={article_id}, err={e}")
            await self._mark_stage(article_id, "related", StageStatus.FAILED, str(e))
        else:
            await self._mark_stage(article_id, "related", StageStatus.COMPLETED)

        self.refresh_tasks.enqueue(article_id, user_id)
        return result
