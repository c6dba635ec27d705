"""
检索服务 (SEMANTIC / KEYWORD / HYBRID / RELATED)

- SEMANTIC: 查询向量化 -> 向量库近邻 -> 文章详情 (仅通过过滤的文章) -> 可选 Rerank
- KEYWORD: 词之间 AND、字段之间 OR 的 ILIKE 检索，启发式打分排序
- HYBRID: 两路同时执行 (语义路同样可选 Rerank)，按 article_id 合并做加权融合；语义路失败时可降级为纯关键词
- RELATED: 优先读缓存；未命中或强制刷新时重新计算并持久化

分页: 先算出 offset + limit 条结果，再切片 [offset, offset + limit)。
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import timezone
from typing import Any, Optional

from config import SearchDefaults

from .errors import ArticleNotFound, CacheMiss, EmbeddingError, VectorBackendError
from .keyword import keyword_relevance, split_terms
from .models import ResultMetadata, SearchMode, SearchRequest, SearchResponse, SearchResult
from .ports import EmbeddingPort, RelatedRefreshPort, VectorStoreProvider
from .related_cache import RelatedCache
from .reranker import Reranker
from .text_builder import build_vector_text

logger = logging.getLogger("retrieval.service")

# 这两类异常触发关键词降级；关系库异常直接抛出
FALLBACK_ERRORS = (EmbeddingError, VectorBackendError)

RELATED_HIGH_SCORE = 0.5
RELATED_MAX_STRONG = 5
RELATED_MAX_WEAK = 3


def _metadata(article: dict[str, Any]) -> ResultMetadata:
    return ResultMetadata(
        title=article.get("title") or "",
        url=article.get("url"),
        summary=article.get("summary"),
        published_at=article.get("published_at"),
        source_name=article.get("source_name"),
    )


def _published_ts(result: SearchResult) -> float:
    published_at = result.metadata.published_at
    if published_at is None:
        return 0.0
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    return published_at.timestamp()


# ---------------------------------------------------------------------------
# 融合
# ---------------------------------------------------------------------------

def fuse_scores(
    semantic: list[SearchResult],
    keyword: list[SearchResult],
    semantic_weight: float,
    keyword_weight: float,
    normalize: bool = True,
) -> list[SearchResult]:
    """
    combined = semantic_norm * semantic_weight + keyword_score * keyword_weight

    semantic_norm = semantic / max(semantic) (normalize=True 时，最大值为 0 则记 0)。
    只出现在一路的文章缺失的那一路记 0；按 combined 降序稳定排序。
    """
    merged: dict[int, SearchResult] = {}
    sem_scores: dict[int, float] = {}
    kw_scores: dict[int, float] = {}
    for r in semantic:
        if r.article_id in merged:
            continue
        merged[r.article_id] = r
        sem_scores[r.article_id] = r.semantic_score if r.semantic_score is not None else r.score
    for r in keyword:
        if r.article_id in kw_scores:
            continue
        kw_scores[r.article_id] = r.keyword_score if r.keyword_score is not None else r.score
        if r.article_id not in merged:
            merged[r.article_id] = r

    max_sem = max(sem_scores.values(), default=0.0)
    fused: list[SearchResult] = []
    for article_id, base in merged.items():
        sem = sem_scores.get(article_id)
        kw = kw_scores.get(article_id)
        if sem is None:
            sem_part = 0.0
        elif normalize:
            sem_part = sem / max_sem if max_sem > 0 else 0.0
        else:
            sem_part = sem
        combined = sem_part * semantic_weight + (kw or 0.0) * keyword_weight
        fused.append(base.model_copy(update={
            "score": combined,
            "semantic_score": sem,
            "keyword_score": kw,
        }))

    fused.sort(key=lambda r: r.score, reverse=True)
    return fused


def select_related(hits: list[SearchResult], limit: int) -> list[SearchResult]:
    """
    相关文章选取规则:
    - 分数 > 0.5 的候选至少 3 条时，最多取 min(limit, 5) 条
    - 否则最多取 min(limit, 3) 条；高分候选不够时按分数取全部候选
    """
    ordered = sorted(hits, key=lambda r: r.score, reverse=True)
    strong = [r for r in ordered if r.score > RELATED_HIGH_SCORE]
    cap = min(limit, RELATED_MAX_STRONG) if len(strong) >= 3 else min(limit, RELATED_MAX_WEAK)
    if len(strong) >= cap:
        return strong[:cap]
    return ordered[:cap]


# ---------------------------------------------------------------------------
# 检索服务
# ---------------------------------------------------------------------------

class SearchService(RelatedRefreshPort):

    def __init__(
        self,
        articles: Any,
        embedder: EmbeddingPort,
        stores: VectorStoreProvider,
        cache: RelatedCache,
        reranker: Optional[Reranker] = None,
        defaults: Optional[SearchDefaults] = None,
    ):
        self._articles = articles
        self._embedder = embedder
        self._stores = stores
        self._cache = cache
        self._reranker = reranker
        self._defaults = defaults or SearchDefaults()

    def _candidate_count(self, limit: int) -> int:
        return max(limit * self._defaults.candidate_multiplier, limit)

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    async def search(self, req: SearchRequest) -> SearchResponse:
        start = time.perf_counter()
        window = req.offset + req.limit
        mode = req.mode
        cached = False
        fallback = False

        if req.mode == SearchMode.SEMANTIC:
            try:
                results = await self._semantic(req.user_id, req.query or "", window, rerank=True)
            except FALLBACK_ERRORS as e:
                if not req.fallback_enabled:
                    raise
                logger.warning(f"[Search] 语义检索失败，降级为关键词检索: user={req.user_id}, err={e}")
                results = await self._keyword(req.user_id, req.query or "", window)
                mode, fallback = SearchMode.KEYWORD, True
        elif req.mode == SearchMode.KEYWORD:
            results = await self._keyword(req.user_id, req.query or "", window)
        elif req.mode == SearchMode.HYBRID:
            results, fallback = await self._hybrid(req, window)
            if fallback:
                mode = SearchMode.KEYWORD
        else:
            results, cached = await self._related(req, window)

        page = results[req.offset:req.offset + req.limit]
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"[Search] mode={mode.value}, user={req.user_id}, results={len(page)}/{len(results)}, "
            f"cached={cached}, fallback={fallback}, {elapsed_ms:.0f}ms"
        )
        return SearchResponse(
            results=page,
            mode=mode,
            query=req.query,
            total=len(results),
            page=req.offset // req.limit + 1,
            limit=req.limit,
            cached=cached,
            fallback=fallback,
        )

    # ------------------------------------------------------------------
    # 各模式
    # ------------------------------------------------------------------

    async def _semantic(self, user_id: int, query: str, limit: int, rerank: bool = False) -> list[SearchResult]:
        embedding = await self._embedder.embed(query, user_id)
        store = await self._stores.for_user(user_id)
        hits = await store.query(embedding, self._candidate_count(limit))

        ordered_ids: list[int] = []
        scores: dict[int, float] = {}
        for hit in hits:
            if hit.article_id <= 0 or hit.article_id in scores:
                continue
            scores[hit.article_id] = hit.score
            ordered_ids.append(hit.article_id)
        if not ordered_ids:
            return []

        details = await self._articles.get_many(ordered_ids, user_id)
        results = [
            SearchResult(
                article_id=aid,
                score=scores[aid],
                semantic_score=scores[aid],
                metadata=_metadata(details[aid]),
            )
            for aid in ordered_ids
            if aid in details
        ][:limit]

        if rerank and self._reranker is not None:
            results = await self._reranker.maybe_rerank(query, results, user_id)
        return results

    async def _keyword(self, user_id: int, query: str, limit: int) -> list[SearchResult]:
        terms = split_terms(query)
        if not terms:
            return []
        rows = await self._articles.keyword_search(user_id, terms, self._candidate_count(limit))
        scored = [(row, keyword_relevance(row, query)) for row in rows]
        scored.sort(key=lambda x: x[1], reverse=True)
        return [
            SearchResult(
                article_id=row["id"],
                score=score,
                keyword_score=score,
                metadata=_metadata(row),
            )
            for row, score in scored[:limit]
        ]

    async def _hybrid(self, req: SearchRequest, limit: int) -> tuple[list[SearchResult], bool]:
        query = req.query or ""
        sem_out, kw_out = await asyncio.gather(
            self._semantic(req.user_id, query, limit, rerank=True),
            self._keyword(req.user_id, query, limit),
            return_exceptions=True,
        )
        if isinstance(kw_out, BaseException):
            raise kw_out
        if isinstance(sem_out, BaseException):
            if not isinstance(sem_out, FALLBACK_ERRORS) or not req.fallback_enabled:
                raise sem_out
            logger.warning(f"[Search] 混合检索语义路失败，降级为关键词检索: user={req.user_id}, err={sem_out}")
            return kw_out, True

        fused = fuse_scores(
            sem_out,
            kw_out,
            req.semantic_weight,
            req.keyword_weight,
            normalize=req.normalize_scores,
        )
        return fused, False

    async def _related(self, req: SearchRequest, limit: int) -> tuple[list[SearchResult], bool]:
        if req.article_id is None:
            raise ValueError("RELATED 模式需要 article_id")
        if req.use_cache and not req.refresh_cache:
            try:
                return await self._cache.load(req.article_id, req.user_id, limit), True
            except CacheMiss:
                pass

        try:
            results = await self.compute_related(req.article_id, req.user_id, limit)
        except ArticleNotFound:
            # 不属于该用户的文章不写缓存
            logger.info(f"[Related] 文章不存在或无权访问: article={req.article_id}, user={req.user_id}")
            return [], False
        if req.refresh_cache:
            await self._cache.save(req.article_id, results)
        else:
            try:
                await self._cache.save(req.article_id, results)
            except Exception as e:
                logger.error(f"[Related] 相关文章缓存写入失败: article={req.article_id}, err={e}")
        return results, False

    # ------------------------------------------------------------------
    # 相关文章
    # ------------------------------------------------------------------

    async def compute_related(self, article_id: int, user_id: int, limit: int) -> list[SearchResult]:
        """基于文章自身文本的语义近邻，排除自身；不做分数归一化。文章不属于该用户时抛 ArticleNotFound"""
        article = await self._articles.get_by_id(article_id, user_id)
        if not article:
            raise ArticleNotFound(article_id, user_id)
        text = build_vector_text(article)
        if not text:
            return []

        embedding = await self._embedder.embed(text, user_id)
        store = await self._stores.for_user(user_id)
        hits = await store.query(embedding, self._candidate_count(limit))

        seen: set[int] = set()
        candidates: list[SearchResult] = []
        for hit in hits:
            if hit.article_id <= 0 or hit.article_id == article_id or hit.article_id in seen:
                continue
            seen.add(hit.article_id)
            candidates.append(SearchResult(article_id=hit.article_id, score=hit.score, semantic_score=hit.score))
        if not candidates:
            return []

        top = select_related(candidates, limit)
        details = await self._articles.get_many([r.article_id for r in top], user_id, require_completed=True)
        results = [
            r.model_copy(update={"metadata": _metadata(details[r.article_id])})
            for r in top
            if r.article_id in details
        ]
        # 同分按发布时间倒序
        results.sort(key=lambda r: (r.score, _published_ts(r)), reverse=True)
        return results

    async def refresh_related(self, article_id: int, user_id: int, limit: int) -> list[SearchResult]:
        """强制重算并持久化；任何失败都向调用方抛出"""
        results = await self.compute_related(article_id, user_id, limit)
        await self._cache.save(article_id, results)
        logger.info(f"[Related] 已刷新相关文章: article={article_id}, related={len(results)}")
        return results

    async def get_related(self, article_id: int, user_id: int, limit: int = 5) -> list[SearchResult]:
        req = SearchRequest(
            mode=SearchMode.RELATED,
            user_id=user_id,
            article_id=article_id,
            limit=limit,
            normalize_scores=False,
        )
        resp = await self.search(req)
        return resp.results
