"""
相关文章缓存 (article_related 表之上的一层)

缓存只是优化层：过期条目照常返回，是否刷新由调用方 (refresh_cache / 定时刷新) 决定。
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .errors import CacheMiss
from .models import RefreshStats, RelatedCacheEntry, RelatedItem, ResultMetadata, SearchResult

STALE_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def stale_before(now: Optional[datetime] = None, stale_days: int = STALE_DAYS) -> datetime:
    return (now or _utcnow()) - timedelta(days=stale_days)


def is_fresh(entry: RelatedCacheEntry, now: Optional[datetime] = None, stale_days: int = STALE_DAYS) -> bool:
    """now - updated_at < 阈值即为新鲜"""
    now = now or _utcnow()
    updated_at = entry.updated_at
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    return now - updated_at < timedelta(days=stale_days)


class RelatedCache:

    def __init__(self, repository: Any, stale_days: int = STALE_DAYS):
        self._repo = repository
        self.stale_days = stale_days

    async def get_entry(self, article_id: int) -> RelatedCacheEntry | None:
        return await self._repo.get_entry(article_id)

    async def load(self, article_id: int, user_id: int, limit: int) -> list[SearchResult]:
        """缓存命中返回带展示字段的结果 (空列表也算命中)，没有条目时抛 CacheMiss"""
        rows = await self._repo.load_with_details(article_id, user_id, limit)
        if rows is None:
            raise CacheMiss(article_id)
        return [
            SearchResult(
                article_id=r["id"],
                score=float(r["score"]),
                semantic_score=float(r["score"]),
                metadata=ResultMetadata(
                    title=r.get("title") or "",
                    url=r.get("url"),
                    summary=r.get("summary"),
                    published_at=r.get("published_at"),
                    source_name=r.get("source_name"),
                ),
            )
            for r in rows
        ]

    async def save(self, article_id: int, results: list[SearchResult]) -> int:
        items = [RelatedItem(related_article_id=r.article_id, score=r.score) for r in results]
        return await self._repo.save(article_id, items)

    async def remove_article(self, article_id: int) -> int:
        return await self._repo.remove_article(article_id)

    def is_fresh(self, entry: RelatedCacheEntry, now: Optional[datetime] = None) -> bool:
        return is_fresh(entry, now, self.stale_days)

    async def articles_needing_refresh(
        self,
        user_id: int,
        limit: int = 50,
        before: Optional[datetime] = None,
    ) -> list[int]:
        return await self._repo.list_stale(user_id, before or stale_before(stale_days=self.stale_days), limit)

    async def stats(self, user_id: int, now: Optional[datetime] = None) -> RefreshStats:
        return await self._repo.stats(user_id, stale_before(now, self.stale_days))
