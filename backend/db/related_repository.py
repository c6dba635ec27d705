"""
article_related 表 CRUD，使用 asyncpg 连接 PostgreSQL。
依赖: 已执行 db/schema_retrieval.sql 建表。

每篇文章的相关列表整体覆盖写入 (同一事务内 delete + insert)，读出时校验为 pydantic 模型。
条目是否存在、何时更新记录在 article_related_state，相关列表为空的条目同样算命中。
"""
import os
from datetime import datetime
from typing import Any, Sequence

import asyncpg

from retrieval.models import RefreshStats, RelatedCacheEntry, RelatedItem


def _get_dsn() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "rss_tracker")
    password = os.getenv("POSTGRES_PASSWORD", "rss_tracker")
    database = os.getenv("POSTGRES_DB", "rss_tracker")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


async def _get_conn() -> asyncpg.Connection:
    return await asyncpg.connect(_get_dsn())


class RelatedRepository:
    """相关文章缓存表仓储"""

    async def get_entry(self, article_id: int) -> RelatedCacheEntry | None:
        conn = await _get_conn()
        try:
            state = await conn.fetchrow(
                "SELECT updated_at FROM article_related_state WHERE article_id = $1",
                article_id,
            )
            if state is None:
                return None
            rows = await conn.fetch(
                """
                SELECT related_article_id, score
                FROM article_related
                WHERE article_id = $1
                ORDER BY score DESC, related_article_id
                """,
                article_id,
            )
        finally:
            await conn.close()
        return RelatedCacheEntry(
            article_id=article_id,
            items=[RelatedItem(related_article_id=r["related_article_id"], score=r["score"]) for r in rows],
            updated_at=state["updated_at"],
        )

    async def load_with_details(self, article_id: int, user_id: int, limit: int) -> list[dict[str, Any]] | None:
        """
        缓存中的相关文章及其展示字段；仅返回仍通过过滤且处理完成的文章。
        源文章没有缓存条目，或不属于该用户时返回 None；条目存在但列表为空时返回 []。
        """
        conn = await _get_conn()
        try:
            state = await conn.fetchrow(
                """
                SELECT st.updated_at
                FROM article_related_state st
                JOIN articles a ON a.id = st.article_id
                JOIN rss_sources s ON s.id = a.rss_source_id
                WHERE st.article_id = $1 AND s.user_id = $2
                """,
                article_id,
                user_id,
            )
            if state is None:
                return None
            rows = await conn.fetch(
                """
                SELECT ar.related_article_id AS id, ar.score,
                       a.title, a.url, a.summary, a.published_at,
                       s.name AS source_name
                FROM article_related ar
                JOIN articles a ON a.id = ar.related_article_id
                JOIN rss_sources s ON s.id = a.rss_source_id
                WHERE ar.article_id = $1
                  AND s.user_id = $2
                  AND a.filter_status = 'passed'
                  AND a.process_status = 'completed'
                ORDER BY ar.score DESC, a.published_at DESC NULLS LAST
                LIMIT $3
                """,
                article_id,
                user_id,
                limit,
            )
            return [dict(r) for r in rows]
        finally:
            await conn.close()

    async def save(self, article_id: int, items: Sequence[RelatedItem]) -> int:
        """覆盖写入某篇文章的相关列表并刷新条目时间戳，返回写入条数"""
        conn = await _get_conn()
        try:
            async with conn.transaction():
                await conn.execute("DELETE FROM article_related WHERE article_id = $1", article_id)
                if items:
                    await conn.executemany(
                        """
                        INSERT INTO article_related (article_id, related_article_id, score, created_at, updated_at)
                        VALUES ($1, $2, $3, now(), now())
                        ON CONFLICT (article_id, related_article_id)
                        DO UPDATE SET score = EXCLUDED.score, updated_at = now()
                        """,
                        [(article_id, it.related_article_id, float(it.score)) for it in items],
                    )
                await conn.execute(
                    """
                    INSERT INTO article_related_state (article_id, updated_at)
                    VALUES ($1, now())
                    ON CONFLICT (article_id) DO UPDATE SET updated_at = now()
                    """,
                    article_id,
                )
            return len(items)
        finally:
            await conn.close()

    async def remove_article(self, article_id: int) -> int:
        """删除文章自身的缓存条目，并从其他条目中移除它；返回删除的相关行数"""
        conn = await _get_conn()
        try:
            async with conn.transaction():
                await conn.execute("DELETE FROM article_related_state WHERE article_id = $1", article_id)
                res = await conn.execute(
                    "DELETE FROM article_related WHERE article_id = $1 OR related_article_id = $1",
                    article_id,
                )
            try:
                return int(res.split()[-1])
            except (ValueError, IndexError):
                return 0
        finally:
            await conn.close()

    async def list_stale(self, user_id: int, stale_before: datetime, limit: int) -> list[int]:
        """需要刷新的文章 id：条目早于 stale_before，按最旧优先"""
        conn = await _get_conn()
        try:
            rows = await conn.fetch(
                """
                SELECT st.article_id
                FROM article_related_state st
                JOIN articles a ON a.id = st.article_id
                JOIN rss_sources s ON s.id = a.rss_source_id
                WHERE s.user_id = $1
                  AND a.filter_status = 'passed'
                  AND a.process_status = 'completed'
                  AND st.updated_at < $2
                ORDER BY st.updated_at ASC
                LIMIT $3
                """,
                user_id,
                stale_before,
                limit,
            )
            return [r["article_id"] for r in rows]
        finally:
            await conn.close()

    async def stats(self, user_id: int, stale_before: datetime) -> RefreshStats:
        conn = await _get_conn()
        try:
            row = await conn.fetchrow(
                """
                WITH eligible AS (
                    SELECT a.id
                    FROM articles a
                    JOIN rss_sources s ON s.id = a.rss_source_id
                    WHERE s.user_id = $1
                      AND a.filter_status = 'passed'
                      AND a.process_status = 'completed'
                ),
                cached AS (
                    SELECT st.article_id, st.updated_at
                    FROM article_related_state st
                    JOIN eligible e ON e.id = st.article_id
                )
                SELECT
                    (SELECT COUNT(*) FROM eligible) AS total,
                    (SELECT COUNT(*) FROM cached WHERE updated_at >= $2) AS fresh,
                    (SELECT COUNT(*) FROM cached WHERE updated_at < $2) AS stale
                """,
                user_id,
                stale_before,
            )
        finally:
            await conn.close()
        total = int(row["total"] or 0)
        fresh = int(row["fresh"] or 0)
        stale = int(row["stale"] or 0)
        return RefreshStats(total=total, fresh=fresh, stale=stale, missing=max(0, total - fresh - stale))


related_repository = RelatedRepository()
