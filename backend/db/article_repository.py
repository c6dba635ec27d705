"""
articles 表读取与流水线阶段更新，使用 asyncpg 连接 PostgreSQL。
依赖: 已执行 db/schema_retrieval.sql 建表。

检索子系统只读写这里列出的字段；文章本身的写入由抓取/过滤流水线负责。
"""
import json
import os
from typing import Any, Sequence

import asyncpg

from retrieval.keyword import build_like_clause


def _get_dsn() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "rss_tracker")
    password = os.getenv("POSTGRES_PASSWORD", "rss_tracker")
    database = os.getenv("POSTGRES_DB", "rss_tracker")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


async def _get_conn() -> asyncpg.Connection:
    return await asyncpg.connect(_get_dsn())


def _parse_stages(val: Any) -> dict[str, Any]:
    if val is None:
        return {}
    if isinstance(val, dict):
        return dict(val)
    if isinstance(val, str):
        try:
            return json.loads(val)
        except json.JSONDecodeError:
            return {}
    return {}


def _row_to_article(row: asyncpg.Record | None) -> dict[str, Any]:
    if row is None:
        return {}
    d = dict(row)
    if "process_stages" in d:
        d["process_stages"] = _parse_stages(d["process_stages"])
    return d


_COLUMNS = """
    a.id, a.title, a.url, a.summary, a.content, a.markdown_content,
    a.filter_status, a.process_status, a.process_stages,
    a.published_at, a.updated_at,
    s.user_id, s.name AS source_name
"""


class ArticleRepository:

    async def get_by_id(self, article_id: int, user_id: int | None = None) -> dict[str, Any] | None:
        """按 id 读取文章；传入 user_id 时仅返回该用户订阅源下的文章"""
        conn = await _get_conn()
        try:
            if user_id is None:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_COLUMNS}
                    FROM articles a
                    JOIN rss_sources s ON s.id = a.rss_source_id
                    WHERE a.id = $1
                    """,
                    article_id,
                )
            else:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_COLUMNS}
                    FROM articles a
                    JOIN rss_sources s ON s.id = a.rss_source_id
                    WHERE a.id = $1 AND s.user_id = $2
                    """,
                    article_id,
                    user_id,
                )
            return _row_to_article(row) if row else None
        finally:
            await conn.close()

    async def get_many(
        self,
        article_ids: Sequence[int],
        user_id: int,
        *,
        require_completed: bool = False,
    ) -> dict[int, dict[str, Any]]:
        """
        批量读取已通过过滤的文章，返回 {article_id: article}。

        require_completed=True 时额外要求 process_status = 'completed' (相关文章场景)。
        """
        ids = [int(i) for i in article_ids if i]
        if not ids:
            return {}
        conn = await _get_conn()
        try:
            status_clause = "AND a.process_status = 'completed'" if require_completed else ""
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM articles a
                JOIN rss_sources s ON s.id = a.rss_source_id
                WHERE a.id = ANY($1::bigint[])
                  AND s.user_id = $2
                  AND a.filter_status = 'passed'
                  {status_clause}
                """,
                ids,
                user_id,
            )
            return {r["id"]: _row_to_article(r) for r in rows}
        finally:
            await conn.close()

    async def keyword_search(self, user_id: int, terms: list[str], limit: int) -> list[dict[str, Any]]:
        """每个词都需命中 title/summary/content 之一；按发布时间倒序取候选"""
        clause, params = build_like_clause(terms, start_index=3)
        if not clause:
            return []
        conn = await _get_conn()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_COLUMNS}
                FROM articles a
                JOIN rss_sources s ON s.id = a.rss_source_id
                WHERE s.user_id = $1
                  AND a.filter_status = 'passed'
                  AND {clause}
                ORDER BY a.published_at DESC NULLS LAST, a.id DESC
                LIMIT $2
                """,
                user_id,
                limit,
                *params,
            )
            return [_row_to_article(r) for r in rows]
        finally:
            await conn.close()

    async def update_process_stage(
        self,
        article_id: int,
        stage: str,
        status: str,
        error: str | None = None,
    ) -> None:
        """更新 process_stages 中单个阶段的状态"""
        payload: dict[str, Any] = {"status": status}
        if error:
            payload["error"] = error[:500]
        conn = await _get_conn()
        try:
            await conn.execute(
                """
                UPDATE articles
                SET process_stages = jsonb_set(
                        COALESCE(process_stages, '{}'::jsonb),
                        ARRAY[$2::text],
                        $3::jsonb,
                        true
                    ),
                    updated_at = now()
                WHERE id = $1
                """,
                article_id,
                stage,
                json.dumps(payload),
            )
        finally:
            await conn.close()

    async def list_active_user_ids(self) -> list[int]:
        """拥有至少一个订阅源的用户"""
        conn = await _get_conn()
        try:
            rows = await conn.fetch("SELECT DISTINCT user_id FROM rss_sources ORDER BY user_id")
            return [r["user_id"] for r in rows]
        finally:
            await conn.close()


article_repository = ArticleRepository()
