"""
llm_configs 表读取：按用户取启用中的 embedding / rerank 供应商配置。
"""
import os
from typing import Any

import asyncpg


def _get_dsn() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "rss_tracker")
    password = os.getenv("POSTGRES_PASSWORD", "rss_tracker")
    database = os.getenv("POSTGRES_DB", "rss_tracker")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


async def _get_conn() -> asyncpg.Connection:
    return await asyncpg.connect(_get_dsn())


class LLMConfigRepository:

    async def get_active(self, user_id: int, config_type: str) -> dict[str, Any] | None:
        """优先级最高的启用配置；没有则返回 None"""
        conn = await _get_conn()
        try:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, config_type, base_url, api_key, model,
                       timeout_ms, max_retries, enabled, priority
                FROM llm_configs
                WHERE user_id = $1 AND config_type = $2 AND enabled = TRUE
                ORDER BY priority DESC, id ASC
                LIMIT 1
                """,
                user_id,
                config_type,
            )
            return dict(row) if row else None
        finally:
            await conn.close()


llm_config_repository = LLMConfigRepository()
