"""
user_settings 表读取：用户级向量库连接参数 (vector_host / vector_port / vector_collection / vector_distance_metric)。
"""
import os

import asyncpg

from config import vector_settings_from_env
from retrieval.models import DistanceMetric, VectorSettings


def _get_dsn() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "rss_tracker")
    password = os.getenv("POSTGRES_PASSWORD", "rss_tracker")
    database = os.getenv("POSTGRES_DB", "rss_tracker")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


async def _get_conn() -> asyncpg.Connection:
    return await asyncpg.connect(_get_dsn())


_VECTOR_KEYS = ("vector_host", "vector_port", "vector_collection", "vector_distance_metric")


def merge_vector_settings(base: VectorSettings, values: dict[str, str | None]) -> VectorSettings:
    """用 user_settings 中的非空值覆盖环境默认值；非法值忽略"""
    updates: dict = {}
    if values.get("vector_host"):
        updates["host"] = values["vector_host"]
    port = (values.get("vector_port") or "").strip()
    if port.isdigit():
        updates["port"] = int(port)
    if values.get("vector_collection"):
        updates["collection"] = values["vector_collection"]
    metric = (values.get("vector_distance_metric") or "").strip().upper()
    if metric in DistanceMetric.__members__:
        updates["distance_metric"] = DistanceMetric(metric)
    return base.model_copy(update=updates)


class SettingsRepository:

    async def get_vector_settings(self, user_id: int) -> VectorSettings:
        conn = await _get_conn()
        try:
            rows = await conn.fetch(
                "SELECT key, value FROM user_settings WHERE user_id = $1 AND key = ANY($2::text[])",
                user_id,
                list(_VECTOR_KEYS),
            )
        finally:
            await conn.close()
        return merge_vector_settings(vector_settings_from_env(), {r["key"]: r["value"] for r in rows})


settings_repository = SettingsRepository()
