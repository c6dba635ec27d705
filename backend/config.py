"""
配置管理模块
检索子系统的 embedding / rerank / 向量库 / 检索默认值 / 缓存刷新配置

全局默认值来自环境变量 (由 main.py 通过 python-dotenv 加载 .env)，
用户级的供应商与向量库配置由 db 层 (llm_configs / user_settings) 覆盖。
"""
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict

from retrieval.models import DistanceMetric, VectorSettings


def _env_int(name: str, default: int, min_value: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return max(min_value, default)
    try:
        return max(min_value, int(raw.strip()))
    except ValueError:
        return max(min_value, default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes")


class EmbeddingConfig(BaseModel):
    """单个 embedding 供应商的配置"""
    base_url: Optional[str] = None
    api_key: str = ""
    model_name: str = "text-embedding-3-small"
    dimensions: Optional[int] = None
    timeout: float = 30.0  # 秒
    max_retries: int = 3
    batch_size: int = 32

    # 允许 model_name 等字段名
    model_config = ConfigDict(protected_namespaces=())


class RerankConfig(BaseModel):
    base_url: str
    api_key: str = ""
    model_name: str = "jina-reranker-v2-base-multilingual"
    timeout: float = 30.0

    model_config = ConfigDict(protected_namespaces=())


class SearchDefaults(BaseModel):
    limit: int = 10
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    # 语义候选扩大倍数：先取 limit * 3 再过滤
    candidate_multiplier: int = 3


class RefreshSettings(BaseModel):
    stale_days: int = 7
    concurrency: int = 3
    related_limit: int = 5
    incremental_top_n: int = 10
    incremental_min_score: float = 0.5
    batch_limit: int = 50


class SchedulerConfig(BaseModel):
    enabled: bool = True
    interval_seconds: int = 86400
    batch_size: int = 50
    stale_days: int = 7


# ---------------------------------------------------------------------------
# 从环境变量构建默认配置
# ---------------------------------------------------------------------------

def embedding_config_from_env() -> Optional[EmbeddingConfig]:
    """环境变量中的 embedding 兜底配置；未配置 API key 时返回 None"""
    api_key = os.getenv("RAG_EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY", "")
    base_url = os.getenv("RAG_EMBEDDING_BASE_URL") or os.getenv("OPENAI_API_BASE")
    if not api_key:
        return None
    dim = os.getenv("RAG_EMBEDDING_DIM")
    return EmbeddingConfig(
        base_url=base_url or None,
        api_key=api_key,
        model_name=os.getenv("RAG_EMBEDDING_MODEL", "text-embedding-3-small"),
        dimensions=int(dim) if dim and dim.strip().isdigit() else None,
        timeout=_env_float("RAG_EMBEDDING_TIMEOUT", 30.0),
        max_retries=_env_int("RAG_EMBEDDING_MAX_RETRIES", 3),
        batch_size=_env_int("RAG_EMBEDDING_BATCH_SIZE", 32, min_value=1),
    )


def rerank_config_from_env() -> Optional[RerankConfig]:
    base_url = os.getenv("RERANK_BASE_URL", "").strip()
    if not base_url:
        return None
    return RerankConfig(
        base_url=base_url,
        api_key=os.getenv("RERANK_API_KEY", "").strip(),
        model_name=os.getenv("RERANK_MODEL", "jina-reranker-v2-base-multilingual"),
        timeout=_env_float("RERANK_TIMEOUT", 30.0),
    )


def vector_settings_from_env() -> VectorSettings:
    metric = os.getenv("MILVUS_DISTANCE_METRIC", "COSINE").strip().upper()
    try:
        distance_metric = DistanceMetric(metric)
    except ValueError:
        distance_metric = DistanceMetric.COSINE
    return VectorSettings(
        host=os.getenv("MILVUS_HOST", "localhost"),
        port=_env_int("MILVUS_PORT", 19530, min_value=1),
        collection=os.getenv("MILVUS_ARTICLE_COLLECTION", "rss_articles"),
        distance_metric=distance_metric,
        dim=_env_int("RAG_EMBEDDING_DIM", 1536, min_value=1),
        timeout=_env_float("MILVUS_TIMEOUT", 10.0),
    )


def refresh_settings_from_env() -> RefreshSettings:
    return RefreshSettings(
        stale_days=_env_int("RELATED_STALE_DAYS", 7, min_value=1),
        concurrency=_env_int("RELATED_REFRESH_CONCURRENCY", 3, min_value=1),
        batch_limit=_env_int("RELATED_REFRESH_BATCH_LIMIT", 50, min_value=1),
    )


def scheduler_config_from_env() -> SchedulerConfig:
    return SchedulerConfig(
        enabled=_env_bool("RELATED_SCHEDULER_ENABLED", True),
        interval_seconds=_env_int("RELATED_SCHEDULER_INTERVAL", 86400, min_value=1),
        batch_size=_env_int("RELATED_REFRESH_BATCH_LIMIT", 50, min_value=1),
        stale_days=_env_int("RELATED_STALE_DAYS", 7, min_value=1),
    )
