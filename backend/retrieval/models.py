"""
检索子系统 Pydantic 数据模型

包含检索请求/响应、向量命中、相关文章缓存条目以及索引/刷新结果。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# 枚举
# ---------------------------------------------------------------------------

class SearchMode(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"
    RELATED = "related"


class DistanceMetric(str, Enum):
    COSINE = "COSINE"
    IP = "IP"
    L2 = "L2"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# 检索请求 / 响应
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    """统一检索请求；RELATED 需要 article_id，文本模式需要非空 query"""
    mode: SearchMode = SearchMode.HYBRID
    user_id: int
    query: Optional[str] = None
    article_id: Optional[int] = None
    limit: int = Field(default=10, ge=1, le=100)
    offset: int = Field(default=0, ge=0)
    semantic_weight: float = Field(default=0.7, ge=0.0)
    keyword_weight: float = Field(default=0.3, ge=0.0)
    normalize_scores: bool = True
    use_cache: bool = True
    refresh_cache: bool = False
    fallback_enabled: bool = True

    @model_validator(mode="after")
    def _check_mode_inputs(self) -> "SearchRequest":
        if self.mode == SearchMode.RELATED:
            if self.article_id is None:
                raise ValueError("related 模式需要 article_id")
        elif not (self.query or "").strip():
            raise ValueError(f"{self.mode.value} 模式需要非空 query")
        return self


class ResultMetadata(BaseModel):
    title: str = ""
    url: Optional[str] = None
    summary: Optional[str] = None
    published_at: Optional[datetime] = None
    source_name: Optional[str] = None


class SearchResult(BaseModel):
    article_id: int
    score: float
    semantic_score: Optional[float] = None
    keyword_score: Optional[float] = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)


class SearchResponse(BaseModel):
    results: list[SearchResult] = Field(default_factory=list)
    mode: SearchMode
    query: Optional[str] = None
    total: int = 0
    page: int = 1
    limit: int = 10
    cached: bool = False
    fallback: bool = False


# ---------------------------------------------------------------------------
# 向量库
# ---------------------------------------------------------------------------

class VectorHit(BaseModel):
    """向量库命中；score 已归一为 "越大越相似" 的相似度"""
    id: str
    article_id: int = 0
    score: float
    document: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorSettings(BaseModel):
    """单个用户的向量库连接参数"""
    host: str = "localhost"
    port: int = 19530
    collection: str = "rss_articles"
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    dim: int = 1536
    timeout: float = 10.0


# ---------------------------------------------------------------------------
# 相关文章缓存
# ---------------------------------------------------------------------------

class RelatedItem(BaseModel):
    related_article_id: int
    score: float


class RelatedCacheEntry(BaseModel):
    article_id: int
    items: list[RelatedItem] = Field(default_factory=list)
    updated_at: datetime


class RelatedArticle(BaseModel):
    """对外 (流水线/接口层) 暴露的相关文章视图"""
    id: int
    title: str = ""
    url: Optional[str] = None
    summary: Optional[str] = None
    published_at: Optional[datetime] = None
    source_name: Optional[str] = None
    score: float = 0.0


class RefreshStats(BaseModel):
    total: int = 0
    fresh: int = 0
    stale: int = 0
    missing: int = 0


# ---------------------------------------------------------------------------
# 任务结果
# ---------------------------------------------------------------------------

class IndexResult(BaseModel):
    article_id: int
    success: bool
    error: Optional[str] = None
    skipped: bool = False


class RefreshResult(BaseModel):
    article_id: int
    success: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# 定时刷新状态
# ---------------------------------------------------------------------------

class RunStats(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0


class SchedulerStatus(BaseModel):
    is_running: bool = False
    enabled: bool = True
    interval_seconds: int = 86400
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None
    last_run_stats: Optional[RunStats] = None
    stats: Optional[RefreshStats] = None
