"""
文章检索与相关文章子系统

模块职责:
- embedding: OpenAI 兼容 embedding 封装 (按用户配置)
- text_builder: 文章 -> 向量化文本
- vector_store: Milvus 向量存储 + 按用户注册表
- indexer: 向量写入 FIFO 队列
- service: SEMANTIC / KEYWORD / HYBRID / RELATED 检索与融合
- related_cache / refresh / tasks / scheduler: 相关文章缓存与刷新
- facade: 流水线与接口层的统一入口

组件在 main.build_services() 中组装。
"""
from .errors import (
    ArticleNotFound,
    CacheMiss,
    EmbeddingConfigError,
    EmbeddingError,
    RefreshError,
    RerankError,
    RetrievalError,
    VectorBackendError,
)
from .models import SearchMode, SearchRequest, SearchResponse, SearchResult

__all__ = [
    "ArticleNotFound",
    "CacheMiss",
    "EmbeddingConfigError",
    "EmbeddingError",
    "RefreshError",
    "RerankError",
    "RetrievalError",
    "VectorBackendError",
    "SearchMode",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
]
