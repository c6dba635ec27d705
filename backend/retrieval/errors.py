"""
检索子系统异常定义

写路径 (索引) 的异常在队列内被捕获并上报；读路径 (检索) 的异常按 fallback 策略降级或向上抛出；
刷新路径的异常按条目收集，不中断整批。
"""
from __future__ import annotations


class RetrievalError(Exception):
    """检索子系统所有异常的基类"""


class EmbeddingError(RetrievalError):
    """Embedding 供应商调用失败 (网络/超时/响应数量不一致等)"""


class EmbeddingConfigError(EmbeddingError):
    """用户没有可用的 embedding 配置"""


class VectorBackendError(RetrievalError):
    """向量库不可达、集合缺失、返回结构异常或超时"""


class RerankError(RetrievalError):
    """Rerank 供应商调用失败"""


class CacheMiss(RetrievalError):
    """相关文章缓存不存在 (控制流信号，不是错误)"""

    def __init__(self, article_id: int):
        super().__init__(f"related cache miss: article_id={article_id}")
        self.article_id = article_id


class RefreshError(RetrievalError):
    """增量刷新时候选文章发现失败"""


class ArticleNotFound(RetrievalError):
    """文章不存在，或不属于当前用户"""

    def __init__(self, article_id: int, user_id: int):
        super().__init__(f"article not found: article_id={article_id}, user_id={user_id}")
        self.article_id = article_id
        self.user_id = user_id
