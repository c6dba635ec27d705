"""
组件之间的窄接口

刷新/检索只依赖这些抽象，具体实现 (OpenAI 兼容 embedding、Milvus、检索服务) 在 main.py 中注入。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from .models import SearchResult, VectorHit


class EmbeddingPort(ABC):

    @abstractmethod
    async def embed(self, text: str, user_id: int) -> list[float]:
        raise NotImplementedError

    @abstractmethod
    async def embed_batch(self, texts: list[str], user_id: int) -> list[list[float]]:
        raise NotImplementedError


class VectorQueryPort(ABC):

    @abstractmethod
    async def query(
        self,
        embedding: list[float],
        top_k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorHit]:
        raise NotImplementedError


class VectorWritePort(ABC):

    @abstractmethod
    async def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict[str, Any]],
        documents: list[str],
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    async def remove(self, ids: list[str]) -> int:
        raise NotImplementedError


class VectorStorePort(VectorQueryPort, VectorWritePort):
    """单个用户视角下的完整向量库"""


class VectorStoreProvider(ABC):
    """按用户取得向量库 (由注册表实现)"""

    @abstractmethod
    async def for_user(self, user_id: int) -> VectorStorePort:
        raise NotImplementedError


class RelatedRefreshPort(ABC):
    """强制重算并持久化某篇文章的相关文章"""

    @abstractmethod
    async def refresh_related(self, article_id: int, user_id: int, limit: int) -> list[SearchResult]:
        raise NotImplementedError
