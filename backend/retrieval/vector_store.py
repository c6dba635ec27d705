"""
Milvus 文章向量存储

核心能力:
- 多用户共享一个 Collection，主键为 "{user_id}:{article_id}"，所有检索强制带 user_id 过滤
- upsert 覆盖写入，同一 (用户, 文章) 只有一条向量记录
- 相似度统一为 "越大越相似" (IP / COSINE 直接使用 Milvus 分数，L2 取 1 - distance)
- 所有调用放入线程池 (asyncio.to_thread) 并带超时，异常统一为 VectorBackendError

VectorStoreRegistry 按用户持有 MilvusVectorStore，用户配置变化时重建，支持 evict / close。
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from pymilvus import (
    Collection,
    CollectionSchema,
    DataType,
    FieldSchema,
    MilvusException,
    connections,
    utility,
)

from .errors import VectorBackendError
from .models import DistanceMetric, VectorHit, VectorSettings
from .ports import VectorStorePort, VectorStoreProvider

logger = logging.getLogger("retrieval.vector_store")

# Milvus VARCHAR 上限 65535 字节，中文按 4 字节预留
DOCUMENT_MAX_CHARS = 16000
ID_MAX_LENGTH = 64

_SCALAR_FIELDS = ("article_id",)


def _entity_field(entity: Any, key: str, default: Any = None) -> Any:
    """兼容 pymilvus 不同版本: entity 可能是 dict 或 Hit"""
    if entity is None:
        return default
    if isinstance(entity, dict):
        return entity.get(key, default)
    getter = getattr(entity, "get", None)
    if callable(getter):
        try:
            val = getter(key)
            return default if val is None else val
        except (KeyError, TypeError):
            pass
    val = getattr(entity, key, None)
    return default if val is None else val


def to_similarity(raw: float, metric: DistanceMetric | str) -> float:
    """把 Milvus 返回的分数统一为相似度 (越大越相似)"""
    metric = DistanceMetric(metric)
    if metric in (DistanceMetric.IP, DistanceMetric.COSINE):
        return float(raw)
    return 1.0 - float(raw)


def _format_value(val: Any) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    if isinstance(val, (int, float)):
        return str(val)
    return json.dumps(str(val), ensure_ascii=False)


def build_filter_expr(user_id: int, filter: Optional[dict[str, Any]] = None) -> str:
    """user_id 过滤始终存在；其余条件按等值 AND 组合"""
    parts = [f"user_id == {int(user_id)}"]
    for key, val in (filter or {}).items():
        if key == "user_id":
            continue
        if key in _SCALAR_FIELDS:
            parts.append(f"{key} == {_format_value(val)}")
        else:
            parts.append(f'metadata["{key}"] == {_format_value(val)}')
    return " and ".join(parts)


class MilvusVectorStore(VectorStorePort):
    """单个用户视角下的向量库"""

    def __init__(
        self,
        user_id: int,
        settings: VectorSettings,
        collection: Any = None,
    ):
        self.user_id = user_id
        self.settings = settings
        self.alias = f"retrieval_{user_id}"
        self._collection = collection

    # ------------------------------------------------------------------
    # Collection 初始化
    # ------------------------------------------------------------------

    def _get_or_create_collection(self) -> Any:
        if self._collection is not None:
            return self._collection

        connections.connect(self.alias, host=self.settings.host, port=str(self.settings.port))
        name = self.settings.collection
        if utility.has_collection(name, using=self.alias):
            coll = Collection(name, using=self.alias)
        else:
            fields = [
                FieldSchema(name="id", dtype=DataType.VARCHAR, max_length=ID_MAX_LENGTH, is_primary=True),
                FieldSchema(name="user_id", dtype=DataType.INT64),
                FieldSchema(name="article_id", dtype=DataType.INT64),
                FieldSchema(name="document", dtype=DataType.VARCHAR, max_length=65535),
                FieldSchema(name="metadata", dtype=DataType.JSON),
                FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.settings.dim),
            ]
            schema = CollectionSchema(fields=fields, description="RSS article vectors", enable_dynamic_field=False)
            coll = Collection(name=name, schema=schema, using=self.alias)
            coll.create_index(
                field_name="embedding",
                index_params={
                    "metric_type": self.settings.distance_metric.value,
                    "index_type": "HNSW",
                    "params": {"M": 16, "efConstruction": 256},
                },
            )
            logger.info(f"[Vector] Milvus collection '{name}' created (metric={self.settings.distance_metric.value})")
        coll.load()
        self._collection = coll
        return coll

    async def _run(self, fn: Callable[[], Any], op: str) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.settings.timeout)
        except asyncio.TimeoutError as e:
            raise VectorBackendError(f"Milvus {op} 超时 ({self.settings.timeout}s)") from e
        except VectorBackendError:
            raise
        except MilvusException as e:
            raise VectorBackendError(f"Milvus {op} 失败: {e}") from e
        except (ConnectionError, OSError) as e:
            raise VectorBackendError(f"Milvus {op} 异常: {e}") from e

    # ------------------------------------------------------------------
    # 写入 / 删除
    # ------------------------------------------------------------------

    async def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        metadatas: list[dict[str, Any]],
        documents: list[str],
    ) -> int:
        if not (len(ids) == len(embeddings) == len(metadatas) == len(documents)):
            raise ValueError("向量 upsert 参数长度不一致")
        if not ids:
            return 0

        user_ids = [self.user_id] * len(ids)
        article_ids = [int((m or {}).get("article_id") or 0) for m in metadatas]
        docs = [(d or "")[:DOCUMENT_MAX_CHARS] for d in documents]
        metas = [dict(m or {}) for m in metadatas]

        def _upsert():
            coll = self._get_or_create_collection()
            coll.upsert([list(ids), user_ids, article_ids, docs, metas, [list(e) for e in embeddings]])
            coll.flush()
            return len(ids)

        return await self._run(_upsert, "upsert")

    async def remove(self, ids: list[str]) -> int:
        if not ids:
            return 0
        expr = f"id in {json.dumps(list(ids))}"

        def _delete():
            coll = self._get_or_create_collection()
            res = coll.delete(expr)
            return int(getattr(res, "delete_count", 0) or 0)

        return await self._run(_delete, "delete")

    # ------------------------------------------------------------------
    # 检索
    # ------------------------------------------------------------------

    async def query(
        self,
        embedding: list[float],
        top_k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[VectorHit]:
        if top_k <= 0:
            return []
        expr = build_filter_expr(self.user_id, filter)
        metric = self.settings.distance_metric

        def _search():
            coll = self._get_or_create_collection()
            results = coll.search(
                data=[embedding],
                anns_field="embedding",
                param={"metric_type": metric.value, "params": {"ef": max(64, top_k * 2)}},
                limit=top_k,
                expr=expr,
                output_fields=["article_id", "document", "metadata"],
            )
            hits: list[VectorHit] = []
            for hit in results[0]:
                entity = getattr(hit, "entity", None)
                metadata = _entity_field(entity, "metadata", {}) or {}
                article_id = metadata.get("article_id") if isinstance(metadata, dict) else None
                hits.append(VectorHit(
                    id=str(hit.id),
                    article_id=int(article_id or 0),
                    score=to_similarity(hit.distance, metric),
                    document=_entity_field(entity, "document"),
                    metadata=metadata if isinstance(metadata, dict) else {},
                ))
            return hits

        hits = await self._run(_search, "search")
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    def close(self) -> None:
        self._collection = None
        try:
            connections.disconnect(self.alias)
        except MilvusException as e:
            logger.warning(f"[Vector] 断开 Milvus 连接失败: alias={self.alias}, err={e}")


# ---------------------------------------------------------------------------
# 按用户的注册表
# ---------------------------------------------------------------------------

SettingsLoader = Callable[[int], Awaitable[VectorSettings]]


class VectorStoreRegistry(VectorStoreProvider):
    """
    每个用户一个 MilvusVectorStore。

    每次取用时重新读取用户配置，配置变化则关闭旧实例并重建。
    """

    def __init__(
        self,
        settings_loader: SettingsLoader,
        store_factory: Callable[[int, VectorSettings], MilvusVectorStore] = MilvusVectorStore,
    ):
        self._settings_loader = settings_loader
        self._store_factory = store_factory
        self._stores: dict[int, MilvusVectorStore] = {}
        # 同一用户的读取配置与建库串行，并发首次取用只建一个实例
        self._locks: dict[int, asyncio.Lock] = {}

    async def for_user(self, user_id: int) -> MilvusVectorStore:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            settings = await self._settings_loader(user_id)
            store = self._stores.get(user_id)
            if store is not None and store.settings == settings:
                return store
            if store is not None:
                logger.info(f"[Vector] 用户 {user_id} 向量库配置变化，重建连接")
                store.close()
            store = self._store_factory(user_id, settings)
            self._stores[user_id] = store
            return store

    def evict(self, user_id: int) -> None:
        store = self._stores.pop(user_id, None)
        if store is not None:
            store.close()

    def close(self) -> None:
        for user_id in list(self._stores):
            self.evict(user_id)

    def __len__(self) -> int:
        return len(self._stores)
