"""
检索子系统测试夹具: 内存版文章库 / 相关文章缓存表 / embedding / Milvus collection

运行方式（在仓库根目录下）:

    pytest backend
"""
from __future__ import annotations

import asyncio
import json
import math
import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from retrieval.keyword import matches_all_terms
from retrieval.models import RefreshStats, RelatedCacheEntry, RelatedItem, VectorHit
from retrieval.ports import EmbeddingPort, VectorStorePort, VectorStoreProvider
from retrieval.related_cache import RelatedCache

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# 文章库
# ---------------------------------------------------------------------------

class FakeArticleRepository:

    def __init__(self):
        self.articles: dict[int, dict[str, Any]] = {}
        self.stages: list[tuple[int, str, str, Optional[str]]] = []

    def add(
        self,
        article_id: int,
        user_id: int = 1,
        title: str = "",
        summary: str | None = None,
        content: str | None = None,
        markdown_content: str | None = None,
        filter_status: str = "passed",
        process_status: str = "completed",
        published_at: datetime | None = None,
        source_name: str = "arXiv",
    ) -> dict[str, Any]:
        article = {
            "id": article_id,
            "user_id": user_id,
            "title": title,
            "url": f"https://example.org/{article_id}",
            "summary": summary,
            "content": content,
            "markdown_content": markdown_content,
            "filter_status": filter_status,
            "process_status": process_status,
            "process_stages": {},
            "published_at": published_at or NOW - timedelta(hours=article_id),
            "source_name": source_name,
        }
        self.articles[article_id] = article
        return article

    async def get_by_id(self, article_id: int, user_id: int | None = None):
        article = self.articles.get(article_id)
        if article is None or (user_id is not None and article["user_id"] != user_id):
            return None
        return dict(article)

    async def get_many(self, article_ids, user_id: int, *, require_completed: bool = False):
        out = {}
        for aid in article_ids:
            a = self.articles.get(aid)
            if not a or a["user_id"] != user_id or a["filter_status"] != "passed":
                continue
            if require_completed and a["process_status"] != "completed":
                continue
            out[aid] = dict(a)
        return out

    async def keyword_search(self, user_id: int, terms: list[str], limit: int):
        rows = [
            dict(a) for a in self.articles.values()
            if a["user_id"] == user_id and a["filter_status"] == "passed" and matches_all_terms(a, terms)
        ]
        rows.sort(key=lambda a: a["published_at"], reverse=True)
        return rows[:limit]

    async def update_process_stage(self, article_id: int, stage: str, status: str, error: str | None = None):
        self.stages.append((article_id, stage, status, error))

    async def list_active_user_ids(self):
        return sorted({a["user_id"] for a in self.articles.values()})


# ---------------------------------------------------------------------------
# article_related 表
# ---------------------------------------------------------------------------

class FakeRelatedRepository:

    def __init__(self, articles: FakeArticleRepository, clock=lambda: NOW):
        self.articles = articles
        self.clock = clock
        self.rows: dict[int, list[RelatedItem]] = {}
        self.updated: dict[int, datetime] = {}
        self.save_error: Exception | None = None
        self.saves: list[int] = []

    def seed(self, article_id: int, related: list[tuple[int, float]], updated_at: datetime) -> None:
        self.rows[article_id] = [RelatedItem(related_article_id=r, score=s) for r, s in related]
        self.updated[article_id] = updated_at

    async def get_entry(self, article_id: int):
        if article_id not in self.updated:
            return None
        return RelatedCacheEntry(article_id=article_id, items=list(self.rows.get(article_id, [])), updated_at=self.updated[article_id])

    async def load_with_details(self, article_id: int, user_id: int, limit: int):
        source = self.articles.articles.get(article_id)
        if article_id not in self.updated or not source or source["user_id"] != user_id:
            return None
        out = []
        for item in sorted(self.rows.get(article_id, []), key=lambda i: i.score, reverse=True):
            a = self.articles.articles.get(item.related_article_id)
            if not a or a["user_id"] != user_id or a["filter_status"] != "passed" or a["process_status"] != "completed":
                continue
            out.append({
                "id": a["id"],
                "score": item.score,
                "title": a["title"],
                "url": a["url"],
                "summary": a["summary"],
                "published_at": a["published_at"],
                "source_name": a["source_name"],
            })
        return out[:limit]

    async def save(self, article_id: int, items):
        if self.save_error is not None:
            raise self.save_error
        self.rows[article_id] = list(items)
        self.updated[article_id] = self.clock()
        self.saves.append(article_id)
        return len(items)

    async def remove_article(self, article_id: int):
        removed = len(self.rows.pop(article_id, []))
        self.updated.pop(article_id, None)
        for aid, items in self.rows.items():
            kept = [i for i in items if i.related_article_id != article_id]
            removed += len(items) - len(kept)
            self.rows[aid] = kept
        return removed

    async def list_stale(self, user_id: int, stale_before: datetime, limit: int):
        candidates = []
        for aid, updated_at in self.updated.items():
            a = self.articles.articles.get(aid)
            if not a or a["user_id"] != user_id:
                continue
            if a["filter_status"] != "passed" or a["process_status"] != "completed":
                continue
            if updated_at < stale_before:
                candidates.append((updated_at, aid))
        candidates.sort()
        return [aid for _, aid in candidates[:limit]]

    async def stats(self, user_id: int, stale_before: datetime):
        eligible = [
            a["id"] for a in self.articles.articles.values()
            if a["user_id"] == user_id and a["filter_status"] == "passed" and a["process_status"] == "completed"
        ]
        fresh = sum(1 for aid in eligible if aid in self.updated and self.updated[aid] >= stale_before)
        stale = sum(1 for aid in eligible if aid in self.updated and self.updated[aid] < stale_before)
        return RefreshStats(total=len(eligible), fresh=fresh, stale=stale, missing=len(eligible) - fresh - stale)


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

def text_vector(text: str, dim: int = 8) -> list[float]:
    """按字符哈希落桶的确定性向量，文本相同则向量相同"""
    vec = [0.0] * dim
    for ch in text.lower():
        if ch.isalnum():
            vec[ord(ch) % dim] += 1.0
    return vec if any(vec) else [1.0] + [0.0] * (dim - 1)


class FakeEmbedder(EmbeddingPort):

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls: list[list[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text: str, user_id: int) -> list[float]:
        return (await self.embed_batch([text], user_id))[0]

    async def embed_batch(self, texts: list[str], user_id: int) -> list[list[float]]:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return [text_vector(t) for t in texts]
        finally:
            self.in_flight -= 1


# ---------------------------------------------------------------------------
# 向量库
# ---------------------------------------------------------------------------

class FakeVectorStore(VectorStorePort):
    """检索服务测试用：query 返回预置命中，或抛出预置异常"""

    def __init__(self, hits: list[VectorHit] | None = None, error: Exception | None = None):
        self.hits = hits or []
        self.error = error
        self.records: dict[str, dict[str, Any]] = {}
        self.queries: list[int] = []
        self.removed: list[str] = []

    async def query(self, embedding, top_k, filter=None):
        self.queries.append(top_k)
        if self.error is not None:
            raise self.error
        return sorted(self.hits, key=lambda h: h.score, reverse=True)[:top_k]

    async def upsert(self, ids, embeddings, metadatas, documents):
        if self.error is not None:
            raise self.error
        for i, e, m, d in zip(ids, embeddings, metadatas, documents):
            self.records[i] = {"embedding": e, "metadata": m, "document": d}
        return len(ids)

    async def remove(self, ids):
        if self.error is not None:
            raise self.error
        for i in ids:
            self.records.pop(i, None)
            self.removed.append(i)
        return len(ids)


class FakeStoreProvider(VectorStoreProvider):

    def __init__(self, store: VectorStorePort):
        self.store = store

    async def for_user(self, user_id: int) -> VectorStorePort:
        return self.store


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(x * x for x in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class FakeCollection:
    """模拟 pymilvus Collection 的 upsert / search / delete，分数语义与 Milvus 一致"""

    def __init__(self, search_error: Exception | None = None):
        self.rows: dict[str, dict[str, Any]] = {}
        self.search_error = search_error
        self.exprs: list[str] = []

    def load(self):
        pass

    def flush(self):
        pass

    def upsert(self, data):
        ids, user_ids, article_ids, documents, metadatas, embeddings = data
        for row in zip(ids, user_ids, article_ids, documents, metadatas, embeddings):
            self.rows[row[0]] = {
                "id": row[0],
                "user_id": row[1],
                "article_id": row[2],
                "document": row[3],
                "metadata": row[4],
                "embedding": row[5],
            }

    def delete(self, expr):
        ids = json.loads(expr.split(" in ", 1)[1])
        count = 0
        for i in ids:
            if self.rows.pop(i, None) is not None:
                count += 1
        return SimpleNamespace(delete_count=count)

    def search(self, data, anns_field, param, limit, expr, output_fields):
        if self.search_error is not None:
            raise self.search_error
        self.exprs.append(expr)
        user_id = int(re.search(r"user_id == (\d+)", expr).group(1))
        metric = param["metric_type"]
        query = data[0]
        scored = []
        for row in self.rows.values():
            if row["user_id"] != user_id:
                continue
            if metric == "COSINE":
                s = _cosine(query, row["embedding"])
            elif metric == "IP":
                s = sum(x * y for x, y in zip(query, row["embedding"]))
            else:
                s = sum((x - y) ** 2 for x, y in zip(query, row["embedding"]))
            scored.append((s, row))
        scored.sort(key=lambda x: x[0], reverse=(metric != "L2"))
        hits = [
            SimpleNamespace(
                id=row["id"],
                distance=s,
                entity={"article_id": row["article_id"], "document": row["document"], "metadata": row["metadata"]},
            )
            for s, row in scored[:limit]
        ]
        return [hits]


# ---------------------------------------------------------------------------
# fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def articles() -> FakeArticleRepository:
    return FakeArticleRepository()


@pytest.fixture
def related_repo(articles) -> FakeRelatedRepository:
    return FakeRelatedRepository(articles)


@pytest.fixture
def cache(related_repo) -> RelatedCache:
    return RelatedCache(related_repo)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


def hit(article_id: int, score: float, user_id: int = 1) -> VectorHit:
    return VectorHit(id=f"{user_id}:{article_id}", article_id=article_id, score=score, metadata={"article_id": article_id})

