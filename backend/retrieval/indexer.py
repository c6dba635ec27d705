"""
文章向量化队列

所有写入 (索引 / 删除) 进入同一个 asyncio.Queue，由单个 worker 按 FIFO 顺序逐个执行，
保证同一用户的向量写入不会并发。

- 任务失败只记录日志并通过 on_complete / 返回的 Future 上报，不跨队列抛出，也不自动重试
- 文本未变化的重复索引直接跳过 embedding 与写入
"""
from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .models import IndexResult
from .ports import EmbeddingPort, VectorStoreProvider
from .text_builder import build_vector_id, build_vector_metadata, build_vector_text

logger = logging.getLogger("retrieval.indexer")

BATCH_SIZE = 32

OnComplete = Callable[[IndexResult], Any]


@dataclass
class _Job:
    kind: str  # index / delete
    article_ids: list[int]
    user_id: int
    on_complete: Optional[OnComplete]
    future: asyncio.Future
    batch: bool = False
    results: list[IndexResult] = field(default_factory=list)


def _text_digest(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class IndexerQueue:

    def __init__(
        self,
        articles: Any,
        embedder: EmbeddingPort,
        stores: VectorStoreProvider,
        batch_size: int = BATCH_SIZE,
    ):
        self._articles = articles
        self._embedder = embedder
        self._stores = stores
        self._batch_size = max(1, batch_size)
        self._queue: asyncio.Queue[_Job | None] | None = None
        self._worker: asyncio.Task | None = None
        # vector_id -> (写入的 store, 文本摘要)；store 换了 (如集合/度量变更后重建) 就不再跳过
        self._indexed: dict[str, tuple[Any, str]] = {}

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="retrieval-indexer")
        logger.info("[Indexer] worker 已启动")

    async def join(self) -> None:
        """等待队列中已有任务全部完成"""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._worker is None:
            return
        if self._queue is not None:
            await self._queue.put(None)
        await self._worker
        self._worker = None
        logger.info("[Indexer] worker 已停止")

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ------------------------------------------------------------------
    # 入队
    # ------------------------------------------------------------------

    def _enqueue(self, job: _Job) -> asyncio.Future:
        self.start()
        assert self._queue is not None
        self._queue.put_nowait(job)
        return job.future

    def index_article(
        self,
        article_id: int,
        user_id: int,
        on_complete: Optional[OnComplete] = None,
    ) -> asyncio.Future:
        """入队单篇索引任务，返回 Future[IndexResult]"""
        future = asyncio.get_running_loop().create_future()
        return self._enqueue(_Job("index", [article_id], user_id, on_complete, future))

    def index_articles(
        self,
        article_ids: list[int],
        user_id: int,
        on_complete: Optional[OnComplete] = None,
    ) -> asyncio.Future:
        """入队批量索引任务，返回 Future[list[IndexResult]]；on_complete 对每篇文章各调用一次"""
        future = asyncio.get_running_loop().create_future()
        return self._enqueue(_Job("index", list(article_ids), user_id, on_complete, future, batch=True))

    def delete_article(
        self,
        article_id: int,
        user_id: int,
        on_complete: Optional[OnComplete] = None,
    ) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        return self._enqueue(_Job("delete", [article_id], user_id, on_complete, future))

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self._execute(job)
            except Exception as e:
                logger.error(f"[Indexer] 任务异常: kind={job.kind}, articles={job.article_ids}, err={e}")
                if not job.future.done():
                    failed = [IndexResult(article_id=a, success=False, error=str(e)) for a in job.article_ids]
                    job.future.set_result(failed if job.batch else failed[0])
            finally:
                self._queue.task_done()

    async def _execute(self, job: _Job) -> None:
        if job.kind == "delete":
            results = [await self._delete_one(job.article_ids[0], job.user_id)]
        else:
            results = await self._index_many(job.article_ids, job.user_id)

        for result in results:
            await self._notify(job.on_complete, result)
        if not job.future.done():
            job.future.set_result(results if job.batch else results[0])

    async def _notify(self, callback: Optional[OnComplete], result: IndexResult) -> None:
        if callback is None:
            return
        try:
            ret = callback(result)
            if inspect.isawaitable(ret):
                await ret
        except Exception as e:
            logger.error(f"[Indexer] on_complete 回调异常: article={result.article_id}, err={e}")

    async def _index_many(self, article_ids: list[int], user_id: int) -> list[IndexResult]:
        results: dict[int, IndexResult] = {}
        pending: list[tuple[int, str, str, dict[str, Any]]] = []
        try:
            store = await self._stores.for_user(user_id)
        except Exception as e:
            logger.error(f"[Indexer] 获取向量库失败: user={user_id}, err={e}")
            return [IndexResult(article_id=a, success=False, error=str(e)) for a in article_ids]

        for article_id in article_ids:
            try:
                article = await self._articles.get_by_id(article_id, user_id)
            except Exception as e:
                logger.error(f"[Indexer] 读取文章失败: article={article_id}, user={user_id}, err={e}")
                results[article_id] = IndexResult(article_id=article_id, success=False, error=str(e))
                continue
            if not article:
                results[article_id] = IndexResult(article_id=article_id, success=False, error="article not found")
                continue
            text = build_vector_text(article)
            if not text:
                results[article_id] = IndexResult(article_id=article_id, success=False, error="empty text")
                continue
            vector_id = build_vector_id(article_id, user_id)
            if self._indexed.get(vector_id) == (store, _text_digest(text)):
                logger.info(f"[Indexer] 文本未变化，跳过: {vector_id}")
                results[article_id] = IndexResult(article_id=article_id, success=True, skipped=True)
                continue
            metadata = build_vector_metadata({**article, "id": article_id}, user_id)
            pending.append((article_id, vector_id, text, metadata))

        for i in range(0, len(pending), self._batch_size):
            chunk = pending[i:i + self._batch_size]
            try:
                embeddings = await self._embedder.embed_batch([c[2] for c in chunk], user_id)
                await store.upsert(
                    ids=[c[1] for c in chunk],
                    embeddings=embeddings,
                    metadatas=[c[3] for c in chunk],
                    documents=[c[2] for c in chunk],
                )
            except Exception as e:
                ids = [c[0] for c in chunk]
                logger.error(f"[Indexer] 向量化失败: articles={ids}, user={user_id}, err={e}")
                for article_id, *_ in chunk:
                    results[article_id] = IndexResult(article_id=article_id, success=False, error=str(e))
                continue
            for article_id, vector_id, text, _ in chunk:
                self._indexed[vector_id] = (store, _text_digest(text))
                results[article_id] = IndexResult(article_id=article_id, success=True)
            logger.info(f"[Indexer] 已写入 {len(chunk)} 条向量: user={user_id}")

        return [results[a] for a in article_ids]

    async def _delete_one(self, article_id: int, user_id: int) -> IndexResult:
        vector_id = build_vector_id(article_id, user_id)
        try:
            store = await self._stores.for_user(user_id)
            await store.remove([vector_id])
        except Exception as e:
            logger.error(f"[Indexer] 删除向量失败: {vector_id}, err={e}")
            return IndexResult(article_id=article_id, success=False, error=str(e))
        self._indexed.pop(vector_id, None)
        logger.info(f"[Indexer] 已删除向量: {vector_id}")
        return IndexResult(article_id=article_id, success=True)
