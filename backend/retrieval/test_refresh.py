import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from tenacity import RetryCallState

from config import RefreshSettings, SchedulerConfig
from retrieval.conftest import NOW, FakeEmbedder, FakeStoreProvider, FakeVectorStore, hit
from retrieval.errors import RefreshError, VectorBackendError
from retrieval.models import RelatedCacheEntry, SearchResult
from retrieval.ports import RelatedRefreshPort
from retrieval.refresh import RelatedRefresher
from retrieval.related_cache import is_fresh
from retrieval.scheduler import RelatedScheduler
from retrieval.tasks import RefreshTask, RefreshTaskQueue


class RecordingRefresher(RelatedRefreshPort):
    """记录刷新调用，可让指定文章失败，并统计最大在途数量"""

    def __init__(self, fail: set[int] | None = None, delay: float = 0.01):
        self.fail = fail or set()
        self.delay = delay
        self.calls: list[tuple[int, int, int]] = []

    async def refresh_related(self, article_id, user_id, limit):
        self.calls.append((article_id, user_id, limit))
        await asyncio.sleep(self.delay)
        if article_id in self.fail:
            raise RuntimeError(f"refresh {article_id} failed")
        return [SearchResult(article_id=article_id + 1000, score=0.9)]


class InFlightCounter:

    def __init__(self):
        self.current = 0
        self.peak = 0

    def start(self, article_id):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def end(self, article_id):
        self.current -= 1


def _refresher(articles, cache, related, store=None, embedder=None, counter=None):
    return RelatedRefresher(
        related=related,
        embedder=embedder or FakeEmbedder(),
        stores=FakeStoreProvider(store or FakeVectorStore()),
        articles=articles,
        cache=cache,
        settings=RefreshSettings(),
        on_refresh_start=counter.start if counter else None,
        on_refresh_end=counter.end if counter else None,
    )


# ---------------------------------------------------------------------------
# 新鲜度
# ---------------------------------------------------------------------------

def test_freshness_threshold():
    entry = RelatedCacheEntry(article_id=1, items=[], updated_at=NOW - timedelta(days=6))
    assert is_fresh(entry, now=NOW)
    entry = RelatedCacheEntry(article_id=1, items=[], updated_at=NOW - timedelta(days=8))
    assert not is_fresh(entry, now=NOW)


@pytest.mark.asyncio
async def test_periodic_refresh_selects_only_stale_entries(articles, related_repo, cache):
    articles.add(1, title="old")
    articles.add(2, title="recent")
    articles.add(3, title="old but rejected", filter_status="rejected")
    related_repo.seed(1, [(2, 0.7)], NOW - timedelta(days=8))
    related_repo.seed(2, [(1, 0.7)], NOW - timedelta(days=6))
    related_repo.seed(3, [(1, 0.7)], NOW - timedelta(days=30))
    related = RecordingRefresher()

    results = await _refresher(articles, cache, related).batch_refresh(1, stale_before=NOW - timedelta(days=7))

    assert [r.article_id for r in results] == [1]
    assert related.calls == [(1, 1, 5)]


@pytest.mark.asyncio
async def test_periodic_refresh_oldest_first_and_limited(articles, related_repo, cache):
    for aid in range(1, 6):
        articles.add(aid, title=f"a{aid}")
        related_repo.seed(aid, [], NOW - timedelta(days=10 + aid))
    related = RecordingRefresher()

    results = await _refresher(articles, cache, related).batch_refresh(1, limit=3, stale_before=NOW - timedelta(days=7))

    assert [r.article_id for r in results] == [5, 4, 3]


# ---------------------------------------------------------------------------
# 并发上限
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrency_cap_over_ten_stale_articles(articles, related_repo, cache):
    for aid in range(1, 11):
        articles.add(aid, title=f"a{aid}")
        related_repo.seed(aid, [], NOW - timedelta(days=20))
    counter = InFlightCounter()
    related = RecordingRefresher(delay=0.02)

    results = await _refresher(articles, cache, related, counter=counter).batch_refresh(
        1, stale_before=NOW - timedelta(days=7)
    )

    assert len(results) == 10
    assert counter.peak == 3
    assert counter.current == 0


@pytest.mark.asyncio
async def test_batches_settle_before_next_batch_starts(articles, cache):
    events: list[tuple[str, int]] = []

    class Ordered(RecordingRefresher):
        async def refresh_related(self, article_id, user_id, limit):
            events.append(("start", article_id))
            await asyncio.sleep(0.01 * (article_id % 3 + 1))
            events.append(("end", article_id))
            return []

    refresher = _refresher(articles, cache, Ordered())
    await refresher.refresh_many(list(range(1, 7)), user_id=1)

    first_batch_ends = [i for i, e in enumerate(events) if e[0] == "end" and e[1] in (1, 2, 3)]
    second_batch_starts = [i for i, e in enumerate(events) if e[0] == "start" and e[1] in (4, 5, 6)]
    assert max(first_batch_ends) < min(second_batch_starts)


@pytest.mark.asyncio
async def test_one_failure_does_not_abort_batch(articles, cache):
    related = RecordingRefresher(fail={2})
    refresher = _refresher(articles, cache, related)

    results = await refresher.refresh_many([1, 2, 3, 4], user_id=1)

    assert [(r.article_id, r.success) for r in results] == [(1, True), (2, False), (3, True), (4, True)]
    assert "refresh 2 failed" in results[1].error


# ---------------------------------------------------------------------------
# 增量刷新
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_incremental_refresh_picks_similar_existing_articles(articles, cache):
    articles.add(50, title="new arrival", summary="fresh results")
    store = FakeVectorStore([hit(50, 1.0), hit(0, 0.99), hit(1, 0.9), hit(2, 0.8), hit(3, 0.6), hit(4, 0.4)])
    related = RecordingRefresher()
    refresher = _refresher(articles, cache, related, store=store)

    results = await refresher.incremental_refresh(50, 1, top_n=2)

    assert [r.article_id for r in results] == [1, 2]
    assert store.queries == [4]
    assert all(limit == 5 for _, _, limit in related.calls)


@pytest.mark.asyncio
async def test_incremental_refresh_min_score(articles, cache):
    articles.add(50, title="new arrival")
    store = FakeVectorStore([hit(1, 0.9), hit(2, 0.5), hit(3, 0.49)])
    refresher = _refresher(articles, cache, RecordingRefresher(), store=store)

    results = await refresher.incremental_refresh(50, 1)

    assert [r.article_id for r in results] == [1, 2]


@pytest.mark.asyncio
async def test_incremental_discovery_failure(articles, cache):
    articles.add(50, title="new arrival")
    store = FakeVectorStore(error=VectorBackendError("down"))
    refresher = _refresher(articles, cache, RecordingRefresher(), store=store)

    assert await refresher.incremental_refresh(50, 1) == []
    with pytest.raises(RefreshError):
        await refresher.incremental_refresh(50, 1, raise_errors=True)


# ---------------------------------------------------------------------------
# 任务队列
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_task_queue_retries_then_succeeds(articles, cache):
    articles.add(50, title="new arrival")
    store = FakeVectorStore(error=VectorBackendError("flaky"))
    related = RecordingRefresher()
    refresher = _refresher(articles, cache, related, store=store)
    queue = RefreshTaskQueue(refresher, max_retries=3, retry_delay=0.01)

    original_query = store.query
    attempts = {"n": 0}

    async def flaky_query(embedding, top_k, filter=None):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise VectorBackendError("flaky")
        store.error = None
        store.hits = [hit(1, 0.9)]
        return await original_query(embedding, top_k, filter)

    store.query = flaky_query
    task = queue.enqueue(50, 1)
    await queue.join()

    assert task.attempts == 3
    assert queue.completed == 1
    assert queue.failed == []
    assert [c[0] for c in related.calls] == [1]
    await queue.close()


@pytest.mark.asyncio
async def test_task_queue_dead_letters_after_retries(articles, cache):
    articles.add(50, title="new arrival")
    refresher = _refresher(articles, cache, RecordingRefresher(), store=FakeVectorStore(error=VectorBackendError("down")))
    queue = RefreshTaskQueue(refresher, max_retries=2, retry_delay=0.01)

    task = queue.enqueue(50, 1)
    await queue.join()

    assert queue.failed == [task]
    assert task.attempts == 3
    assert "down" in task.error
    await queue.close()


def test_task_queue_backoff_doubles_from_retry_delay(articles, cache):
    queue = RefreshTaskQueue(_refresher(articles, cache, RecordingRefresher()), max_retries=3, retry_delay=5)
    retrying = queue._retrying(RefreshTask(article_id=1, user_id=1))
    state = RetryCallState(retrying, fn=None, args=(), kwargs={})

    waits = []
    for n in (1, 2, 3):
        state.attempt_number = n
        waits.append(retrying.wait(state))

    assert waits == [5, 10, 20]
    assert retrying.stop.max_attempt_number == 4


@pytest.mark.asyncio
async def test_task_queue_does_not_retry_unexpected_errors(articles, cache):
    articles.add(50, title="new arrival")
    refresher = _refresher(articles, cache, RecordingRefresher())

    async def broken(*args, **kwargs):
        raise TypeError("bug")

    refresher.incremental_refresh = broken
    queue = RefreshTaskQueue(refresher, max_retries=3, retry_delay=0.01)

    task = queue.enqueue(50, 1)
    await queue.join()

    assert task.attempts == 1
    assert queue.failed == [task]
    await queue.close()


# ---------------------------------------------------------------------------
# 定时调度
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_scheduler_run_once_covers_all_users(articles, related_repo, cache):
    articles.add(1, user_id=1, title="u1")
    articles.add(2, user_id=2, title="u2")
    articles.add(3, user_id=2, title="u2 fresh")
    old = NOW - timedelta(days=30)
    related_repo.seed(1, [], old)
    related_repo.seed(2, [], old)
    # 调度器按真实时钟判断过期
    related_repo.seed(3, [], datetime.now(timezone.utc))
    related = RecordingRefresher(fail={2})
    scheduler = RelatedScheduler(
        _refresher(articles, cache, related),
        cache,
        articles.list_active_user_ids,
        config=SchedulerConfig(batch_size=10, stale_days=7),
    )

    stats = await scheduler.run_once()

    assert (stats.total, stats.success, stats.failed) == (2, 1, 1)
    status = await scheduler.get_status(user_id=2)
    assert status.last_run_stats == stats
    assert status.last_run_time is not None
    assert status.is_running is False
    assert (status.stats.total, status.stats.fresh, status.stats.stale, status.stats.missing) == (2, 1, 1, 0)


@pytest.mark.asyncio
async def test_scheduler_start_stop_and_disabled(articles, cache):
    refresher = _refresher(articles, cache, RecordingRefresher())
    scheduler = RelatedScheduler(refresher, cache, articles.list_active_user_ids, config=SchedulerConfig(interval_seconds=3600))

    scheduler.start()
    await asyncio.sleep(0)
    assert scheduler.is_running
    assert (await scheduler.get_status()).next_run_time is not None
    await scheduler.update_config(interval_seconds=60)
    assert scheduler.is_running and scheduler.config.interval_seconds == 60
    await scheduler.stop()
    assert not scheduler.is_running

    disabled = RelatedScheduler(refresher, cache, articles.list_active_user_ids, config=SchedulerConfig(enabled=False))
    disabled.start()
    assert not disabled.is_running


@pytest.mark.asyncio
async def test_scheduler_refresh_now_single_user(articles, related_repo, cache):
    articles.add(1, user_id=1, title="u1")
    articles.add(2, user_id=2, title="u2")
    related_repo.seed(1, [], NOW - timedelta(days=30))
    related_repo.seed(2, [], NOW - timedelta(days=30))
    related = RecordingRefresher()
    scheduler = RelatedScheduler(_refresher(articles, cache, related), cache, articles.list_active_user_ids)

    stats = await scheduler.refresh_now(user_id=2)

    assert stats.total == 1
    assert related.calls == [(2, 2, 5)]
