from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from retrieval.conftest import NOW, FakeEmbedder, FakeStoreProvider, FakeVectorStore, hit
from retrieval.errors import VectorBackendError
from retrieval.facade import RetrievalFacade
from retrieval.indexer import IndexerQueue
from retrieval.refresh import RelatedRefresher
from retrieval.service import SearchService
from retrieval.tasks import RefreshTaskQueue


@pytest.fixture
def store():
    return FakeVectorStore()


@pytest_asyncio.fixture
async def facade(articles, cache, store):
    embedder = FakeEmbedder()
    stores = FakeStoreProvider(store)
    service = SearchService(articles=articles, embedder=embedder, stores=stores, cache=cache)
    refresher = RelatedRefresher(related=service, embedder=embedder, stores=stores, articles=articles, cache=cache)
    f = RetrievalFacade(
        service=service,
        indexer=IndexerQueue(articles, embedder, stores),
        cache=cache,
        refresher=refresher,
        refresh_tasks=RefreshTaskQueue(refresher, retry_delay=0.01),
        articles=articles,
    )
    yield f
    await f.refresh_tasks.close()
    await f.indexer.close()


@pytest.mark.asyncio
async def test_delete_removes_article_from_every_cache_entry(facade, articles, related_repo, store):
    for aid in range(1, 9):
        articles.add(aid, title=f"paper {aid}")
    await facade.index_article(5, 1)
    related_repo.seed(1, [(5, 0.9), (2, 0.8), (3, 0.7)], NOW)
    related_repo.seed(2, [(1, 0.9), (5, 0.8), (3, 0.7)], NOW)
    related_repo.seed(3, [(1, 0.9), (2, 0.8), (5, 0.7)], NOW)
    related_repo.seed(5, [(1, 0.9), (2, 0.8)], NOW)
    related_repo.seed(6, [(7, 0.9)], NOW)

    result = await facade.delete_article(5, 1)

    assert result.success
    assert "1:5" not in store.records
    assert store.removed == ["1:5"]
    assert 5 not in related_repo.rows
    for items in related_repo.rows.values():
        assert all(i.related_article_id != 5 for i in items)
    assert [i.related_article_id for i in related_repo.rows[2]] == [1, 3]
    assert [i.related_article_id for i in related_repo.rows[6]] == [7]


@pytest.mark.asyncio
async def test_delete_cleans_cache_even_if_vector_removal_fails(facade, articles, related_repo, store):
    articles.add(1, title="paper")
    related_repo.seed(2, [(1, 0.9)], NOW)
    store.error = VectorBackendError("milvus down")

    result = await facade.delete_article(1, 1)

    assert not result.success
    assert related_repo.rows[2] == []


@pytest.mark.asyncio
async def test_get_related_articles_returns_display_view(facade, articles, related_repo):
    articles.add(10, title="source")
    articles.add(11, title="neighbour", summary="close match", source_name="Nature")
    related_repo.seed(10, [(11, 0.82)], NOW)

    related = await facade.get_related_articles(10, 1)

    assert len(related) == 1
    assert (related[0].id, related[0].title, related[0].source_name) == (11, "neighbour", "Nature")
    assert related[0].score == pytest.approx(0.82)


@pytest.mark.asyncio
async def test_process_vector_stages_marks_both_stages(facade, articles, related_repo, store):
    articles.add(10, title="new paper", summary="retrieval")
    articles.add(11, title="older paper")
    store.hits = [hit(10, 1.0), hit(11, 0.8)]

    result = await facade.process_vector_stages(10, 1)
    await facade.refresh_tasks.join()

    assert result.success
    assert "1:10" in store.records
    assert [(s, st) for _, s, st, _ in articles.stages] == [
        ("vector", "processing"),
        ("vector", "completed"),
        ("related", "processing"),
        ("related", "completed"),
    ]
    assert [i.related_article_id for i in related_repo.rows[10]] == [11]
    # 增量刷新事件重算了相似旧文章的相关列表
    assert 11 in related_repo.saves
    assert facade.refresh_tasks.completed == 1


@pytest.mark.asyncio
async def test_process_vector_stages_vector_failure_is_not_fatal(facade, articles, store):
    articles.add(10, title="new paper")
    store.error = VectorBackendError("milvus down")

    result = await facade.process_vector_stages(10, 1)

    assert not result.success
    assert articles.stages[-1][1:3] == ("vector", "failed")
    assert "milvus down" in articles.stages[-1][3]
    assert all(stage != "related" for _, stage, _, _ in articles.stages)


@pytest.mark.asyncio
async def test_process_vector_stages_related_failure_marked(facade, articles, related_repo, store):
    articles.add(10, title="new paper")
    articles.add(11, title="older paper")
    store.hits = [hit(11, 0.8)]
    related_repo.save_error = RuntimeError("db write failed")

    result = await facade.process_vector_stages(10, 1)
    await facade.refresh_tasks.join()

    assert result.success
    assert articles.stages[-1][1:3] == ("related", "failed")


@pytest.mark.asyncio
async def test_refresh_stats_and_needing_refresh(facade, articles, related_repo):
    now = datetime.now(timezone.utc)
    articles.add(1, title="a")
    articles.add(2, title="b")
    articles.add(3, title="c")
    related_repo.seed(1, [], now - timedelta(days=20))
    related_repo.seed(2, [], now)

    assert await facade.get_articles_needing_refresh(1) == [1]
    stats = await facade.get_refresh_stats(1)
    assert (stats.total, stats.fresh, stats.stale, stats.missing) == (3, 1, 1, 1)
