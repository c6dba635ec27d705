"""
文章检索 Worker
组装检索子系统 (向量化队列、检索服务、相关文章缓存刷新与定时调度) 并常驻运行

用法（在 backend 目录下）:
  python -m main
"""
import asyncio
import logging
import sys
from dataclasses import dataclass

from dotenv import load_dotenv

# 配置检索模块日志，确保 [Indexer] / [Search] / [Related] 输出到终端
for _name in (
    "retrieval.embedding",
    "retrieval.vector_store",
    "retrieval.indexer",
    "retrieval.reranker",
    "retrieval.service",
    "retrieval.refresh",
    "retrieval.tasks",
    "retrieval.scheduler",
    "retrieval.facade",
):
    _log = logging.getLogger(_name)
    _log.setLevel(logging.INFO)
    if not _log.handlers:
        _h = logging.StreamHandler(sys.stdout)
        _h.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        _log.addHandler(_h)

# 必须先加载 .env，再导入依赖环境变量的模块
load_dotenv()

from config import SearchDefaults, refresh_settings_from_env, scheduler_config_from_env
from db.article_repository import article_repository
from db.related_repository import related_repository
from db.settings_repository import settings_repository
from retrieval.embedding import EmbeddingClient
from retrieval.facade import RetrievalFacade
from retrieval.indexer import IndexerQueue
from retrieval.refresh import RelatedRefresher
from retrieval.related_cache import RelatedCache
from retrieval.reranker import Reranker
from retrieval.scheduler import RelatedScheduler
from retrieval.service import SearchService
from retrieval.tasks import RefreshTaskQueue
from retrieval.vector_store import VectorStoreRegistry


@dataclass
class Services:
    facade: RetrievalFacade
    scheduler: RelatedScheduler
    registry: VectorStoreRegistry


def build_services() -> Services:
    """组装全部组件；不启动任何后台任务"""
    refresh_settings = refresh_settings_from_env()
    embedder = EmbeddingClient()
    registry = VectorStoreRegistry(settings_repository.get_vector_settings)
    cache = RelatedCache(related_repository, stale_days=refresh_settings.stale_days)
    service = SearchService(
        articles=article_repository,
        embedder=embedder,
        stores=registry,
        cache=cache,
        reranker=Reranker(),
        defaults=SearchDefaults(),
    )
    indexer = IndexerQueue(article_repository, embedder, registry)
    refresher = RelatedRefresher(
        related=service,
        embedder=embedder,
        stores=registry,
        articles=article_repository,
        cache=cache,
        settings=refresh_settings,
    )
    refresh_tasks = RefreshTaskQueue(refresher)
    scheduler = RelatedScheduler(
        refresher,
        cache,
        article_repository.list_active_user_ids,
        config=scheduler_config_from_env(),
    )
    facade = RetrievalFacade(
        service=service,
        indexer=indexer,
        cache=cache,
        refresher=refresher,
        refresh_tasks=refresh_tasks,
        articles=article_repository,
    )
    return Services(facade=facade, scheduler=scheduler, registry=registry)


async def run() -> None:
    services = build_services()
    facade = services.facade
    facade.indexer.start()
    facade.refresh_tasks.start()
    services.scheduler.start()
    print("🚀 检索 Worker 已启动 (Ctrl+C 退出)")
    try:
        await asyncio.Event().wait()
    finally:
        await services.scheduler.stop()
        await facade.refresh_tasks.close()
        await facade.indexer.close()
        services.registry.close()
        print("👋 检索 Worker 已关闭")


if __name__ == "__main__":
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
