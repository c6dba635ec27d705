"""
Reranker 精排服务

对语义检索已选出的 top-limit 候选做重排，只改变顺序与分数，不增删候选。

配置: llm_configs(config_type='rerank') 优先，其次 RERANK_BASE_URL / RERANK_API_KEY 环境变量；
都没有时不启用。请求 POST {base_url}/rerank {model, query, documents, top_n}。
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

import httpx

from config import RerankConfig, rerank_config_from_env
from db.llm_config_repository import llm_config_repository

from .errors import RerankError
from .models import SearchResult

logger = logging.getLogger("retrieval.reranker")

ConfigLoader = Callable[[int], Awaitable[Optional[RerankConfig]]]


async def load_user_rerank_config(user_id: int) -> RerankConfig | None:
    row = await llm_config_repository.get_active(user_id, "rerank")
    if row and row.get("base_url"):
        return RerankConfig(
            base_url=row["base_url"],
            api_key=row.get("api_key") or "",
            model_name=row.get("model") or "jina-reranker-v2-base-multilingual",
            timeout=(row.get("timeout_ms") or 30000) / 1000.0,
        )
    return rerank_config_from_env()


def apply_rerank(candidates: list[SearchResult], ranking: list[tuple[int, float]]) -> list[SearchResult]:
    """
    按 ranking [(index, score), ...] 重排候选。

    越界或重复的 index 忽略；未出现在 ranking 中的候选按原顺序追加在末尾。
    """
    reordered: list[SearchResult] = []
    seen: set[int] = set()
    for idx, score in ranking:
        if not isinstance(idx, int) or idx < 0 or idx >= len(candidates) or idx in seen:
            continue
        seen.add(idx)
        reordered.append(candidates[idx].model_copy(update={"score": float(score)}))
    for i, cand in enumerate(candidates):
        if i not in seen:
            reordered.append(cand)
    return reordered


class Reranker:

    def __init__(
        self,
        config_loader: ConfigLoader = load_user_rerank_config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config_loader = config_loader
        self._transport = transport

    async def get_config(self, user_id: int) -> RerankConfig | None:
        return await self._config_loader(user_id)

    async def rerank(
        self,
        query: str,
        documents: list[str],
        config: RerankConfig,
        top_n: int | None = None,
    ) -> list[tuple[int, float]]:
        """返回 [(original_index, score), ...] 按 score 降序"""
        if not documents:
            return []
        url = config.base_url.rstrip("/")
        if not url.endswith("/rerank"):
            url = f"{url}/rerank"
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        try:
            async with httpx.AsyncClient(timeout=config.timeout, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    headers=headers,
                    json={
                        "model": config.model_name,
                        "query": query,
                        "documents": documents,
                        "top_n": top_n or len(documents),
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise RerankError(f"rerank 请求失败: {e}") from e

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise RerankError("rerank 响应缺少 results")

        output: list[tuple[int, float]] = []
        for r in results:
            if not isinstance(r, dict):
                continue
            idx = r.get("index", -1)
            score = r.get("relevance_score", r.get("score"))
            if not isinstance(idx, int) or score is None:
                continue
            output.append((idx, float(score)))
        output.sort(key=lambda x: x[1], reverse=True)
        return output

    async def maybe_rerank(self, query: str, candidates: list[SearchResult], user_id: int) -> list[SearchResult]:
        """启用时重排候选；失败记录日志并保持原顺序"""
        if len(candidates) < 2:
            return candidates
        config = await self.get_config(user_id)
        if config is None:
            return candidates
        documents = [
            "\n".join(p for p in (c.metadata.title, c.metadata.summary or "") if p) or str(c.article_id)
            for c in candidates
        ]
        try:
            ranking = await self.rerank(query, documents, config, top_n=len(candidates))
        except RerankError as e:
            logger.warning(f"[Search] Rerank 失败，保持原顺序: user={user_id}, err={e}")
            return candidates
        return apply_rerank(candidates, ranking)
