"""
Embedding 服务封装

- OpenAI 兼容 /embeddings 接口 (AsyncOpenAI)
- 按用户解析配置: llm_configs(config_type='embedding') 优先，其次 RAG_EMBEDDING_* / OPENAI_* 环境变量
- 显式超时 + 重试 (429 / 5xx / 超时由 SDK 退避重试)
- 批量请求按 index 排序，输出与输入一一对应
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from openai import AsyncOpenAI, OpenAIError

from config import EmbeddingConfig, embedding_config_from_env
from db.llm_config_repository import llm_config_repository

from .errors import EmbeddingConfigError, EmbeddingError
from .ports import EmbeddingPort

logger = logging.getLogger("retrieval.embedding")

ConfigLoader = Callable[[int], Awaitable[Optional[EmbeddingConfig]]]


async def load_user_embedding_config(user_id: int) -> EmbeddingConfig | None:
    """llm_configs 中启用的 embedding 配置，没有则回落到环境变量"""
    row = await llm_config_repository.get_active(user_id, "embedding")
    if row:
        env_cfg = embedding_config_from_env()
        return EmbeddingConfig(
            base_url=row.get("base_url") or None,
            api_key=row.get("api_key") or "",
            model_name=row.get("model") or "text-embedding-3-small",
            timeout=(row.get("timeout_ms") or 30000) / 1000.0,
            max_retries=row.get("max_retries") if row.get("max_retries") is not None else 3,
            batch_size=env_cfg.batch_size if env_cfg else 32,
        )
    return embedding_config_from_env()


class EmbeddingClient(EmbeddingPort):
    """
    文本 -> 向量。

    AsyncOpenAI 客户端按 (base_url, api_key, timeout, max_retries) 缓存在实例上。
    """

    def __init__(
        self,
        config_loader: ConfigLoader = load_user_embedding_config,
        client_factory: Callable[..., Any] = AsyncOpenAI,
    ):
        self._config_loader = config_loader
        self._client_factory = client_factory
        self._clients: dict[tuple, Any] = {}

    async def _resolve(self, user_id: int) -> EmbeddingConfig:
        cfg = await self._config_loader(user_id)
        if cfg is None or not (cfg.api_key or cfg.base_url):
            raise EmbeddingConfigError(f"用户 {user_id} 没有可用的 embedding 配置")
        return cfg

    def _get_client(self, cfg: EmbeddingConfig) -> Any:
        key = (cfg.base_url, cfg.api_key, cfg.timeout, cfg.max_retries)
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(
                api_key=cfg.api_key or "EMPTY",
                base_url=cfg.base_url,
                timeout=cfg.timeout,
                max_retries=cfg.max_retries,
            )
            self._clients[key] = client
        return client

    async def embed(self, text: str, user_id: int) -> list[float]:
        """单条文本生成向量"""
        results = await self.embed_batch([text], user_id)
        return results[0]

    async def embed_batch(self, texts: list[str], user_id: int) -> list[list[float]]:
        """
        批量生成向量，超过 batch_size 自动分批。

        空列表直接返回；任一文本为空白抛 ValueError。
        """
        if not texts:
            return []
        cleaned = [(t or "").strip() for t in texts]
        if any(not t for t in cleaned):
            raise ValueError("embedding 输入文本不能为空")

        cfg = await self._resolve(user_id)
        client = self._get_client(cfg)
        batch_size = max(1, cfg.batch_size)
        all_embeddings: list[list[float]] = []

        for i in range(0, len(cleaned), batch_size):
            batch = cleaned[i:i + batch_size]
            kwargs: dict[str, Any] = {"model": cfg.model_name, "input": batch}
            if cfg.dimensions:
                kwargs["dimensions"] = cfg.dimensions
            try:
                resp = await client.embeddings.create(**kwargs)
            except OpenAIError as e:
                logger.warning(f"[Embedding] 调用失败: user={user_id}, model={cfg.model_name}, err={e}")
                raise EmbeddingError(f"embedding 请求失败: {e}") from e

            data = list(getattr(resp, "data", None) or [])
            if len(data) != len(batch):
                raise EmbeddingError(
                    f"embedding 返回数量不一致: expected={len(batch)}, got={len(data)}"
                )
            sorted_data = sorted(data, key=lambda x: x.index)
            all_embeddings.extend([list(d.embedding) for d in sorted_data])

        return all_embeddings
