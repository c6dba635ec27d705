"""数据库访问层"""
from .article_repository import article_repository
from .llm_config_repository import llm_config_repository
from .related_repository import related_repository
from .settings_repository import settings_repository

__all__ = [
    "article_repository",
    "llm_config_repository",
    "related_repository",
    "settings_repository",
]
