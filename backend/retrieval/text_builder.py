"""
文章向量化文本构建

纯函数：同样的 {title, summary, content} 总是得到同样的文本。
content 优先取 markdown_content，其次 content；空字段整段省略。
"""
from __future__ import annotations

from typing import Any


def _field(article: Any, key: str) -> str:
    if article is None:
        return ""
    if isinstance(article, dict):
        val = article.get(key)
    else:
        val = getattr(article, key, None)
    if val is None:
        return ""
    return str(val).strip()


def build_vector_text(article: Any) -> str:
    """
    构建用于 embedding 的文本:

        TITLE: ...
        SUMMARY: ...
        CONTENT: ...
    """
    title = _field(article, "title")
    summary = _field(article, "summary")
    content = _field(article, "markdown_content") or _field(article, "content")

    parts: list[str] = []
    if title:
        parts.append(f"TITLE: {title}")
    if summary:
        parts.append(f"SUMMARY: {summary}")
    if content:
        parts.append(f"CONTENT: {content}")
    return "\n".join(parts)


def build_vector_id(article_id: int, user_id: int) -> str:
    return f"{user_id}:{article_id}"


def build_vector_metadata(article: Any, user_id: int) -> dict[str, Any]:
    """向量记录的元数据；published_at 统一存 ISO 字符串"""
    published_at = article.get("published_at") if isinstance(article, dict) else getattr(article, "published_at", None)
    if published_at is not None and hasattr(published_at, "isoformat"):
        published_at = published_at.isoformat()
    article_id = article.get("id") if isinstance(article, dict) else getattr(article, "id", 0)
    return {
        "article_id": int(article_id or 0),
        "user_id": int(user_id),
        "title": _field(article, "title"),
        "published_at": published_at,
        "source_name": _field(article, "source_name") or None,
        "summary": _field(article, "summary") or None,
    }
