"""
关键词检索辅助函数

- 查询按空白切词，每个词必须命中 title / summary / content 之一 (词之间 AND，字段之间 OR)
- 相关度: 标题包含整句 +0.5，标题以整句开头再 +0.3，摘要包含整句 +0.2，截断到 [0, 1]
"""
from __future__ import annotations

from typing import Any

KEYWORD_FIELDS = ("title", "summary", "content", "markdown_content")


def split_terms(query: str) -> list[str]:
    return [t for t in (query or "").split() if t]


def escape_like(term: str) -> str:
    """转义 LIKE 通配符，ESCAPE 字符为反斜杠"""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_like_clause(terms: list[str], start_index: int = 1) -> tuple[str, list[str]]:
    """
    生成 AND-of-ORs 的 ILIKE 子句及参数 ($start_index 开始编号)。

    返回 ("", []) 表示没有可用的词。
    """
    clauses: list[str] = []
    params: list[str] = []
    idx = start_index
    for term in terms:
        ors = " OR ".join(
            f"COALESCE(a.{col}, '') ILIKE ${idx} ESCAPE '\\'" for col in KEYWORD_FIELDS
        )
        clauses.append(f"({ors})")
        params.append(f"%{escape_like(term)}%")
        idx += 1
    return " AND ".join(clauses), params


def _text(record: Any, key: str) -> str:
    if isinstance(record, dict):
        val = record.get(key)
    else:
        val = getattr(record, key, None)
    return str(val) if val is not None else ""


def matches_all_terms(record: Any, terms: list[str]) -> bool:
    """与 build_like_clause 同语义的内存版判定"""
    if not terms:
        return False
    haystacks = [_text(record, f).lower() for f in KEYWORD_FIELDS]
    for term in terms:
        t = term.lower()
        if not any(t in h for h in haystacks):
            return False
    return True


def keyword_relevance(record: Any, query: str) -> float:
    q = (query or "").strip().lower()
    if not q:
        return 0.0
    title = _text(record, "title").lower()
    summary = _text(record, "summary").lower()

    score = 0.0
    if q in title:
        score += 0.5
        if title.startswith(q):
            score += 0.3
    if q in summary:
        score += 0.2
    return max(0.0, min(1.0, score))
