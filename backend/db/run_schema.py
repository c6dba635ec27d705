"""
用 Python + asyncpg 执行检索子系统建表脚本 (无需 psql)。
用法（在 backend 目录下）:
  python -m db.run_schema              # 执行 db/schema_retrieval.sql
  python -m db.run_schema other.sql    # 执行指定脚本
"""
import asyncio
import os
import sys

from dotenv import load_dotenv

load_dotenv()

import asyncpg

SCHEMA_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_FILES = ["schema_retrieval.sql"]
EXPECTED_TABLES = {"rss_sources", "articles", "article_related", "article_related_state", "llm_configs", "user_settings"}


def get_dsn() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    user = os.getenv("POSTGRES_USER", "rss_tracker")
    password = os.getenv("POSTGRES_PASSWORD", "rss_tracker")
    database = os.getenv("POSTGRES_DB", "rss_tracker")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def split_statements(sql: str) -> list[str]:
    """去掉 -- 注释行与空行，按行尾分号拆分语句"""
    statements: list[str] = []
    current: list[str] = []
    for raw in sql.splitlines():
        line = raw.strip()
        if not line or line.startswith("--"):
            continue
        current.append(line)
        if line.endswith(";"):
            statements.append(" ".join(current))
            current = []
    if current:
        statements.append(" ".join(current))
    return statements


async def run_file(conn: asyncpg.Connection, filepath: str) -> int:
    with open(filepath, "r", encoding="utf-8") as f:
        statements = split_statements(f.read())
    for i, st in enumerate(statements, start=1):
        try:
            await conn.execute(st)
        except asyncpg.PostgresError as e:
            raise RuntimeError(f"执行第 {i} 条语句失败: {e}\n语句: {st[:200]}...") from e
    return len(statements)


async def main(argv: list[str]) -> None:
    names = argv or DEFAULT_FILES
    paths = [p if os.path.isabs(p) else os.path.join(SCHEMA_DIR, p) for p in names]
    try:
        conn = await asyncpg.connect(get_dsn())
    except (OSError, asyncpg.PostgresError) as e:
        print(f"连接数据库失败: {e}")
        print("请确认: 1) Postgres 已启动  2) .env 中 POSTGRES_* 正确")
        sys.exit(1)
    try:
        for path in paths:
            if not os.path.isfile(path):
                print(f"跳过（文件不存在）: {path}")
                continue
            count = await run_file(conn, path)
            print(f"执行: {os.path.basename(path)} ({count} 条语句)")
        rows = await conn.fetch("SELECT tablename FROM pg_tables WHERE schemaname = 'public'")
        missing = EXPECTED_TABLES - {r["tablename"] for r in rows}
        if missing:
            print(f"⚠️ 以下表仍不存在: {sorted(missing)}")
        else:
            print("建表完成，检索子系统所需表均已存在")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
