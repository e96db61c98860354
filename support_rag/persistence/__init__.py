"""
support-rag 持久化层

提供统一的持久化接口（文档存储 + 模式存储），支持多种后端：
- MemoryAdapter: 内存存储（测试/开发），BM25 全文检索
- SQLiteAdapter: SQLite 存储（开发/小规模生产），FTS5 全文检索
- PostgresAdapter: PostgreSQL 存储（生产环境），tsvector 全文检索
"""

from .base import PersistenceAdapter, DocumentStore, PatternStore, PatternUpdater
from .bm25_index import BM25Index
from .memory_adapter import MemoryAdapter
from .sqlite_adapter import SQLiteAdapter

__all__ = [
    # 基类
    "PersistenceAdapter",
    "DocumentStore",
    "PatternStore",
    "PatternUpdater",
    # 适配器
    "MemoryAdapter",
    "SQLiteAdapter",
    "BM25Index",
    # 工厂
    "create_adapter",
]


def create_adapter(config: dict) -> PersistenceAdapter:
    """
    根据配置创建持久化适配器

    Args:
        config: 持久化配置字典
            type: "memory" | "sqlite" | "postgres"
            sqlite_path: SQLite 数据库路径（type=sqlite 时）
            postgres_*: PostgreSQL 参数（type=postgres 时）

    Returns:
        PersistenceAdapter 实例
    """
    adapter_type = config.get("type", "memory")

    if adapter_type == "memory":
        return MemoryAdapter(
            bm25_k1=config.get("bm25_k1", 1.5),
            bm25_b=config.get("bm25_b", 0.75),
        )
    elif adapter_type == "sqlite":
        return SQLiteAdapter(
            db_path=config.get("sqlite_path", "support_rag.db"),
            busy_timeout_ms=config.get("sqlite_busy_timeout_ms", 5000),
        )
    elif adapter_type == "postgres":
        from .postgres_adapter import PostgresAdapter

        return PostgresAdapter(
            host=config.get("postgres_host", "localhost"),
            port=config.get("postgres_port", 5432),
            database=config.get("postgres_database", "support_rag"),
            user=config.get("postgres_user", "support_rag"),
            password=config.get("postgres_password"),
            pool_size=config.get("postgres_pool_size", 5),
            max_overflow=config.get("postgres_max_overflow", 10),
            dsn=config.get("postgres_url"),
        )
    else:
        raise ValueError(f"未知的持久化类型: {adapter_type}")
