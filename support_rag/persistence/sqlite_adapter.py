"""
support-rag SQLite 持久化适配器

支持完整的文档 CRUD、FTS5 全文检索（bm25 排序）、WAL 模式，
以及基于 BEGIN IMMEDIATE 事务的模式原子 upsert。

FTS5 不可用（SQLite 编译时未启用）时自动关闭全文检索，
关键词检索退化为关键词交集 + 子串匹配。
"""

import json
import re
import sqlite3
import threading
import logging
import time
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Tuple

from .base import PersistenceAdapter, PatternUpdater
from ..exceptions import (
    StoreUnavailableError,
    MalformedVectorError,
    PatternWriteConflictError,
)
from ..types import KnowledgeDocument, LearningPattern, is_valid_vector, utc_now

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAY_BASE = 0.1
MAX_UPSERT_ATTEMPTS = 5

_FTS_TOKEN_RE = re.compile(r"\w+")


class SQLiteAdapter(PersistenceAdapter):
    """
    SQLite 持久化适配器

    特性：
    - 完整的 CRUD 操作
    - FTS5 全文检索（可选）
    - 索引优化
    - WAL 模式提升并发性能
    - 模式 upsert 使用写事务串行化，避免并发重复创建
    """

    def __init__(
        self,
        db_path: str = "support_rag.db",
        enable_wal: bool = True,
        busy_timeout_ms: int = 5000,
        enable_fts: bool = True,
    ):
        self.db_path = db_path
        self.enable_wal = enable_wal
        self.busy_timeout_ms = busy_timeout_ms
        self.enable_fts = enable_fts
        self._fts_available = False
        self._lock = threading.RLock()
        self._connected = False

    @contextmanager
    def _get_conn(self):
        """获取数据库连接（autocommit，事务显式开启）"""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000.0,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        if self.enable_wal:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        try:
            yield conn
        finally:
            conn.close()

    def _retry_on_busy(self, func, *args, **kwargs):
        """在数据库忙时重试"""
        last_error = None
        for attempt in range(MAX_RETRY_ATTEMPTS):
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) or "busy" in str(e).lower():
                    last_error = e
                    delay = RETRY_DELAY_BASE * (2 ** attempt)
                    logger.warning(f"Database busy, retrying in {delay:.2f}s (attempt {attempt + 1})")
                    time.sleep(delay)
                else:
                    raise
        raise last_error

    def _run(self, action: str, func, *args, **kwargs):
        """执行数据库操作，驱动错误统一转换为 StoreUnavailableError"""
        if not self._connected:
            raise StoreUnavailableError(f"SQLiteAdapter 未连接: {action}")
        with self._lock:
            try:
                return self._retry_on_busy(func, *args, **kwargs)
            except sqlite3.Error as e:
                logger.error(f"Failed to {action}: {e}")
                raise StoreUnavailableError(f"SQLite {action} 失败: {e}") from e

    def _init_tables(self):
        """初始化数据库表"""
        with self._get_conn() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS documents (
                    doc_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'General',
                    keywords TEXT NOT NULL DEFAULT '[]',
                    embedding TEXT,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')

            conn.execute('''
                CREATE TABLE IF NOT EXISTS learning_patterns (
                    pattern TEXT PRIMARY KEY,
                    original_query TEXT NOT NULL,
                    variations TEXT NOT NULL DEFAULT '[]',
                    category TEXT NOT NULL DEFAULT 'General',
                    topics TEXT NOT NULL DEFAULT '[]',
                    frequency INTEGER NOT NULL DEFAULT 1,
                    successful_responses TEXT NOT NULL DEFAULT '[]',
                    keywords TEXT NOT NULL DEFAULT '[]',
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL
                )
            ''')

            # 索引
            conn.execute('CREATE INDEX IF NOT EXISTS idx_documents_category ON documents(category)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_documents_created ON documents(created_at)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_patterns_frequency ON learning_patterns(frequency, last_seen)')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_patterns_category ON learning_patterns(category)')

            # 全文索引
            self._fts_available = False
            if self.enable_fts:
                try:
                    conn.execute('''
                        CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts
                        USING fts5(doc_id UNINDEXED, title, content, keywords)
                    ''')
                    self._fts_available = True
                except sqlite3.OperationalError as e:
                    logger.warning(f"FTS5 不可用，全文检索已禁用: {e}")

        logger.info(f"SQLite database initialized: {self.db_path} (fts={self._fts_available})")

    # ==================== 连接管理 ====================

    async def connect(self) -> bool:
        with self._lock:
            try:
                self._init_tables()
                self._connected = True
                return True
            except sqlite3.Error as e:
                logger.error(f"Failed to connect to SQLite: {e}")
                return False

    async def disconnect(self):
        self._connected = False

    async def is_connected(self) -> bool:
        return self._connected

    async def health_check(self) -> Dict[str, Any]:
        try:
            with self._get_conn() as conn:
                doc_count = conn.execute("SELECT COUNT(*) AS count FROM documents").fetchone()['count']
                pattern_count = conn.execute(
                    "SELECT COUNT(*) AS count FROM learning_patterns"
                ).fetchone()['count']
            return {
                "status": "healthy" if self._connected else "disconnected",
                "adapter": "sqlite",
                "db_path": self.db_path,
                "fts": self._fts_available,
                "total_documents": doc_count,
                "total_patterns": pattern_count,
            }
        except sqlite3.Error as e:
            return {"status": "unhealthy", "adapter": "sqlite", "error": str(e)}

    # ==================== 文档 CRUD ====================

    def _write_document(self, conn, document: KnowledgeDocument, now: str):
        conn.execute('''
            INSERT INTO documents
            (doc_id, title, content, category, keywords, embedding,
             usage_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(doc_id) DO UPDATE SET
                title = excluded.title,
                content = excluded.content,
                category = excluded.category,
                keywords = excluded.keywords,
                embedding = excluded.embedding,
                updated_at = excluded.updated_at
        ''', (
            document.doc_id,
            document.title,
            document.content,
            document.category,
            json.dumps(document.keywords, ensure_ascii=False),
            json.dumps(document.embedding) if document.embedding else None,
            document.usage_count,
            document.created_at or now,
            now,
        ))
        if self._fts_available:
            conn.execute('DELETE FROM documents_fts WHERE doc_id = ?', (document.doc_id,))
            conn.execute(
                'INSERT INTO documents_fts (doc_id, title, content, keywords) VALUES (?, ?, ?, ?)',
                (document.doc_id, document.title, document.content, " ".join(document.keywords)),
            )

    async def save_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        def _do():
            with self._get_conn() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    self._write_document(conn, document, utc_now())
                    row = conn.execute(
                        'SELECT * FROM documents WHERE doc_id = ?', (document.doc_id,)
                    ).fetchone()
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            return self._row_to_document(row)

        return self._run("save document", _do)

    async def save_documents(self, documents: List[KnowledgeDocument]) -> int:
        if not documents:
            return 0

        def _do():
            with self._get_conn() as conn:
                now = utc_now()
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for document in documents:
                        self._write_document(conn, document, now)
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            return len(documents)

        return self._run("save documents", _do)

    async def get_document(self, doc_id: str) -> Optional[KnowledgeDocument]:
        def _do():
            with self._get_conn() as conn:
                row = conn.execute('SELECT * FROM documents WHERE doc_id = ?', (doc_id,)).fetchone()
            return self._row_to_document(row) if row else None

        return self._run("load document", _do)

    async def delete_document(self, doc_id: str) -> bool:
        def _do():
            with self._get_conn() as conn:
                cursor = conn.execute('DELETE FROM documents WHERE doc_id = ?', (doc_id,))
                if self._fts_available:
                    conn.execute('DELETE FROM documents_fts WHERE doc_id = ?', (doc_id,))
            return cursor.rowcount > 0

        return self._run("delete document", _do)

    async def list_documents(self, limit: int = 100, offset: int = 0) -> List[KnowledgeDocument]:
        return self._query_documents(
            "list documents",
            'SELECT * FROM documents ORDER BY created_at, rowid LIMIT ? OFFSET ?',
            (limit, offset),
        )

    def _query_documents(self, action: str, sql: str, params) -> List[KnowledgeDocument]:
        def _do():
            with self._get_conn() as conn:
                rows = conn.execute(sql, params).fetchall()
            return [self._row_to_document(row) for row in rows]

        return self._run(action, _do)

    # ==================== 检索辅助查询 ====================

    async def find_with_vectors(self) -> List[KnowledgeDocument]:
        return self._query_documents(
            "find documents with vectors",
            'SELECT * FROM documents WHERE embedding IS NOT NULL ORDER BY created_at, rowid',
            (),
        )

    async def find_without_vectors(
        self,
        limit: int = 10,
        dimension: Optional[int] = None,
    ) -> List[KnowledgeDocument]:
        # JSON 中的 NaN/Infinity 无法在 SQL 中判断，逐行解析后过滤
        def _do():
            missing = []
            with self._get_conn() as conn:
                for row in conn.execute('SELECT * FROM documents ORDER BY created_at, rowid'):
                    doc = self._row_to_document(row)
                    if not doc.has_vector(dimension):
                        missing.append(doc)
                        if len(missing) >= limit:
                            break
            return missing

        if limit <= 0:
            return []
        return self._run("find documents without vectors", _do)

    async def find_by_keywords(
        self,
        tokens: List[str],
        phrase: str,
        limit: int = 10,
    ) -> List[KnowledgeDocument]:
        clauses = []
        params: list = []

        if tokens:
            placeholders = ','.join(['?'] * len(tokens))
            clauses.append(
                f"EXISTS (SELECT 1 FROM json_each(documents.keywords) "
                f"WHERE lower(json_each.value) IN ({placeholders}))"
            )
            params.extend(t.lower() for t in tokens)

        if phrase:
            clauses.append("instr(lower(title), ?) > 0")
            clauses.append("instr(lower(content), ?) > 0")
            params.extend([phrase.lower(), phrase.lower()])

        if not clauses:
            return []

        query = (
            "SELECT * FROM documents WHERE " + " OR ".join(clauses)
            + " ORDER BY updated_at DESC, rowid DESC LIMIT ?"
        )
        params.append(limit)
        return self._query_documents("find documents by keywords", query, params)

    async def find_by_category(self, category: str, limit: int = 100) -> List[KnowledgeDocument]:
        return self._query_documents(
            "find documents by category",
            'SELECT * FROM documents WHERE category = ? ORDER BY created_at, rowid LIMIT ?',
            (category, limit),
        )

    @property
    def supports_full_text(self) -> bool:
        return self._fts_available

    async def full_text_search(
        self,
        query: str,
        limit: int = 10,
    ) -> List[Tuple[KnowledgeDocument, float]]:
        if not self._fts_available:
            return []

        # 逐词加引号，避免 FTS5 查询语法注入；词之间为 OR
        terms = _FTS_TOKEN_RE.findall(query.lower())
        if not terms:
            return []
        match_expr = " OR ".join(f'"{t}"' for t in terms)

        def _do():
            with self._get_conn() as conn:
                rows = conn.execute('''
                    SELECT d.*, bm25(documents_fts) AS fts_score
                    FROM documents_fts
                    JOIN documents d ON d.doc_id = documents_fts.doc_id
                    WHERE documents_fts MATCH ?
                    ORDER BY fts_score
                    LIMIT ?
                ''', (match_expr, limit)).fetchall()
            # bm25() 越小越相关，取负后为正分
            return [
                (self._row_to_document(row), -float(row['fts_score']))
                for row in rows
                if -float(row['fts_score']) > 0
            ]

        return self._run("full text search", _do)

    # ==================== 局部更新 ====================

    async def increment_usage(self, doc_ids: List[str]) -> None:
        if not doc_ids:
            return

        def _do():
            placeholders = ','.join(['?'] * len(doc_ids))
            with self._get_conn() as conn:
                conn.execute(
                    f'UPDATE documents SET usage_count = usage_count + 1 '
                    f'WHERE doc_id IN ({placeholders})',
                    list(doc_ids),
                )

        self._run("increment usage", _do)

    async def set_embedding(self, doc_id: str, embedding: List[float]) -> bool:
        if not is_valid_vector(embedding):
            raise MalformedVectorError(f"拒绝写入无效向量: doc_id={doc_id}")

        def _do():
            with self._get_conn() as conn:
                cursor = conn.execute(
                    'UPDATE documents SET embedding = ? WHERE doc_id = ?',
                    (json.dumps([float(v) for v in embedding]), doc_id),
                )
            return cursor.rowcount > 0

        return self._run("set embedding", _do)

    # ==================== 文档统计 ====================

    async def count_documents(self) -> int:
        def _do():
            with self._get_conn() as conn:
                return conn.execute('SELECT COUNT(*) AS count FROM documents').fetchone()['count']

        return self._run("count documents", _do)

    async def count_documents_by_category(self) -> Dict[str, int]:
        def _do():
            with self._get_conn() as conn:
                rows = conn.execute(
                    'SELECT category, COUNT(*) AS count FROM documents GROUP BY category'
                ).fetchall()
            return {row['category']: row['count'] for row in rows}

        return self._run("count documents by category", _do)

    # ==================== 学习模式 ====================

    async def get_pattern(self, pattern: str) -> Optional[LearningPattern]:
        def _do():
            with self._get_conn() as conn:
                row = conn.execute(
                    'SELECT * FROM learning_patterns WHERE pattern = ?', (pattern,)
                ).fetchone()
            return self._row_to_pattern(row) if row else None

        return self._run("load pattern", _do)

    def _upsert_once(self, pattern: str, updater: PatternUpdater) -> LearningPattern:
        """单次 upsert（写事务内完成读-改-写）"""
        with self._get_conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    'SELECT * FROM learning_patterns WHERE pattern = ?', (pattern,)
                ).fetchone()
                current = self._row_to_pattern(row) if row else None
                updated = updater(current)
                values = self._pattern_values(updated)
                if current is None:
                    conn.execute('''
                        INSERT INTO learning_patterns
                        (pattern, original_query, variations, category, topics,
                         frequency, successful_responses, keywords, first_seen, last_seen)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', values)
                else:
                    conn.execute('''
                        UPDATE learning_patterns SET
                            original_query = ?, variations = ?, category = ?, topics = ?,
                            frequency = ?, successful_responses = ?, keywords = ?,
                            first_seen = ?, last_seen = ?
                        WHERE pattern = ?
                    ''', values[1:] + (values[0],))
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise PatternWriteConflictError(f"模式并发创建冲突: {pattern}") from e
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return updated

    async def upsert_pattern(self, pattern: str, updater: PatternUpdater) -> LearningPattern:
        for attempt in range(MAX_UPSERT_ATTEMPTS):
            try:
                return self._run("upsert pattern", self._upsert_once, pattern, updater)
            except PatternWriteConflictError:
                logger.debug(f"模式写冲突，重试为更新: {pattern} (attempt {attempt + 1})")
        raise StoreUnavailableError(f"模式 upsert 重试耗尽: {pattern}")

    def _query_patterns(self, action: str, sql: str, params) -> List[LearningPattern]:
        def _do():
            with self._get_conn() as conn:
                rows = conn.execute(sql, params).fetchall()
            return [self._row_to_pattern(row) for row in rows]

        return self._run(action, _do)

    async def find_similar_patterns(
        self,
        pattern: str,
        keywords: List[str],
        limit: int = 5,
    ) -> List[LearningPattern]:
        clauses = ["instr(pattern, ?) > 0"]
        params: list = [pattern]
        if keywords:
            placeholders = ','.join(['?'] * len(keywords))
            clauses.append(
                f"EXISTS (SELECT 1 FROM json_each(learning_patterns.keywords) "
                f"WHERE json_each.value IN ({placeholders}))"
            )
            params.extend(keywords)
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(learning_patterns.variations) "
            "WHERE instr(json_each.value, ?) > 0)"
        )
        params.append(pattern)
        params.append(limit)

        return self._query_patterns(
            "find similar patterns",
            "SELECT * FROM learning_patterns WHERE " + " OR ".join(clauses)
            + " ORDER BY frequency DESC, last_seen DESC LIMIT ?",
            params,
        )

    async def list_popular_patterns(self, limit: int = 10) -> List[LearningPattern]:
        return self._query_patterns(
            "list popular patterns",
            'SELECT * FROM learning_patterns ORDER BY frequency DESC, last_seen DESC LIMIT ?',
            (limit,),
        )

    async def find_patterns_by_category(self, category: str, limit: int = 10) -> List[LearningPattern]:
        return self._query_patterns(
            "find patterns by category",
            'SELECT * FROM learning_patterns WHERE category = ? '
            'ORDER BY frequency DESC, last_seen DESC LIMIT ?',
            (category, limit),
        )

    async def count_patterns(self) -> int:
        def _do():
            with self._get_conn() as conn:
                return conn.execute(
                    'SELECT COUNT(*) AS count FROM learning_patterns'
                ).fetchone()['count']

        return self._run("count patterns", _do)

    async def count_patterns_by_category(self, limit: int = 10) -> List[Tuple[str, int]]:
        def _do():
            with self._get_conn() as conn:
                rows = conn.execute('''
                    SELECT category, COUNT(*) AS count FROM learning_patterns
                    GROUP BY category ORDER BY count DESC, category LIMIT ?
                ''', (limit,)).fetchall()
            return [(row['category'], row['count']) for row in rows]

        return self._run("count patterns by category", _do)

    async def count_patterns_by_topic(self, limit: int = 10) -> List[Tuple[str, int]]:
        def _do():
            with self._get_conn() as conn:
                rows = conn.execute('''
                    SELECT json_each.value AS topic, COUNT(*) AS count
                    FROM learning_patterns, json_each(learning_patterns.topics)
                    GROUP BY json_each.value ORDER BY count DESC, topic LIMIT ?
                ''', (limit,)).fetchall()
            return [(row['topic'], row['count']) for row in rows]

        return self._run("count patterns by topic", _do)

    # ==================== 行转换 ====================

    @staticmethod
    def _pattern_values(p: LearningPattern) -> tuple:
        return (
            p.pattern,
            p.original_query,
            json.dumps(p.variations, ensure_ascii=False),
            p.category,
            json.dumps(p.topics, ensure_ascii=False),
            p.frequency,
            json.dumps(p.successful_responses, ensure_ascii=False),
            json.dumps(p.keywords, ensure_ascii=False),
            p.first_seen,
            p.last_seen,
        )

    @staticmethod
    def _row_to_document(row) -> KnowledgeDocument:
        """转换数据库行到文档"""
        embedding = json.loads(row['embedding']) if row['embedding'] else None
        return KnowledgeDocument(
            doc_id=row['doc_id'],
            title=row['title'],
            content=row['content'],
            category=row['category'],
            keywords=json.loads(row['keywords'] or '[]'),
            embedding=embedding,
            usage_count=row['usage_count'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    @staticmethod
    def _row_to_pattern(row) -> LearningPattern:
        """转换数据库行到模式"""
        return LearningPattern(
            pattern=row['pattern'],
            original_query=row['original_query'],
            variations=json.loads(row['variations'] or '[]'),
            category=row['category'],
            topics=json.loads(row['topics'] or '[]'),
            frequency=row['frequency'],
            successful_responses=json.loads(row['successful_responses'] or '[]'),
            keywords=json.loads(row['keywords'] or '[]'),
            first_seen=row['first_seen'],
            last_seen=row['last_seen'],
        )
