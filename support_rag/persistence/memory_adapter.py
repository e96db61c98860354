"""
support-rag 内存持久化适配器

用于测试和开发环境。全文检索由 BM25Index 提供。
"""

import threading
from collections import OrderedDict
from typing import Optional, List, Dict, Any, Tuple

from .base import PersistenceAdapter, PatternUpdater
from .bm25_index import BM25Index
from ..exceptions import StoreUnavailableError, MalformedVectorError
from ..types import KnowledgeDocument, LearningPattern, is_valid_vector, utc_now


def _pattern_sort_key(p: LearningPattern):
    return (p.frequency, p.last_seen or "")


class MemoryAdapter(PersistenceAdapter):
    """
    内存持久化适配器

    特性：
    - 线程安全（RLock 保护全部读写）
    - BM25 全文检索
    - 模式 upsert 在锁内完成 find-or-create，天然无并发重复
    """

    def __init__(self, bm25_k1: float = 1.5, bm25_b: float = 0.75):
        self._documents: "OrderedDict[str, KnowledgeDocument]" = OrderedDict()
        self._patterns: Dict[str, LearningPattern] = {}
        self._bm25 = BM25Index(k1=bm25_k1, b=bm25_b)
        self._lock = threading.RLock()
        self._connected = False

    def _ensure_connected(self):
        if not self._connected:
            raise StoreUnavailableError("MemoryAdapter 未连接")

    @staticmethod
    def _copy_doc(doc: KnowledgeDocument) -> KnowledgeDocument:
        return KnowledgeDocument.from_dict(doc.to_dict())

    @staticmethod
    def _copy_pattern(pattern: LearningPattern) -> LearningPattern:
        return LearningPattern.from_dict(pattern.to_dict())

    # ==================== 连接管理 ====================

    async def connect(self) -> bool:
        self._connected = True
        return True

    async def disconnect(self):
        self._connected = False

    async def is_connected(self) -> bool:
        return self._connected

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self._connected else "disconnected",
            "adapter": "memory",
            "total_documents": len(self._documents),
            "total_patterns": len(self._patterns),
            "bm25": self._bm25.get_stats(),
        }

    # ==================== 文档 CRUD ====================

    async def save_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        with self._lock:
            self._ensure_connected()
            return self._save_locked(document)

    def _save_locked(self, document: KnowledgeDocument) -> KnowledgeDocument:
        now = utc_now()
        existing = self._documents.get(document.doc_id)
        record = self._copy_doc(document)
        record.created_at = existing.created_at if existing else (document.created_at or now)
        record.usage_count = existing.usage_count if existing else document.usage_count
        record.updated_at = now

        self._documents[record.doc_id] = record
        self._bm25.add(record.doc_id, record.title, record.content, record.keywords)
        return self._copy_doc(record)

    async def save_documents(self, documents: List[KnowledgeDocument]) -> int:
        with self._lock:
            self._ensure_connected()
            for document in documents:
                self._save_locked(document)
            return len(documents)

    async def get_document(self, doc_id: str) -> Optional[KnowledgeDocument]:
        with self._lock:
            self._ensure_connected()
            doc = self._documents.get(doc_id)
            return self._copy_doc(doc) if doc else None

    async def delete_document(self, doc_id: str) -> bool:
        with self._lock:
            self._ensure_connected()
            if doc_id not in self._documents:
                return False
            del self._documents[doc_id]
            self._bm25.remove(doc_id)
            return True

    async def list_documents(self, limit: int = 100, offset: int = 0) -> List[KnowledgeDocument]:
        with self._lock:
            self._ensure_connected()
            docs = list(self._documents.values())[offset:offset + limit]
            return [self._copy_doc(d) for d in docs]

    # ==================== 检索辅助查询 ====================

    def _newest_first(self) -> List[KnowledgeDocument]:
        # updated_at 降序，同一时间戳时后写入的在前
        docs = list(reversed(self._documents.values()))
        docs.sort(key=lambda d: d.updated_at or "", reverse=True)
        return docs

    async def find_with_vectors(self) -> List[KnowledgeDocument]:
        with self._lock:
            self._ensure_connected()
            return [
                self._copy_doc(d) for d in self._documents.values()
                if d.embedding is not None
            ]

    async def find_without_vectors(
        self,
        limit: int = 10,
        dimension: Optional[int] = None,
    ) -> List[KnowledgeDocument]:
        with self._lock:
            self._ensure_connected()
            missing = [
                d for d in self._documents.values()
                if not is_valid_vector(d.embedding, dimension)
            ]
            return [self._copy_doc(d) for d in missing[:limit]]

    async def find_by_keywords(
        self,
        tokens: List[str],
        phrase: str,
        limit: int = 10,
    ) -> List[KnowledgeDocument]:
        token_set = {t.lower() for t in tokens}
        phrase = phrase.lower()
        with self._lock:
            self._ensure_connected()
            matched = []
            for doc in self._newest_first():
                doc_keywords = {k.lower() for k in doc.keywords}
                if (
                    (token_set and doc_keywords & token_set)
                    or (phrase and phrase in doc.title.lower())
                    or (phrase and phrase in doc.content.lower())
                ):
                    matched.append(self._copy_doc(doc))
                    if len(matched) >= limit:
                        break
            return matched

    async def find_by_category(self, category: str, limit: int = 100) -> List[KnowledgeDocument]:
        with self._lock:
            self._ensure_connected()
            docs = [d for d in self._documents.values() if d.category == category]
            return [self._copy_doc(d) for d in docs[:limit]]

    @property
    def supports_full_text(self) -> bool:
        return True

    async def full_text_search(
        self,
        query: str,
        limit: int = 10,
    ) -> List[Tuple[KnowledgeDocument, float]]:
        with self._lock:
            self._ensure_connected()
            hits = self._bm25.search(query, k=limit)
            return [
                (self._copy_doc(self._documents[doc_id]), score)
                for doc_id, score in hits
                if doc_id in self._documents
            ]

    # ==================== 局部更新 ====================

    async def increment_usage(self, doc_ids: List[str]) -> None:
        with self._lock:
            self._ensure_connected()
            for doc_id in doc_ids:
                doc = self._documents.get(doc_id)
                if doc:
                    doc.usage_count += 1

    async def set_embedding(self, doc_id: str, embedding: List[float]) -> bool:
        if not is_valid_vector(embedding):
            raise MalformedVectorError(f"拒绝写入无效向量: doc_id={doc_id}")
        with self._lock:
            self._ensure_connected()
            doc = self._documents.get(doc_id)
            if doc is None:
                return False
            doc.embedding = [float(v) for v in embedding]
            return True

    # ==================== 文档统计 ====================

    async def count_documents(self) -> int:
        with self._lock:
            self._ensure_connected()
            return len(self._documents)

    async def count_documents_by_category(self) -> Dict[str, int]:
        with self._lock:
            self._ensure_connected()
            counts: Dict[str, int] = {}
            for doc in self._documents.values():
                counts[doc.category] = counts.get(doc.category, 0) + 1
            return counts

    # ==================== 学习模式 ====================

    async def get_pattern(self, pattern: str) -> Optional[LearningPattern]:
        with self._lock:
            self._ensure_connected()
            found = self._patterns.get(pattern)
            return self._copy_pattern(found) if found else None

    async def upsert_pattern(self, pattern: str, updater: PatternUpdater) -> LearningPattern:
        with self._lock:
            self._ensure_connected()
            current = self._patterns.get(pattern)
            updated = updater(self._copy_pattern(current) if current else None)
            self._patterns[pattern] = self._copy_pattern(updated)
            return updated

    async def find_similar_patterns(
        self,
        pattern: str,
        keywords: List[str],
        limit: int = 5,
    ) -> List[LearningPattern]:
        keyword_set = set(keywords)
        with self._lock:
            self._ensure_connected()
            matched = [
                p for p in self._patterns.values()
                if pattern in p.pattern
                or keyword_set.intersection(p.keywords)
                or any(pattern in v for v in p.variations)
            ]
            matched.sort(key=_pattern_sort_key, reverse=True)
            return [self._copy_pattern(p) for p in matched[:limit]]

    async def list_popular_patterns(self, limit: int = 10) -> List[LearningPattern]:
        with self._lock:
            self._ensure_connected()
            ranked = sorted(self._patterns.values(), key=_pattern_sort_key, reverse=True)
            return [self._copy_pattern(p) for p in ranked[:limit]]

    async def find_patterns_by_category(self, category: str, limit: int = 10) -> List[LearningPattern]:
        with self._lock:
            self._ensure_connected()
            matched = [p for p in self._patterns.values() if p.category == category]
            matched.sort(key=lambda p: p.frequency, reverse=True)
            return [self._copy_pattern(p) for p in matched[:limit]]

    async def count_patterns(self) -> int:
        with self._lock:
            self._ensure_connected()
            return len(self._patterns)

    async def count_patterns_by_category(self, limit: int = 10) -> List[Tuple[str, int]]:
        with self._lock:
            self._ensure_connected()
            counts: Dict[str, int] = {}
            for p in self._patterns.values():
                counts[p.category] = counts.get(p.category, 0) + 1
            return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]

    async def count_patterns_by_topic(self, limit: int = 10) -> List[Tuple[str, int]]:
        with self._lock:
            self._ensure_connected()
            counts: Dict[str, int] = {}
            for p in self._patterns.values():
                for topic in p.topics:
                    counts[topic] = counts.get(topic, 0) + 1
            return sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
