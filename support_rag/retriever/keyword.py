"""
关键词检索（稀疏/词法）

合并两路词法信号，不依赖编码器:
  1. 引擎原生全文检索（内存 BM25 / SQLite FTS5 / PostgreSQL ts_rank），
     原始分数经 s / (1 + s) 压缩到 [0, 1)
  2. 回退匹配：关键词交集、标题子串、正文子串，固定分数（默认 0.5）

同一文档在两路均命中时取较高分数。
"""

import logging
import re
from typing import Dict, List

from ..exceptions import StoreUnavailableError
from ..persistence.base import DocumentStore
from ..types import SearchResult, Provenance, RetrievalOutcome, DegradedReason

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")

# 查询词最短长度（严格大于）
MIN_QUERY_TOKEN_LENGTH = 2


def tokenize_query(query: str) -> List[str]:
    """
    查询分词：小写、去标点，保留长度 > 2 的词，去重保序

    Args:
        query: 原始查询

    Returns:
        查询词列表
    """
    words = _WORD_RE.findall(query.lower())
    return list(dict.fromkeys(w for w in words if len(w) > MIN_QUERY_TOKEN_LENGTH))


def squash_score(raw: float) -> float:
    """将非负原始分数压缩到 [0, 1)"""
    if raw <= 0:
        return 0.0
    return raw / (1.0 + raw)


class KeywordSearcher:
    """
    关键词检索器

    Args:
        store: 文档存储
        fallback_score: 回退匹配的固定分数
    """

    def __init__(self, store: DocumentStore, fallback_score: float = 0.5):
        self.store = store
        self.fallback_score = fallback_score

    async def search(self, query: str, k: int) -> RetrievalOutcome:
        """
        关键词检索

        Args:
            query: 原始查询
            k: 返回数量

        Returns:
            RetrievalOutcome（provenance=keyword），按 (分数, updated_at) 降序
        """
        tokens = tokenize_query(query)
        phrase = query.lower().strip()
        if k <= 0 or (not tokens and not phrase):
            return RetrievalOutcome()

        best: Dict[str, SearchResult] = {}

        def _offer(result: SearchResult):
            current = best.get(result.doc_id)
            if current is None or result.score > current.score:
                best[result.doc_id] = result

        degraded_reason = None
        if self.store.supports_full_text:
            try:
                hits = await self.store.full_text_search(query, limit=k)
            except StoreUnavailableError as e:
                logger.warning(f"全文检索失败，仅使用回退匹配: {e}")
                degraded_reason = DegradedReason.KEYWORD_UNAVAILABLE
                hits = []
            for doc, raw_score in hits:
                score = squash_score(raw_score)
                if score > 0:
                    _offer(SearchResult(document=doc, score=score, provenance=Provenance.KEYWORD))

        try:
            fallback_docs = await self.store.find_by_keywords(tokens, phrase, limit=k)
        except StoreUnavailableError as e:
            logger.warning(f"关键词回退匹配失败: {e}")
            return RetrievalOutcome(
                results=self._rank(best, k),
                degraded_reason=DegradedReason.STORE_UNAVAILABLE,
            )

        for doc in fallback_docs:
            _offer(SearchResult(document=doc, score=self.fallback_score, provenance=Provenance.KEYWORD))

        return RetrievalOutcome(results=self._rank(best, k), degraded_reason=degraded_reason)

    @staticmethod
    def _rank(best: Dict[str, SearchResult], k: int) -> List[SearchResult]:
        ranked = sorted(
            best.values(),
            key=lambda r: (r.score, r.document.updated_at or ""),
            reverse=True,
        )
        return ranked[:k]
