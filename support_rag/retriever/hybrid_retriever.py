"""
HybridRetriever：语义 + 关键词混合检索

检索架构:
        query
          │
     ┌────┴────┐
     │         │
   语义检索   关键词检索
 (全量余弦)  (全文 + 回退匹配)
     │         │
     └────┬────┘
          │
     ┌────▼────┐
     │ 混合排序 │
     └────┬────┘
          │
    top-K SearchResult
          │
    usage_count += 1

设计要点:
    - 每路取 k × candidate_multiplier 个候选，语义候选阈值 hybrid_min_similarity
    - 降级链以 RetrievalOutcome.degraded_reason 传递，不嵌套异常处理
    - 嵌入不可用时退化为纯关键词结果，记录 WARNING，从不视为致命错误
    - 语料没有可用向量时触发后台向量补全
"""

import asyncio
import logging
import threading
from typing import Optional, Dict, Any

from ..config import RetrieverConfig
from ..encoder.base import BaseEncoder
from ..exceptions import StoreUnavailableError
from ..persistence.base import DocumentStore
from ..types import RetrievalOutcome, DegradedReason
from .backfill import EmbeddingBackfiller
from .fusion import HybridRanker
from .keyword import KeywordSearcher
from .semantic import SemanticSearcher

logger = logging.getLogger(__name__)


class HybridRetriever:
    """
    混合检索器

    Args:
        store: 文档存储
        encoder: 编码器（None 表示纯关键词检索）
        config: 检索配置
        backfiller: 向量补全器（None 时按 config 自动创建）
    """

    def __init__(
        self,
        store: DocumentStore,
        encoder: Optional[BaseEncoder],
        config: Optional[RetrieverConfig] = None,
        backfiller: Optional[EmbeddingBackfiller] = None,
    ):
        self.config = config or RetrieverConfig()
        self.store = store
        self.encoder = encoder
        self.semantic = SemanticSearcher(encoder, store)
        self.keyword = KeywordSearcher(store, fallback_score=self.config.keyword_fallback_score)
        self.ranker = HybridRanker(semantic_boost=self.config.semantic_boost)
        self.backfiller = backfiller or EmbeddingBackfiller(
            store, encoder, batch_size=self.config.backfill_batch_size
        )

        self._stats_lock = threading.Lock()
        self._stats = {
            "retrievals": 0,
            "degraded": 0,
            "empty": 0,
            "usage_update_errors": 0,
        }
        self._degraded_by_reason: Dict[str, int] = {}

    async def retrieve(self, query: str, k: Optional[int] = None) -> RetrievalOutcome:
        """
        混合检索

        Args:
            query: 原始查询
            k: 返回数量（默认 config.default_top_k）

        Returns:
            RetrievalOutcome；results 为融合后的 top-k
        """
        k = k if k is not None else self.config.default_top_k
        candidates = k * self.config.candidate_multiplier

        semantic, keyword = await asyncio.gather(
            self.semantic.search(query, candidates, self.config.hybrid_min_similarity),
            self.keyword.search(query, candidates),
        )

        if semantic.degraded:
            logger.warning(
                f"语义检索降级，使用纯关键词结果: reason={semantic.degraded_reason.value}",
                extra={"degraded_reason": semantic.degraded_reason.value},
            )
            if semantic.degraded_reason == DegradedReason.NO_VECTORS:
                self.backfiller.trigger()

        results = self.ranker.merge(semantic.results, keyword.results, k)
        outcome = RetrievalOutcome(
            results=results,
            degraded_reason=semantic.degraded_reason or keyword.degraded_reason,
        )

        if results:
            try:
                await self.store.increment_usage([r.doc_id for r in results])
            except StoreUnavailableError as e:
                self._bump("usage_update_errors")
                logger.warning(f"更新使用计数失败: {e}")

        self._record(outcome)
        return outcome

    async def semantic_search(
        self,
        query: str,
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> RetrievalOutcome:
        """
        独立语义检索（不融合关键词结果，不更新使用计数）

        Args:
            query: 原始查询
            k: 返回数量
            min_similarity: 相似度阈值（默认 config.min_similarity）
        """
        k = k if k is not None else self.config.default_top_k
        threshold = self.config.min_similarity if min_similarity is None else min_similarity
        outcome = await self.semantic.search(query, k, threshold)
        if outcome.degraded_reason == DegradedReason.NO_VECTORS:
            self.backfiller.trigger()
        return outcome

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _record(self, outcome: RetrievalOutcome) -> None:
        with self._stats_lock:
            self._stats["retrievals"] += 1
            if not outcome.results:
                self._stats["empty"] += 1
            if outcome.degraded:
                self._stats["degraded"] += 1
                reason = outcome.degraded_reason.value
                self._degraded_by_reason[reason] = self._degraded_by_reason.get(reason, 0) + 1

    def get_stats(self) -> Dict[str, Any]:
        """获取检索统计"""
        with self._stats_lock:
            stats = dict(self._stats)
            stats["degraded_by_reason"] = dict(self._degraded_by_reason)
        stats["backfill"] = self.backfiller.get_stats()
        stats["encoder"] = self.encoder.get_stats() if self.encoder else None
        return stats
