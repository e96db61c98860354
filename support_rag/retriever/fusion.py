"""
混合排序（语义 + 关键词分数融合）

融合规则（确定性、可复现）:
  - 仅语义命中:   score = semantic × boost（默认 1.2）
  - 仅关键词命中: score = keyword
  - 两路均命中:   score = (semantic × boost + keyword) / 2

放大后的语义分数不做截断，可能超过 1.0；最终按分数降序（稳定）截断到 k。

示例:
  semantic=0.8, keyword=0.6 → (0.96 + 0.6) / 2 = 0.78
"""

import logging
from typing import List, Dict

from ..types import SearchResult, Provenance

logger = logging.getLogger(__name__)


class HybridRanker:
    """
    混合排序器

    Args:
        semantic_boost: 语义分数放大系数
    """

    def __init__(self, semantic_boost: float = 1.2):
        self.semantic_boost = semantic_boost

    def merge(
        self,
        semantic_results: List[SearchResult],
        keyword_results: List[SearchResult],
        k: int,
    ) -> List[SearchResult]:
        """
        融合两路检索结果

        Args:
            semantic_results: 语义检索结果（每个文档至多一次）
            keyword_results: 关键词检索结果（每个文档至多一次）
            k: 返回数量

        Returns:
            融合后的结果，provenance 标记来源
        """
        merged: Dict[str, SearchResult] = {}

        for result in semantic_results:
            merged[result.doc_id] = SearchResult(
                document=result.document,
                score=result.score * self.semantic_boost,
                provenance=Provenance.SEMANTIC,
            )

        for result in keyword_results:
            existing = merged.get(result.doc_id)
            if existing is None:
                merged[result.doc_id] = SearchResult(
                    document=result.document,
                    score=result.score,
                    provenance=Provenance.KEYWORD,
                )
            elif existing.provenance == Provenance.SEMANTIC:
                merged[result.doc_id] = SearchResult(
                    document=existing.document,
                    score=(existing.score + result.score) / 2,
                    provenance=Provenance.HYBRID,
                )

        ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)

        logger.debug(
            f"混合排序: semantic={len(semantic_results)}, "
            f"keyword={len(keyword_results)}, merged={len(merged)}, k={k}"
        )
        return ranked[:max(k, 0)]
