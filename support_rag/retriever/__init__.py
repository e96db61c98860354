"""
support-rag 检索模块

提供混合检索能力:
- SemanticSearcher: 全量余弦相似度检索
- KeywordSearcher: 全文检索 + 关键词/子串回退匹配
- HybridRanker: 分数融合（语义 ×1.2，两路均命中取平均）
- HybridRetriever: 编排与降级
- EmbeddingBackfiller: 后台向量补全
"""

from .semantic import SemanticSearcher, cosine_similarity, rank_by_similarity
from .keyword import KeywordSearcher, tokenize_query, squash_score
from .fusion import HybridRanker
from .backfill import EmbeddingBackfiller
from .hybrid_retriever import HybridRetriever

__all__ = [
    "SemanticSearcher",
    "KeywordSearcher",
    "HybridRanker",
    "HybridRetriever",
    "EmbeddingBackfiller",
    "cosine_similarity",
    "rank_by_similarity",
    "tokenize_query",
    "squash_score",
]
