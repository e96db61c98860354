"""
语义检索（稠密向量，精确全量扫描）

对语料中所有带有效向量的文档计算与查询向量的余弦相似度，
过滤低于阈值的结果后按相似度降序返回。

无向量索引：语料规模在数千文档以内时，全量矩阵乘法足够快，
且结果确定、可复现。
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from ..encoder.base import BaseEncoder
from ..exceptions import EmbeddingUnavailableError, StoreUnavailableError
from ..persistence.base import DocumentStore
from ..types import (
    KnowledgeDocument,
    SearchResult,
    Provenance,
    RetrievalOutcome,
    DegradedReason,
)

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    余弦相似度

    维度不一致、零范数、空向量或包含 NaN/Inf 时返回 0.0，不抛异常。
    """
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    try:
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
    except (TypeError, ValueError):
        return 0.0
    if not (np.all(np.isfinite(va)) and np.all(np.isfinite(vb))):
        return 0.0
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def rank_by_similarity(
    query_vector: Sequence[float],
    corpus: List[KnowledgeDocument],
    min_similarity: float,
    k: int,
) -> List[SearchResult]:
    """
    对语料按与查询向量的余弦相似度排序

    向量缺失或无效（维度不符、NaN/Inf）的文档直接排除；
    分数低于 min_similarity 的丢弃；同分保持语料顺序。

    Args:
        query_vector: 查询向量
        corpus: 候选文档
        min_similarity: 最低相似度
        k: 返回数量

    Returns:
        SearchResult 列表（provenance=semantic）
    """
    if k <= 0 or not corpus:
        return []

    dim = len(query_vector)
    usable = [doc for doc in corpus if doc.has_vector(dim)]
    if not usable:
        return []

    query = np.asarray(query_vector, dtype=np.float64)
    query_norm = np.linalg.norm(query)
    if not np.isfinite(query_norm) or query_norm == 0.0:
        return []

    matrix = np.asarray([doc.embedding for doc in usable], dtype=np.float64)  # [N, dim]
    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0.0, dots / (norms * query_norm), 0.0)

    results = [
        SearchResult(document=doc, score=float(score), provenance=Provenance.SEMANTIC)
        for doc, score in zip(usable, sims)
        if score >= min_similarity
    ]
    # list.sort 稳定，同分保持原顺序
    results.sort(key=lambda r: r.score, reverse=True)
    return results[:k]


class SemanticSearcher:
    """
    语义检索器

    Args:
        encoder: 编码器（None 表示嵌入不可用，始终降级）
        store: 文档存储
    """

    def __init__(self, encoder: Optional[BaseEncoder], store: DocumentStore):
        self.encoder = encoder
        self.store = store

    async def search(
        self,
        query: str,
        k: int,
        min_similarity: float,
    ) -> RetrievalOutcome:
        """
        语义检索

        Returns:
            RetrievalOutcome；嵌入失败标记 embedding_unavailable，
            语料无可用向量标记 no_vectors，存储失败标记 store_unavailable
        """
        if self.encoder is None:
            return RetrievalOutcome.degraded_with(DegradedReason.EMBEDDING_UNAVAILABLE)

        try:
            corpus = await self.store.find_with_vectors()
        except StoreUnavailableError as e:
            logger.warning(f"语义检索读取语料失败: {e}")
            return RetrievalOutcome.degraded_with(DegradedReason.STORE_UNAVAILABLE)

        if not corpus:
            return RetrievalOutcome.degraded_with(DegradedReason.NO_VECTORS)

        try:
            query_vector = await self.encoder.aembed(query)
        except EmbeddingUnavailableError as e:
            logger.warning(f"查询向量计算失败: {e}")
            return RetrievalOutcome.degraded_with(DegradedReason.EMBEDDING_UNAVAILABLE)

        if not any(doc.has_vector(len(query_vector)) for doc in corpus):
            return RetrievalOutcome.degraded_with(DegradedReason.NO_VECTORS)

        return RetrievalOutcome(
            results=rank_by_similarity(query_vector, corpus, min_similarity, k)
        )
