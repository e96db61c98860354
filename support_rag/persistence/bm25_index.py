"""
BM25 稀疏检索索引

内存存储的全文检索引擎，提供与 SQLite FTS5 bm25()、
PostgreSQL ts_rank 对应的原生相关度分数。

对 title + content + keywords 建立倒排索引，按需重建。

依赖:
    pip install rank-bm25
"""

import logging
import re
from typing import List, Tuple, Dict

import numpy as np

logger = logging.getLogger(__name__)


class BM25Index:
    """
    BM25 稀疏检索索引

    支持中英文混合分词和增量更新（标记 dirty，查询时重建）。

    Args:
        k1: BM25 词频饱和参数（默认 1.5）
        b: BM25 文档长度归一化参数（默认 0.75）
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self._documents: Dict[str, str] = {}  # doc_id → 合并文本
        self._bm25 = None  # BM25Okapi 实例
        self._ids: List[str] = []  # 与 BM25 语料库行对应的 doc_id
        self._k1 = k1
        self._b = b
        self._dirty = False

        logger.debug(f"BM25Index 已初始化: k1={k1}, b={b}")

    def add(self, doc_id: str, title: str, content: str, keywords: List[str] = ()) -> None:
        """
        添加（或替换）文档

        Args:
            doc_id: 文档 ID
            title: 标题
            content: 正文
            keywords: 关键词
        """
        text = " ".join([title, content, *keywords]).strip()
        if not text:
            self.remove(doc_id)
            return

        self._documents[doc_id] = text
        self._dirty = True

    def remove(self, doc_id: str) -> None:
        """从索引中移除文档"""
        if doc_id in self._documents:
            del self._documents[doc_id]
            self._dirty = True

    def search(self, query_text: str, k: int = 10) -> List[Tuple[str, float]]:
        """
        BM25 搜索

        Args:
            query_text: 查询文本
            k: 返回数量

        Returns:
            [(doc_id, bm25_score)] 列表，仅包含正分，按分数降序
        """
        if not query_text or not self._documents or k <= 0:
            return []

        if self._dirty or self._bm25 is None:
            self._rebuild()

        if self._bm25 is None or not self._ids:
            return []

        tokenized_query = self._tokenize(query_text)
        if not tokenized_query:
            return []

        scores = self._bm25.get_scores(tokenized_query)
        if len(scores) == 0:
            return []

        # 稳定排序：同分时保持插入顺序
        order = np.argsort(-np.asarray(scores), kind="stable")[:k]

        results = []
        for idx in order:
            score = float(scores[idx])
            if score > 0:
                results.append((self._ids[idx], score))

        return results

    def _rebuild(self) -> None:
        """重建 BM25 索引"""
        from rank_bm25 import BM25Okapi

        self._ids = list(self._documents.keys())
        if not self._ids:
            self._bm25 = None
            self._dirty = False
            return

        corpus = [self._tokenize(self._documents[did]) for did in self._ids]
        self._bm25 = BM25Okapi(corpus, k1=self._k1, b=self._b)
        self._dirty = False

        logger.debug(f"BM25 索引已重建: documents={len(self._ids)}")

    @staticmethod
    def _tokenize(text: str) -> List[str]:
        """
        简单分词（中英文混合）

        中文按字，英文按词，数字保留。
        """
        if not text:
            return []
        return re.findall(r"[\u4e00-\u9fff]|[a-zA-Z]+|[0-9]+", text.lower())

    def contains(self, doc_id: str) -> bool:
        """检查 doc_id 是否在索引中"""
        return doc_id in self._documents

    @property
    def count(self) -> int:
        """文档数量"""
        return len(self._documents)

    def get_stats(self) -> Dict:
        """获取索引统计"""
        return {
            "type": "BM25Index",
            "count": self.count,
            "k1": self._k1,
            "b": self._b,
            "dirty": self._dirty,
        }
