"""
PatternLearner：从历史交互中学习

每次成功交互后，按规范化查询累积一条学习模式:
    - 出现频率、原始写法变体
    - 最近的成功回复（最多保留 10 条，FIFO 淘汰）
    - 关键词与话题并集

检索阶段以相似模式作为"历史经验"注入上下文。

并发约束:
    同一规范化查询的并发 learn() 只产生一条记录，
    由 PatternStore.upsert_pattern 在存储侧保证原子性。
"""

import logging
import re
from typing import Optional, List, Dict, Any

from ..persistence.base import PatternStore
from ..types import (
    LearningPattern,
    MAX_SUCCESSFUL_RESPONSES,
    DEFAULT_CATEGORY,
    utc_now,
)

logger = logging.getLogger(__name__)


STOP_WORDS = frozenset({
    "the", "is", "at", "which", "on", "a", "an", "as", "are", "was", "were",
    "been", "be", "have", "has", "had", "do", "does", "did", "will", "would",
    "should", "could", "may", "might", "must", "can", "this", "that", "these",
    "those", "i", "you", "he", "she", "it", "we", "they", "what", "where",
    "when", "why", "how", "who", "whom", "whose",
})

# 关键词最短长度（严格大于）
MIN_KEYWORD_LENGTH = 3

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


# ==================== 文本处理 ====================

def normalize_query(query: str) -> str:
    """
    规范化查询（幂等）

    小写 → 去除标点 → 合并空白 → 去首尾空白
    """
    text = _NON_WORD_RE.sub("", (query or "").lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def extract_keywords(text: str) -> List[str]:
    """提取关键词：长度 > 3 且不在停用词表中，去重保序"""
    words = (text or "").lower().split()
    return list(dict.fromkeys(
        w for w in words
        if len(w) > MIN_KEYWORD_LENGTH and w not in STOP_WORDS
    ))


def merge_pattern(
    current: Optional[LearningPattern],
    pattern: str,
    query: str,
    response: str,
    category: Optional[str] = None,
    topics: Optional[List[str]] = None,
    now: Optional[str] = None,
    max_responses: int = MAX_SUCCESSFUL_RESPONSES,
    default_category: str = DEFAULT_CATEGORY,
) -> LearningPattern:
    """
    计算一次交互之后的模式记录（纯函数，不修改 current）

    Args:
        current: 已存记录（None 表示首次出现）
        pattern: 规范化查询
        query: 原始查询
        response: 成功回复
        category: 分类（提供时覆盖）
        topics: 话题（与已有话题取并集）
        now: 时间戳（默认当前 UTC 时间）
        max_responses: 保留的成功回复上限
        default_category: 首次创建且未提供分类时的默认值

    Returns:
        新的模式记录
    """
    now = now or utc_now()
    variation = query.lower()
    keywords = extract_keywords(query)

    if current is None:
        return LearningPattern(
            pattern=pattern,
            original_query=query,
            variations=[variation],
            category=category or default_category,
            topics=list(dict.fromkeys(topics or [])),
            frequency=1,
            successful_responses=[response],
            keywords=keywords,
            first_seen=now,
            last_seen=now,
        )

    variations = list(current.variations)
    if variation not in variations:
        variations.append(variation)

    responses = list(current.successful_responses)
    if response not in responses:
        responses.append(response)
    responses = responses[-max_responses:]

    return LearningPattern(
        pattern=current.pattern,
        original_query=current.original_query,
        variations=variations,
        category=category or current.category,
        topics=list(dict.fromkeys(list(current.topics) + list(topics or []))),
        frequency=current.frequency + 1,
        successful_responses=responses,
        keywords=list(dict.fromkeys(list(current.keywords) + keywords)),
        first_seen=current.first_seen,
        last_seen=now,
    )


# ==================== 学习器 ====================

class PatternLearner:
    """
    模式学习器

    Args:
        store: 模式存储
        max_successful_responses: 每个模式保留的成功回复上限
        default_category: 默认分类
    """

    def __init__(
        self,
        store: PatternStore,
        max_successful_responses: int = MAX_SUCCESSFUL_RESPONSES,
        default_category: str = DEFAULT_CATEGORY,
    ):
        self.store = store
        self.max_successful_responses = max_successful_responses
        self.default_category = default_category

    async def learn(
        self,
        query: str,
        response: str,
        category: Optional[str] = None,
        topics: Optional[List[str]] = None,
    ) -> LearningPattern:
        """
        记录一次成功交互

        Raises:
            ValueError: 查询规范化后为空
            StoreUnavailableError: 存储不可用
        """
        pattern = normalize_query(query)
        if not pattern:
            raise ValueError("查询规范化后为空，无法学习")

        def _apply(current: Optional[LearningPattern]) -> LearningPattern:
            return merge_pattern(
                current,
                pattern=pattern,
                query=query,
                response=response,
                category=category,
                topics=topics,
                max_responses=self.max_successful_responses,
                default_category=self.default_category,
            )

        learned = await self.store.upsert_pattern(pattern, _apply)
        logger.debug(f"学习模式: pattern={pattern!r}, frequency={learned.frequency}")
        return learned

    async def find_similar(self, query: str, k: int = 5) -> List[LearningPattern]:
        """
        查找相似的历史模式

        命中条件为宽松的 OR 组合（模式键子串 / 关键词交集 / 变体子串），
        按 (frequency 降序, last_seen 降序) 排序。
        """
        if k <= 0:
            return []
        return await self.store.find_similar_patterns(
            normalize_query(query),
            extract_keywords(query),
            limit=k,
        )

    async def popular_patterns(self, limit: int = 10) -> List[LearningPattern]:
        """最常见的模式"""
        return await self.store.list_popular_patterns(limit=limit)

    async def patterns_by_category(self, category: str, limit: int = 10) -> List[LearningPattern]:
        """按分类列出模式"""
        return await self.store.find_patterns_by_category(category, limit=limit)

    async def get_insights(self, top_n: int = 10) -> Dict[str, Any]:
        """
        学习概况

        Returns:
            {
                "total_patterns": int,
                "popular_categories": [{"category": str, "count": int}],
                "trending_topics": [{"topic": str, "count": int}],
            }
        """
        total = await self.store.count_patterns()
        categories = await self.store.count_patterns_by_category(limit=top_n)
        topics = await self.store.count_patterns_by_topic(limit=top_n)
        return {
            "total_patterns": total,
            "popular_categories": [
                {"category": name, "count": count} for name, count in categories
            ],
            "trending_topics": [
                {"topic": name, "count": count} for name, count in topics
            ],
        }
