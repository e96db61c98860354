"""
support-rag 学习模块

- PatternLearner: 按规范化查询累积历史交互
- TopicClassifier: 基于关键词规则的话题推断
"""

from .pattern_learner import (
    PatternLearner,
    STOP_WORDS,
    normalize_query,
    extract_keywords,
    merge_pattern,
)
from .topics import TopicClassifier, TopicRule, TopicMatch, DEFAULT_TOPIC_RULES

__all__ = [
    "PatternLearner",
    "STOP_WORDS",
    "normalize_query",
    "extract_keywords",
    "merge_pattern",
    "TopicClassifier",
    "TopicRule",
    "TopicMatch",
    "DEFAULT_TOPIC_RULES",
]
