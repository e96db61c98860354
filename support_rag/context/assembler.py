"""
上下文组装

将三类信息按固定顺序拼成 LLM 提示词上下文:

    Previous Conversation Context:
    <对话历史>
    \\n---\\n
    Learning from Historical Patterns:
    <历史模式>
    \\n---\\n
    Relevant Documentation:
    <检索文档>

任一部分为空时整段省略（包括分隔符）。
"""

import logging
from typing import List

from ..types import LearningPattern, SearchResult

logger = logging.getLogger(__name__)


CONVERSATION_HEADER = "Previous Conversation Context:"
LEARNING_HEADER = "Learning from Historical Patterns:"
DOCUMENTATION_HEADER = "Relevant Documentation:"

SECTION_SEPARATOR = "\n---\n\n"
DOCUMENT_SEPARATOR = "\n\n---\n\n"
PATTERN_SEPARATOR = "\n---\n\n"

# 每个模式最多展示的相似写法数量
MAX_SHOWN_VARIATIONS = 3


def format_documents(results: List[SearchResult]) -> str:
    """
    格式化检索文档

    每条: "[category] title (relevance: 87.5%)\\ncontent"
    """
    return DOCUMENT_SEPARATOR.join(
        f"[{r.document.category}] {r.document.title} "
        f"(relevance: {r.score * 100:.1f}%)\n{r.document.content}"
        for r in results
    )


def format_learning_hints(patterns: List[LearningPattern]) -> str:
    """格式化历史模式（无模式时返回空字符串）"""
    blocks = []
    for p in patterns:
        block = f'Pattern: "{p.original_query}" (seen {p.frequency} times)\n'
        if p.successful_responses:
            block += f"Previously successful response: {p.last_response}\n"
        if len(p.variations) > 1:
            block += f"Similar queries: {', '.join(p.variations[:MAX_SHOWN_VARIATIONS])}\n"
        blocks.append(block)
    return PATTERN_SEPARATOR.join(blocks)


class ContextAssembler:
    """上下文组装器"""

    def assemble(
        self,
        conversation_context: str,
        learning_hints: str,
        retrieved_docs: str,
    ) -> str:
        """
        组装上下文

        Args:
            conversation_context: 对话历史（由调用方提供）
            learning_hints: 已格式化的历史模式
            retrieved_docs: 已格式化的检索文档

        Returns:
            组装后的上下文；三部分均为空时返回空字符串
        """
        parts: List[str] = []

        if conversation_context:
            parts.append(CONVERSATION_HEADER)
            parts.append(conversation_context)

        if learning_hints:
            if parts:
                parts.append(SECTION_SEPARATOR)
            parts.append(LEARNING_HEADER)
            parts.append(learning_hints)

        if retrieved_docs:
            if parts:
                parts.append(SECTION_SEPARATOR)
            parts.append(DOCUMENTATION_HEADER)
            parts.append(retrieved_docs)

        return "\n".join(parts)
