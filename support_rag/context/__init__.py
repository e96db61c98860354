"""
support-rag 上下文组装模块
"""

from .assembler import (
    ContextAssembler,
    format_documents,
    format_learning_hints,
    CONVERSATION_HEADER,
    LEARNING_HEADER,
    DOCUMENTATION_HEADER,
    SECTION_SEPARATOR,
)

__all__ = [
    "ContextAssembler",
    "format_documents",
    "format_learning_hints",
    "CONVERSATION_HEADER",
    "LEARNING_HEADER",
    "DOCUMENTATION_HEADER",
    "SECTION_SEPARATOR",
]
