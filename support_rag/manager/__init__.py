"""
support-rag 上下文引擎
"""

from .context_engine import ContextEngine, ConversationCounter

__all__ = ["ContextEngine", "ConversationCounter"]
