"""
support-rag：支持聊天机器人的上下文引擎

为客服聊天流水线提供 LLM 提示词上下文，负责：
- 知识文档存储（Memory / SQLite / PostgreSQL）
- 文本嵌入（SentenceTransformer / SimpleHash）
- 混合检索（全量余弦相似度 + 关键词/全文检索，分数融合）
- 模式学习（按规范化查询累积历史交互）
- 上下文组装（对话历史 + 历史模式 + 相关文档）

降级说明：
    嵌入模型不可用或超时时，检索自动退化为纯关键词模式，
    对调用方透明；缺失的文档向量由后台任务补全。

安装:
    pip install support-rag
    pip install "support-rag[embeddings,postgres]"

使用:
    from support_rag import ContextEngine
    from support_rag.config import EngineConfig
"""

__version__ = "0.2.0"

from .manager.context_engine import ContextEngine
from .config import EngineConfig, load_config
from .types import KnowledgeDocument, LearningPattern, SearchResult

__all__ = [
    "ContextEngine",
    "EngineConfig",
    "load_config",
    "KnowledgeDocument",
    "LearningPattern",
    "SearchResult",
    "__version__",
]
