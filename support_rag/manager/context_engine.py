"""
support-rag Context Engine

面向聊天流水线的上下文引擎，负责：
- 混合检索相关文档（语义 + 关键词，嵌入不可用时自动降级）
- 从历史交互中学习并提供相似模式
- 组装注入 LLM 的上下文字符串
- 统计与学习概况

使用示例：
    from support_rag.manager import ContextEngine
    from support_rag.config import EngineConfig

    engine = ContextEngine(EngineConfig.for_development())
    await engine.start()

    await engine.add_document("Alert Management", "How to triage alerts...", category="Alerts")

    context = await engine.build_context("how do I acknowledge an alert?")
    # ... LLM 生成回复 ...
    await engine.record_interaction("how do I acknowledge an alert?", reply)

    await engine.stop()
"""

import asyncio
import logging
import time
import uuid
from typing import Optional, Dict, Any, List, Callable, Awaitable

from ..config import EngineConfig, load_config
from ..context import ContextAssembler, format_documents, format_learning_hints
from ..encoder import create_encoder
from ..encoder.base import BaseEncoder
from ..exceptions import EmbeddingUnavailableError, SupportRagError
from ..learning import PatternLearner, TopicClassifier
from ..logging_setup import configure_logging
from ..persistence import PersistenceAdapter, create_adapter
from ..retriever import HybridRetriever
from ..types import KnowledgeDocument, LearningPattern, SearchResult, DEFAULT_CATEGORY

logger = logging.getLogger(__name__)

# 外部会话计数器（返回累计会话数）
ConversationCounter = Callable[[], Awaitable[int]]


class ContextEngine:
    """
    上下文引擎

    面向聊天流水线的检索/学习接口。

    职责：
    - 管理存储连接与编码器生命周期
    - 检索文档并格式化为提示词片段
    - 记录成功交互，累积学习模式
    - 提供学习概况

    特性：
    - 失败开放：retrieve_context / build_context / record_interaction 从不抛出
    - 嵌入不可用时退化为纯关键词检索
    - 缺失向量由后台任务补全
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[PersistenceAdapter] = None,
        encoder: Optional[BaseEncoder] = None,
        conversation_counter: Optional[ConversationCounter] = None,
    ):
        """
        初始化上下文引擎

        Args:
            config: 引擎配置（默认 EngineConfig()）
            store: 持久化适配器（None 时按 config.persistence 创建）
            encoder: 编码器（None 时按 config.encoder 创建；backend="none" 表示不使用嵌入）
            conversation_counter: 外部会话计数器，用于 get_insights
        """
        self.config = config or EngineConfig()
        self.conversation_counter = conversation_counter

        # 组件
        self.store = store or create_adapter(self._adapter_config())
        self.encoder = encoder if encoder is not None else create_encoder(self.config.encoder)
        self.retriever = HybridRetriever(self.store, self.encoder, self.config.retriever)
        self.learner = PatternLearner(
            self.store,
            max_successful_responses=self.config.learning.max_successful_responses,
            default_category=self.config.learning.default_category,
        )
        self.assembler = ContextAssembler()
        self.classifier = TopicClassifier()

        # 状态
        self._running = False
        self._start_time: Optional[float] = None

        # 统计
        self._stats = {
            "context_requests": 0,
            "context_failures": 0,
            "interactions_recorded": 0,
            "interaction_failures": 0,
            "documents_added": 0,
        }

    @classmethod
    def from_config_file(cls, path: str, setup_logging: bool = True, **kwargs) -> "ContextEngine":
        """从 YAML 配置文件创建引擎（可选同时配置日志）"""
        config = load_config(path)
        if setup_logging:
            configure_logging(config.logging)
        return cls(config, **kwargs)

    def _adapter_config(self) -> Dict[str, Any]:
        persistence_config = self.config.persistence
        return {
            "type": persistence_config.type,
            "sqlite_path": persistence_config.sqlite_path,
            "sqlite_busy_timeout_ms": persistence_config.sqlite_busy_timeout_ms,
            "postgres_url": persistence_config.postgres_url,
            "postgres_host": persistence_config.postgres_host,
            "postgres_port": persistence_config.postgres_port,
            "postgres_database": persistence_config.postgres_database,
            "postgres_user": persistence_config.postgres_user,
            "postgres_password": persistence_config.postgres_password,
            "postgres_pool_size": persistence_config.postgres_pool_size,
            "postgres_max_overflow": persistence_config.postgres_max_overflow,
            "bm25_k1": self.config.retriever.bm25_k1,
            "bm25_b": self.config.retriever.bm25_b,
        }

    # ==================== 生命周期 ====================

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """启动引擎：连接存储、预热编码器、触发向量补全"""
        if self._running:
            return

        self._start_time = time.time()

        if not await self.store.is_connected():
            await self.store.connect()

        if self.encoder is not None:
            try:
                await asyncio.to_thread(self.encoder.warmup)
            except EmbeddingUnavailableError as e:
                logger.warning(f"编码器预热失败，检索将降级为纯关键词模式: {e}")
        else:
            logger.info("未配置编码器，检索使用纯关键词模式")

        self._running = True

        if self.config.retriever.backfill_on_start:
            self.retriever.backfiller.trigger()

        logger.info(
            f"ContextEngine started: store={type(self.store).__name__}, "
            f"encoder={self.encoder!r}, environment={self.config.environment}"
        )

    async def stop(self):
        """停止引擎"""
        self._running = False

        await self.retriever.backfiller.stop()
        await self.store.disconnect()
        if self.encoder is not None:
            self.encoder.shutdown()

        logger.info("ContextEngine stopped")

    async def __aenter__(self) -> "ContextEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # ==================== 聊天流水线接口 ====================

    async def retrieve_context(self, query: str, k: Optional[int] = None) -> str:
        """
        检索相关文档并格式化

        Args:
            query: 用户消息
            k: 文档数量（默认 retriever.default_top_k）

        Returns:
            格式化后的文档片段；无结果或失败时返回空字符串
        """
        self._stats["context_requests"] += 1
        return await self._retrieve_documents(query, k)

    async def build_context(
        self,
        query: str,
        conversation_context: str = "",
        k: Optional[int] = None,
        hint_limit: Optional[int] = None,
    ) -> str:
        """
        组装完整上下文（对话历史 + 历史模式 + 检索文档）

        文档检索与模式查找并发执行，任一失败时对应部分为空。

        Args:
            query: 用户消息
            conversation_context: 调用方提供的对话历史
            k: 文档数量
            hint_limit: 历史模式数量（默认 learning.hint_limit）

        Returns:
            组装后的上下文字符串
        """
        self._stats["context_requests"] += 1
        docs, hints = await asyncio.gather(
            self._retrieve_documents(query, k),
            self._learning_hints(query, hint_limit),
        )
        return self.assembler.assemble(conversation_context, hints, docs)

    async def record_interaction(
        self,
        query: str,
        response: str,
        category: Optional[str] = None,
        topics: Optional[List[str]] = None,
    ) -> Optional[LearningPattern]:
        """
        记录一次成功交互（可 fire-and-forget 调用）

        失败只记录日志，不向调用方抛出。

        Returns:
            写入后的模式；失败时返回 None
        """
        if self.config.learning.infer_topics and not category and not topics:
            match = self.classifier.classify(query)
            if match is not None:
                category, topics = match.category, match.topics

        try:
            learned = await self.learner.learn(query, response, category=category, topics=topics)
        except ValueError as e:
            self._stats["interaction_failures"] += 1
            logger.warning(f"忽略交互记录: {e}")
            return None
        except SupportRagError as e:
            self._stats["interaction_failures"] += 1
            logger.error(f"记录交互失败: {e}")
            return None

        self._stats["interactions_recorded"] += 1
        return learned

    async def get_insights(self) -> Dict[str, Any]:
        """
        学习概况

        Returns:
            {
                "total_patterns": int,
                "total_conversations": int,
                "popular_categories": [{"category", "count"}],
                "trending_topics": [{"topic", "count"}],
            }

        Raises:
            StoreUnavailableError: 模式存储不可用
        """
        insights = await self.learner.get_insights(top_n=self.config.learning.insights_top_n)
        return {
            "total_patterns": insights["total_patterns"],
            "total_conversations": await self._count_conversations(),
            "popular_categories": insights["popular_categories"],
            "trending_topics": insights["trending_topics"],
        }

    async def _retrieve_documents(self, query: str, k: Optional[int]) -> str:
        try:
            outcome = await self.retriever.retrieve(query, k)
        except SupportRagError as e:
            self._stats["context_failures"] += 1
            logger.error(f"检索失败，返回空上下文: {e}")
            return ""
        return format_documents(outcome.results)

    async def _learning_hints(self, query: str, limit: Optional[int]) -> str:
        limit = self.config.learning.hint_limit if limit is None else limit
        try:
            patterns = await self.learner.find_similar(query, k=limit)
        except SupportRagError as e:
            self._stats["context_failures"] += 1
            logger.error(f"查找历史模式失败: {e}")
            return ""
        return format_learning_hints(patterns)

    async def _count_conversations(self) -> int:
        if self.conversation_counter is None:
            return 0
        try:
            return int(await self.conversation_counter())
        except Exception as e:
            logger.warning(f"会话计数不可用: {e}")
            return 0

    # ==================== 文档管理 ====================

    async def add_document(
        self,
        title: str,
        content: str,
        category: str = DEFAULT_CATEGORY,
        keywords: Optional[List[str]] = None,
        doc_id: Optional[str] = None,
    ) -> KnowledgeDocument:
        """
        添加文档

        编码器可用时立即计算向量；否则文档先入库，由后台任务补全。

        Args:
            title: 标题
            content: 正文
            category: 分类
            keywords: 关键词
            doc_id: 文档 ID（默认自动生成）

        Returns:
            写入后的文档
        """
        document = KnowledgeDocument(
            doc_id=doc_id or uuid.uuid4().hex,
            title=title,
            content=content,
            category=category or DEFAULT_CATEGORY,
            keywords=keywords or [],
        )

        needs_backfill = False
        if self.encoder is not None:
            try:
                document.embedding = await self.encoder.aembed(document.embedding_text)
            except EmbeddingUnavailableError as e:
                needs_backfill = True
                logger.warning(f"文档向量计算失败，稍后补全: doc_id={document.doc_id}, error={e}")

        saved = await self.store.save_document(document)
        self._stats["documents_added"] += 1
        if needs_backfill:
            self.retriever.backfiller.trigger()
        return saved

    async def add_documents(self, documents: List[KnowledgeDocument]) -> int:
        """批量添加文档（向量由后台任务补全）"""
        count = await self.store.save_documents(documents)
        self._stats["documents_added"] += count
        self.retriever.backfiller.trigger()
        logger.info(f"Added {count} documents")
        return count

    async def generate_embeddings(self, wait: bool = False) -> bool:
        """
        触发向量补全

        Args:
            wait: 是否等待补全完成

        Returns:
            是否启动了补全任务（编码器不可用时为 False）
        """
        task = self.retriever.backfiller.trigger()
        if task is not None and wait:
            await self.retriever.backfiller.wait()
        return task is not None

    # ==================== 查询接口 ====================

    async def search(self, query: str, k: Optional[int] = None) -> List[SearchResult]:
        """混合检索（带分数与来源）"""
        outcome = await self.retriever.retrieve(query, k)
        return outcome.results

    async def semantic_search(
        self,
        query: str,
        k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> List[SearchResult]:
        """独立语义检索（默认阈值 retriever.min_similarity）"""
        outcome = await self.retriever.semantic_search(query, k, min_similarity)
        return outcome.results

    async def popular_patterns(self, limit: Optional[int] = None) -> List[LearningPattern]:
        """最常见的学习模式"""
        limit = self.config.learning.popular_limit if limit is None else limit
        return await self.learner.popular_patterns(limit=limit)

    async def patterns_by_category(
        self,
        category: str,
        limit: Optional[int] = None,
    ) -> List[LearningPattern]:
        """按分类列出学习模式"""
        limit = self.config.learning.popular_limit if limit is None else limit
        return await self.learner.patterns_by_category(category, limit=limit)

    # ==================== 统计 ====================

    def get_stats(self) -> Dict[str, Any]:
        """获取引擎统计"""
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            "running": self._running,
            "uptime_seconds": uptime,
            "store": type(self.store).__name__,
            **self._stats,
            "retriever": self.retriever.get_stats(),
        }
