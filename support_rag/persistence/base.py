"""
support-rag 持久化适配器抽象基类

定义两类存储接口：
- DocumentStore: 知识文档（含可选向量、使用计数、全文检索）
- PatternStore: 学习模式（按规范化查询唯一，原子 upsert）

PersistenceAdapter 组合两者并增加连接管理，一个后端同时提供两类存储。

错误约定:
    驱动层错误（连接断开、SQL 错误等）统一转换为 StoreUnavailableError，
    原始异常通过 __cause__ 保留。
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Tuple, Callable

from ..types import KnowledgeDocument, LearningPattern

# upsert 回调: 输入当前模式（不存在时为 None），返回写入后的模式
PatternUpdater = Callable[[Optional[LearningPattern]], LearningPattern]


class DocumentStore(ABC):
    """
    知识文档存储

    文档只会被追加、整体替换或做计数/向量的局部更新，核心流程不删除文档。
    """

    # ==================== 文档 CRUD ====================

    @abstractmethod
    async def save_document(self, document: KnowledgeDocument) -> KnowledgeDocument:
        """
        保存文档（按 doc_id upsert）

        已存在时保留 created_at 与 usage_count，其余字段整体替换
        （embedding 为 None 时清除旧向量，由后台补全任务重新计算）。

        Args:
            document: 文档

        Returns:
            写入后的文档（含时间戳）
        """
        ...

    @abstractmethod
    async def save_documents(self, documents: List[KnowledgeDocument]) -> int:
        """
        批量保存

        Returns:
            成功保存的数量
        """
        ...

    @abstractmethod
    async def get_document(self, doc_id: str) -> Optional[KnowledgeDocument]:
        """按 ID 获取文档"""
        ...

    @abstractmethod
    async def delete_document(self, doc_id: str) -> bool:
        """删除文档（仅供运维使用）"""
        ...

    @abstractmethod
    async def list_documents(self, limit: int = 100, offset: int = 0) -> List[KnowledgeDocument]:
        """按创建顺序列出文档"""
        ...

    # ==================== 检索辅助查询 ====================

    @abstractmethod
    async def find_with_vectors(self) -> List[KnowledgeDocument]:
        """获取所有带向量的文档（向量是否有效由调用方判断）"""
        ...

    @abstractmethod
    async def find_without_vectors(
        self,
        limit: int = 10,
        dimension: Optional[int] = None,
    ) -> List[KnowledgeDocument]:
        """
        获取需要计算向量的文档

        向量缺失、包含 NaN/Inf，或维度与 dimension 不符（dimension 非 None 时）
        的文档都视为没有向量。
        """
        ...

    @abstractmethod
    async def find_by_keywords(
        self,
        tokens: List[str],
        phrase: str,
        limit: int = 10,
    ) -> List[KnowledgeDocument]:
        """
        关键词/子串回退匹配

        命中条件（任一即可）:
            - 文档 keywords 与 tokens 有交集（不区分大小写）
            - phrase 是标题的子串（不区分大小写）
            - phrase 是正文的子串（不区分大小写）

        Args:
            tokens: 查询词（已小写）
            phrase: 完整查询（已小写，空字符串表示不做子串匹配）
            limit: 最大数量

        Returns:
            命中文档，按 updated_at 降序（最近更新的在前）后截断到 limit
        """
        ...

    @abstractmethod
    async def find_by_category(self, category: str, limit: int = 100) -> List[KnowledgeDocument]:
        """按分类获取文档"""
        ...

    @property
    def supports_full_text(self) -> bool:
        """是否支持引擎原生全文检索"""
        return False

    async def full_text_search(
        self,
        query: str,
        limit: int = 10,
    ) -> List[Tuple[KnowledgeDocument, float]]:
        """
        引擎原生全文检索

        Returns:
            [(document, raw_score)]，raw_score > 0，按分数降序
        """
        return []

    # ==================== 局部更新 ====================

    @abstractmethod
    async def increment_usage(self, doc_ids: List[str]) -> None:
        """原子地将每个文档的 usage_count 加 1"""
        ...

    @abstractmethod
    async def set_embedding(self, doc_id: str, embedding: List[float]) -> bool:
        """
        写入文档向量

        Raises:
            MalformedVectorError: 向量为空或包含 NaN/Inf
        """
        ...

    # ==================== 统计 ====================

    @abstractmethod
    async def count_documents(self) -> int:
        """文档总数"""
        ...

    @abstractmethod
    async def count_documents_by_category(self) -> Dict[str, int]:
        """按分类统计文档数"""
        ...


class PatternStore(ABC):
    """
    学习模式存储

    pattern（规范化查询）唯一；并发 upsert 同一个 key 永远只产生一条记录。
    """

    @abstractmethod
    async def get_pattern(self, pattern: str) -> Optional[LearningPattern]:
        """按规范化查询获取模式"""
        ...

    @abstractmethod
    async def upsert_pattern(self, pattern: str, updater: PatternUpdater) -> LearningPattern:
        """
        原子 find-or-create-then-update

        在存储自身的并发控制下读取当前记录，调用 updater 计算新记录并写回。
        并发创建冲突由存储内部重试为更新，不向调用方抛出。

        Args:
            pattern: 规范化查询（唯一键）
            updater: 纯函数，输入当前记录或 None，返回新记录

        Returns:
            写入后的记录
        """
        ...

    @abstractmethod
    async def find_similar_patterns(
        self,
        pattern: str,
        keywords: List[str],
        limit: int = 5,
    ) -> List[LearningPattern]:
        """
        查找相似模式

        命中条件（任一即可）:
            - pattern 是已存模式键的子串
            - 已存 keywords 与 keywords 有交集
            - pattern 是任一已存变体的子串

        按 (frequency 降序, last_seen 降序) 排序后截断。
        """
        ...

    @abstractmethod
    async def list_popular_patterns(self, limit: int = 10) -> List[LearningPattern]:
        """按 (frequency 降序, last_seen 降序) 列出模式"""
        ...

    @abstractmethod
    async def find_patterns_by_category(self, category: str, limit: int = 10) -> List[LearningPattern]:
        """按分类列出模式（frequency 降序）"""
        ...

    @abstractmethod
    async def count_patterns(self) -> int:
        """模式总数"""
        ...

    @abstractmethod
    async def count_patterns_by_category(self, limit: int = 10) -> List[Tuple[str, int]]:
        """按分类统计模式数，[(category, count)] 降序"""
        ...

    @abstractmethod
    async def count_patterns_by_topic(self, limit: int = 10) -> List[Tuple[str, int]]:
        """按话题统计模式数（每个话题单独计数），[(topic, count)] 降序"""
        ...


class PersistenceAdapter(DocumentStore, PatternStore):
    """
    持久化适配器

    同时提供 DocumentStore 与 PatternStore，并负责连接生命周期。
    """

    # ==================== 连接管理 ====================

    @abstractmethod
    async def connect(self) -> bool:
        """建立连接"""
        ...

    @abstractmethod
    async def disconnect(self):
        """断开连接"""
        ...

    @abstractmethod
    async def is_connected(self) -> bool:
        """检查连接状态"""
        ...

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """健康检查"""
        ...
