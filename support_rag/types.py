"""
support-rag 数据类型定义

知识文档（KnowledgeDocument）、学习模式（LearningPattern）
以及检索过程中的临时结果（SearchResult / RetrievalOutcome）。

时间戳统一使用 ISO-8601 字符串（UTC），与持久化层保持一致。
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
import json
import math


# 每个模式最多保留的成功回复数量（超出时淘汰最旧的）
MAX_SUCCESSFUL_RESPONSES = 10

# 未指定分类时的默认分类
DEFAULT_CATEGORY = "General"


def utc_now() -> str:
    """当前 UTC 时间（ISO-8601）"""
    return datetime.now(timezone.utc).isoformat()


class Provenance(str, Enum):
    """检索结果来源"""
    SEMANTIC = "semantic"  # 仅语义检索命中
    KEYWORD = "keyword"    # 仅关键词检索命中
    HYBRID = "hybrid"      # 两路均命中


class DegradedReason(str, Enum):
    """降级原因"""
    EMBEDDING_UNAVAILABLE = "embedding_unavailable"  # 嵌入模型不可用/超时
    NO_VECTORS = "no_vectors"                        # 语料中没有可用向量
    KEYWORD_UNAVAILABLE = "keyword_unavailable"      # 全文检索失败，仅回退匹配可用
    STORE_UNAVAILABLE = "store_unavailable"          # 文档存储不可用


def is_valid_vector(vector: Optional[List[float]], dim: Optional[int] = None) -> bool:
    """
    检查向量是否可用

    空向量、包含 NaN/Inf 的向量、维度与 dim 不符的向量均视为不存在。
    """
    if not vector:
        return False
    if dim is not None and len(vector) != dim:
        return False
    try:
        return all(math.isfinite(float(v)) for v in vector)
    except (TypeError, ValueError):
        return False


@dataclass
class KnowledgeDocument:
    """
    知识文档

    向量在入库后由后台任务按需补全（embedding 为 None 表示尚未计算）。
    usage_count 只增不减，每次出现在最终检索结果中加 1。
    """
    doc_id: str
    title: str
    content: str
    category: str = DEFAULT_CATEGORY
    keywords: List[str] = field(default_factory=list)  # 去重、保持插入顺序
    embedding: Optional[List[float]] = None
    usage_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        self.keywords = list(dict.fromkeys(self.keywords or []))

    def has_vector(self, dim: Optional[int] = None) -> bool:
        """是否带有可用向量"""
        return is_valid_vector(self.embedding, dim)

    @property
    def embedding_text(self) -> str:
        """用于计算向量的文本"""
        return f"{self.title} {self.content}"

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'doc_id': self.doc_id,
            'title': self.title,
            'content': self.content,
            'category': self.category,
            'keywords': list(self.keywords),
            'embedding': list(self.embedding) if self.embedding is not None else None,
            'usage_count': self.usage_count,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeDocument":
        """从字典创建"""
        embedding = data.get('embedding')
        return cls(
            doc_id=data['doc_id'],
            title=data.get('title', ''),
            content=data.get('content', ''),
            category=data.get('category') or DEFAULT_CATEGORY,
            keywords=list(data.get('keywords') or []),
            embedding=[float(v) for v in embedding] if embedding else None,
            usage_count=data.get('usage_count', 0),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )

    def to_json(self) -> str:
        """序列化为 JSON"""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, json_str: str) -> "KnowledgeDocument":
        """从 JSON 反序列化"""
        return cls.from_dict(json.loads(json_str))


@dataclass
class LearningPattern:
    """
    学习模式

    以规范化后的查询为唯一键，累积同类查询的出现频率、
    原始写法变体和最近的成功回复。
    """
    pattern: str                                    # 规范化查询（唯一键）
    original_query: str                             # 首次出现时的原始查询
    variations: List[str] = field(default_factory=list)
    category: str = DEFAULT_CATEGORY
    topics: List[str] = field(default_factory=list)
    frequency: int = 1
    successful_responses: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None

    @property
    def last_response(self) -> Optional[str]:
        """最近一次成功回复"""
        return self.successful_responses[-1] if self.successful_responses else None

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            'pattern': self.pattern,
            'original_query': self.original_query,
            'variations': list(self.variations),
            'category': self.category,
            'topics': list(self.topics),
            'frequency': self.frequency,
            'successful_responses': list(self.successful_responses),
            'keywords': list(self.keywords),
            'first_seen': self.first_seen,
            'last_seen': self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningPattern":
        """从字典创建"""
        return cls(
            pattern=data['pattern'],
            original_query=data.get('original_query', ''),
            variations=list(data.get('variations') or []),
            category=data.get('category') or DEFAULT_CATEGORY,
            topics=list(data.get('topics') or []),
            frequency=data.get('frequency', 1),
            successful_responses=list(data.get('successful_responses') or []),
            keywords=list(data.get('keywords') or []),
            first_seen=data.get('first_seen'),
            last_seen=data.get('last_seen'),
        )

    def to_json(self) -> str:
        """序列化为 JSON"""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, json_str: str) -> "LearningPattern":
        """从 JSON 反序列化"""
        return cls.from_dict(json.loads(json_str))


@dataclass
class SearchResult:
    """单条检索结果（临时对象，不持久化）"""
    document: KnowledgeDocument
    score: float
    provenance: Provenance

    @property
    def doc_id(self) -> str:
        return self.document.doc_id

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（不含向量）"""
        doc = self.document.to_dict()
        doc.pop('embedding', None)
        return {
            'document': doc,
            'score': self.score,
            'provenance': self.provenance.value,
        }


@dataclass
class RetrievalOutcome:
    """
    检索结果 + 降级标记

    在降级链中逐层传递，代替嵌套的异常处理。
    degraded_reason 为 None 表示该路检索正常完成。
    """
    results: List[SearchResult] = field(default_factory=list)
    degraded_reason: Optional[DegradedReason] = None

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None

    @classmethod
    def degraded_with(cls, reason: DegradedReason) -> "RetrievalOutcome":
        """构造一个空的降级结果"""
        return cls(results=[], degraded_reason=reason)
