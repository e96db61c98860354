"""
support-rag 配置系统

提供上下文引擎（检索 + 模式学习）的完整配置。
支持从 YAML 文件加载和环境变量覆盖。
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import dataclasses
import logging
import os

from .encoder.base import EncoderConfig
from .exceptions import ConfigError

logger = logging.getLogger(__name__)

SUPPORT_RAG_VERSION = "0.2.0"


# ==================== 子配置 ====================

@dataclass
class PersistenceDBConfig:
    """持久化数据库配置（文档存储与模式存储共用）"""
    type: str = "sqlite"                    # sqlite | postgres | memory
    sqlite_path: str = "support_rag.db"     # SQLite 数据库路径
    sqlite_busy_timeout_ms: int = 5000
    postgres_url: Optional[str] = None      # PostgreSQL 连接 URL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "support_rag"
    postgres_user: str = "support_rag"
    postgres_password: Optional[str] = None
    postgres_pool_size: int = 5
    postgres_max_overflow: int = 10


@dataclass
class RetrieverConfig:
    """混合检索配置"""
    default_top_k: int = 5
    min_similarity: float = 0.3           # 独立语义检索的相似度阈值
    hybrid_min_similarity: float = 0.2    # 混合检索中语义候选的阈值
    semantic_boost: float = 1.2           # 语义分数放大系数
    keyword_fallback_score: float = 0.5   # 关键词/子串回退匹配的固定分数
    candidate_multiplier: int = 2         # 每路候选数 = k * multiplier
    bm25_k1: float = 1.5
    bm25_b: float = 0.75
    backfill_batch_size: int = 10
    backfill_on_start: bool = True


@dataclass
class LearningConfig:
    """
    模式学习配置

    话题推断需显式开启（infer_topics=True）；关闭时只记录调用方给出的分类与话题，
    未给出分类的交互归入 default_category。
    """
    max_successful_responses: int = 10
    default_category: str = "General"
    hint_limit: int = 3                   # 注入上下文的历史模式数量
    infer_topics: bool = False            # 未提供分类时按关键词规则推断
    popular_limit: int = 10
    insights_top_n: int = 10


@dataclass
class LoggingConfig:
    """日志配置"""
    level: str = "INFO"
    format: str = "text"                  # text | json
    file: Optional[str] = None            # None = 仅 stderr
    max_bytes: int = 100 * 1024 * 1024    # 100MB
    backup_count: int = 5


# ==================== 主配置 ====================

@dataclass
class EngineConfig:
    """
    上下文引擎完整配置

    配置文件示例 (support_rag.yaml):
    ```yaml
    persistence:
      type: "sqlite"
      sqlite_path: "support_rag.db"

    encoder:
      backend: "sentence_transformer"
      model_name: "all-MiniLM-L6-v2"
      dimension: 384
      timeout_seconds: 10

    retriever:
      default_top_k: 5
      min_similarity: 0.3

    learning:
      hint_limit: 3

    logging:
      level: "INFO"
      format: "json"
    ```
    """
    persistence: PersistenceDBConfig = field(default_factory=PersistenceDBConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    version: str = field(default_factory=lambda: SUPPORT_RAG_VERSION)
    environment: str = "development"

    @classmethod
    def for_development(cls) -> "EngineConfig":
        """开发环境配置（内存存储 + 哈希编码器，无需下载模型）"""
        return cls(
            persistence=PersistenceDBConfig(type="memory"),
            encoder=EncoderConfig(backend="simple_hash", dimension=256),
            logging=LoggingConfig(level="DEBUG"),
            environment="development",
        )

    @classmethod
    def for_production(cls, postgres_url: str) -> "EngineConfig":
        """生产环境配置"""
        return cls(
            persistence=PersistenceDBConfig(
                type="postgres", postgres_url=postgres_url,
                postgres_pool_size=10,
            ),
            encoder=EncoderConfig(backend="sentence_transformer"),
            logging=LoggingConfig(level="WARNING", format="json"),
            environment="production",
        )

    def validate(self) -> List[str]:
        """验证配置，返回错误列表（空列表表示有效）"""
        errors = []
        if self.persistence.type not in ("memory", "sqlite", "postgres"):
            errors.append(f"未知的持久化类型: {self.persistence.type}")
        errors.extend(self.encoder.validate())
        r = self.retriever
        if r.default_top_k <= 0:
            errors.append("retriever.default_top_k 必须大于 0")
        for name in ("min_similarity", "hybrid_min_similarity"):
            value = getattr(r, name)
            if not -1.0 <= value <= 1.0:
                errors.append(f"retriever.{name} 必须在 [-1, 1] 之间")
        if r.candidate_multiplier < 1:
            errors.append("retriever.candidate_multiplier 必须 >= 1")
        if r.backfill_batch_size <= 0:
            errors.append("retriever.backfill_batch_size 必须大于 0")
        if self.learning.max_successful_responses <= 0:
            errors.append("learning.max_successful_responses 必须大于 0")
        if self.logging.format not in ("text", "json"):
            errors.append(f"未知的日志格式: {self.logging.format}")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """从字典创建"""
        try:
            return cls(
                persistence=PersistenceDBConfig(**data.get("persistence", {})),
                encoder=EncoderConfig.from_dict(data.get("encoder", {})),
                retriever=RetrieverConfig(**data.get("retriever", {})),
                learning=LearningConfig(**data.get("learning", {})),
                logging=LoggingConfig(**data.get("logging", {})),
                version=data.get("version", SUPPORT_RAG_VERSION),
                environment=data.get("environment", "development"),
            )
        except TypeError as e:
            raise ConfigError(f"配置字段无效: {e}") from e


def _apply_env_overrides(config: EngineConfig) -> None:
    """环境变量覆盖"""
    if os.environ.get("SUPPORT_RAG_PERSISTENCE_TYPE"):
        config.persistence.type = os.environ["SUPPORT_RAG_PERSISTENCE_TYPE"]
    if os.environ.get("SUPPORT_RAG_SQLITE_PATH"):
        config.persistence.sqlite_path = os.environ["SUPPORT_RAG_SQLITE_PATH"]
    if os.environ.get("SUPPORT_RAG_POSTGRES_URL"):
        config.persistence.postgres_url = os.environ["SUPPORT_RAG_POSTGRES_URL"]
    if os.environ.get("SUPPORT_RAG_ENCODER_BACKEND"):
        config.encoder.backend = os.environ["SUPPORT_RAG_ENCODER_BACKEND"]
    if os.environ.get("SUPPORT_RAG_ENCODER_MODEL"):
        config.encoder.model_name = os.environ["SUPPORT_RAG_ENCODER_MODEL"]
    if os.environ.get("SUPPORT_RAG_ENCODER_DEVICE"):
        config.encoder.device = os.environ["SUPPORT_RAG_ENCODER_DEVICE"]
    if os.environ.get("SUPPORT_RAG_LOG_LEVEL"):
        config.logging.level = os.environ["SUPPORT_RAG_LOG_LEVEL"]
    if os.environ.get("SUPPORT_RAG_LOG_FORMAT"):
        config.logging.format = os.environ["SUPPORT_RAG_LOG_FORMAT"]
    if os.environ.get("SUPPORT_RAG_ENVIRONMENT"):
        config.environment = os.environ["SUPPORT_RAG_ENVIRONMENT"]


def load_config(config_path: str) -> EngineConfig:
    """
    从 YAML 文件加载配置

    Args:
        config_path: YAML 配置文件路径

    Returns:
        EngineConfig 实例

    Raises:
        ConfigError: 配置无效

    支持环境变量覆盖:
        SUPPORT_RAG_PERSISTENCE_TYPE, SUPPORT_RAG_SQLITE_PATH,
        SUPPORT_RAG_POSTGRES_URL,
        SUPPORT_RAG_ENCODER_BACKEND, SUPPORT_RAG_ENCODER_MODEL,
        SUPPORT_RAG_ENCODER_DEVICE,
        SUPPORT_RAG_LOG_LEVEL, SUPPORT_RAG_LOG_FORMAT,
        SUPPORT_RAG_ENVIRONMENT
    """
    try:
        import yaml
    except ImportError:
        raise ImportError("需要安装 PyYAML: pip install pyyaml")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是映射: {config_path}")

    config = EngineConfig.from_dict(data)
    _apply_env_overrides(config)

    errors = config.validate()
    if errors:
        raise ConfigError(
            "配置无效:\n" + "\n".join(f"  - {e}" for e in errors)
        )

    logger.info(f"Config loaded from {config_path}, environment={config.environment}")
    return config
