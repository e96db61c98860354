"""
support-rag 异常定义
"""


class SupportRagError(Exception):
    """上下文引擎基础异常"""
    pass


class PersistenceError(SupportRagError):
    """持久化错误"""
    pass


class StoreUnavailableError(PersistenceError):
    """存储不可用（连接断开、驱动错误等）"""
    pass


class PatternWriteConflictError(PersistenceError):
    """并发创建同一模式时的唯一约束冲突（由存储层转换为更新重试）"""
    pass


class EncoderError(SupportRagError):
    """编码器错误"""
    pass


class EmbeddingUnavailableError(EncoderError):
    """嵌入模型不可用或超时（调用方应降级为纯关键词检索）"""
    pass


class MalformedVectorError(EncoderError):
    """向量格式错误（维度不符、包含 NaN/Inf）"""
    pass


class ConfigError(SupportRagError):
    """配置错误"""
    pass
