"""
support-rag 编码器模块

提供可配置的文本到向量编码能力（EmbeddingProvider）。

设计原则:
  1. 配置驱动：编码器类型和参数通过配置指定
  2. 延迟加载：模型在首次使用时才初始化，且只加载一次
  3. 可降级：编码器不可用时检索退化为纯关键词模式
"""

from typing import Optional

from .base import BaseEncoder, EncoderConfig
from .sentence_transformer_encoder import SentenceTransformerEncoder
from .simple_encoder import SimpleHashEncoder

__all__ = [
    "BaseEncoder",
    "EncoderConfig",
    "SentenceTransformerEncoder",
    "SimpleHashEncoder",
    "create_encoder",
]


def create_encoder(config: "EncoderConfig") -> Optional["BaseEncoder"]:
    """
    根据配置创建编码器

    Args:
        config: 编码器配置

    Returns:
        BaseEncoder 实例；backend="none" 时返回 None（纯关键词检索）
    """
    if config.backend == "sentence_transformer":
        return SentenceTransformerEncoder(config)
    elif config.backend == "simple_hash":
        return SimpleHashEncoder(config)
    elif config.backend == "none":
        return None
    else:
        raise ValueError(
            f"未知的编码器后端: {config.backend}。"
            f"支持: sentence_transformer, simple_hash, none"
        )
