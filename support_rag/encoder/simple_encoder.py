"""
简单哈希编码器

基于特征哈希（feature hashing）的轻量级编码器，不依赖任何 ML 模型。
适用于测试、开发和快速原型验证。

特点:
  - 零外部依赖（仅使用标准库）
  - 确定性（相同输入 -> 相同输出）
  - 极快（微秒级）
  - 词袋级相似度：共享词越多，余弦相似度越高（非语义嵌入）

注意:
  此编码器不提供真正的语义理解能力。
  在生产环境中应使用 SentenceTransformerEncoder。
"""

import hashlib
import math
import re
import logging
from typing import List

from .base import BaseEncoder, EncoderConfig

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")


class SimpleHashEncoder(BaseEncoder):
    """
    简单哈希编码器

    编码流程:
        text -> 小写分词 -> 每个 token SHA-256 -> (桶下标, 符号) 累加 -> L2 归一化
    """

    def __init__(self, config: EncoderConfig):
        super().__init__(config)

    def _initialize(self) -> None:
        """无需初始化"""
        self._dimension = self.config.dimension
        logger.info(f"SimpleHashEncoder 初始化: dimension={self.config.dimension}")

    def _encode_texts(self, texts: List[str]) -> List[List[float]]:
        """批量编码文本"""
        return [self._hash_to_vector(text, self.config.dimension) for text in texts]

    def _hash_to_vector(self, text: str, dim: int) -> List[float]:
        """
        将文本哈希为指定维度的向量

        空文本得到零向量（与任何向量的余弦相似度为 0）。
        """
        vector = [0.0] * dim
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "big") % dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign

        if self.config.normalize:
            norm = math.sqrt(sum(v * v for v in vector))
            if norm > 1e-10:
                vector = [v / norm for v in vector]
        return vector
