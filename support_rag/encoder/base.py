"""
support-rag 编码器抽象基类

定义文本到向量的编码协议（EmbeddingProvider）。

关键约束:
  - 同一语料中的向量维度一致（dimension，默认 384）
  - 编码器必须保证相同文本的编码结果一致（确定性）
  - 模型加载在每个编码器实例上最多发生一次（single-flight）
  - 模型不可用或超时统一抛出 EmbeddingUnavailableError，由调用方降级
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

import logging

from ..exceptions import EmbeddingUnavailableError
from ..types import is_valid_vector

logger = logging.getLogger(__name__)


@dataclass
class EncoderConfig:
    """
    编码器配置

    配置示例 (YAML):
    ```yaml
    encoder:
      backend: "sentence_transformer"   # sentence_transformer | simple_hash | none
      model_name: "all-MiniLM-L6-v2"
      dimension: 384
      device: "cpu"
      batch_size: 32
      normalize: true
      cache_enabled: true
      cache_max_size: 10000
      timeout_seconds: 10
    ```
    """
    backend: str = "sentence_transformer"
    model_name: str = "all-MiniLM-L6-v2"
    dimension: int = 384            # 向量维度（模型加载后以模型实际维度为准）
    device: str = "cpu"
    batch_size: int = 32
    normalize: bool = True          # 是否 L2 归一化输出
    cache_enabled: bool = True
    cache_max_size: int = 10000
    timeout_seconds: Optional[float] = 10.0  # 异步编码超时，None 不限制
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncoderConfig":
        """从字典创建"""
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)

    def validate(self) -> List[str]:
        """验证配置"""
        errors = []
        if self.backend not in ("sentence_transformer", "simple_hash", "none"):
            errors.append(f"未知的编码器后端: {self.backend}")
        if self.dimension <= 0:
            errors.append("dimension 必须大于 0")
        if self.batch_size <= 0:
            errors.append("batch_size 必须大于 0")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            errors.append("timeout_seconds 必须大于 0")
        return errors


class BaseEncoder(ABC):
    """
    编码器抽象基类

    所有编码器必须实现此接口。

    生命周期:
        1. __init__(config): 初始化（延迟加载模型）
        2. warmup(): 预热（加载模型到内存），并发调用时只加载一次
        3. embed() / embed_batch() / aembed(): 编码文本
        4. shutdown(): 释放资源
    """

    def __init__(self, config: EncoderConfig):
        self.config = config
        self._initialized = False
        self._init_lock = threading.Lock()
        self._cache_lock = threading.Lock()
        self._dimension: Optional[int] = None
        self._encode_count = 0
        self._error_count = 0
        self._timeout_count = 0
        self._cache: Dict[str, List[float]] = {}

    @abstractmethod
    def _initialize(self) -> None:
        """
        延迟初始化（加载模型等资源）

        子类必须实现此方法。在首次 embed() 调用时自动触发。
        """
        ...

    @abstractmethod
    def _encode_texts(self, texts: List[str]) -> List[List[float]]:
        """
        批量编码文本

        Args:
            texts: 文本列表

        Returns:
            向量列表，每个 [dimension]
        """
        ...

    @property
    def dimension(self) -> int:
        """向量维度"""
        return self._dimension or self.config.dimension

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def warmup(self) -> None:
        """
        预热编码器（加载模型）

        双重检查 + 互斥锁，保证并发首调时模型只加载一次。

        Raises:
            EmbeddingUnavailableError: 模型加载失败
        """
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            try:
                self._initialize()
            except Exception as e:
                self._error_count += 1
                logger.error(f"编码器初始化失败: {self.__class__.__name__}: {e}")
                raise EmbeddingUnavailableError(f"编码器初始化失败: {e}") from e
            self._initialized = True
            logger.info(f"编码器已初始化: {self.__class__.__name__}, dimension={self.dimension}")

    def embed(self, text: str) -> List[float]:
        """
        编码单条文本

        Args:
            text: 文本

        Returns:
            [dimension] 向量

        Raises:
            EmbeddingUnavailableError: 模型不可用或编码失败
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        批量编码文本（命中缓存的文本不重复编码）

        Args:
            texts: 文本列表

        Returns:
            与输入顺序一致的向量列表

        Raises:
            EmbeddingUnavailableError: 模型不可用或编码失败
        """
        if not texts:
            return []

        self.warmup()

        # 分离已缓存和未缓存
        results: Dict[int, List[float]] = {}
        uncached_indices: List[int] = []
        uncached_texts: List[str] = []

        for i, text in enumerate(texts):
            cached = self._cache.get(text) if self.config.cache_enabled else None
            if cached is not None:
                results[i] = cached
            else:
                uncached_indices.append(i)
                uncached_texts.append(text)

        if uncached_texts:
            vectors: List[List[float]] = []
            try:
                for start in range(0, len(uncached_texts), self.config.batch_size):
                    batch = uncached_texts[start:start + self.config.batch_size]
                    vectors.extend(self._encode_texts(batch))
            except Exception as e:
                self._error_count += 1
                raise EmbeddingUnavailableError(f"编码失败: {e}") from e

            if len(vectors) != len(uncached_texts):
                self._error_count += 1
                raise EmbeddingUnavailableError(
                    f"编码结果数量不符: expected={len(uncached_texts)}, got={len(vectors)}"
                )

            self._encode_count += len(uncached_texts)

            for orig_idx, text, vector in zip(uncached_indices, uncached_texts, vectors):
                if not is_valid_vector(vector, self.dimension):
                    self._error_count += 1
                    raise EmbeddingUnavailableError(
                        f"编码结果无效: dimension={len(vector) if vector else 0}, "
                        f"expected={self.dimension}"
                    )
                self._put_cache(text, vector)
                results[orig_idx] = vector

        return [results[i] for i in range(len(texts))]

    async def aembed(self, text: str) -> List[float]:
        """
        异步编码单条文本

        在工作线程中执行编码，不阻塞事件循环；
        超过 timeout_seconds 视为模型不可用。

        Raises:
            EmbeddingUnavailableError: 模型不可用、编码失败或超时
        """
        vectors = await self.aembed_batch([text])
        return vectors[0]

    async def aembed_batch(self, texts: List[str]) -> List[List[float]]:
        """异步批量编码"""
        if not texts:
            return []
        call = asyncio.to_thread(self.embed_batch, texts)
        timeout = self.config.timeout_seconds
        try:
            if timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            self._timeout_count += 1
            raise EmbeddingUnavailableError(f"编码超时: timeout={timeout}s") from e

    def _put_cache(self, text: str, vector: List[float]) -> None:
        """写入缓存（FIFO 淘汰）"""
        if not self.config.cache_enabled:
            return
        with self._cache_lock:
            if text not in self._cache and len(self._cache) >= self.config.cache_max_size:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
            self._cache[text] = vector

    def get_stats(self) -> Dict[str, Any]:
        """获取编码器统计"""
        return {
            "type": self.__class__.__name__,
            "backend": self.config.backend,
            "model_name": self.config.model_name,
            "dimension": self.dimension,
            "device": self.config.device,
            "initialized": self._initialized,
            "encode_count": self._encode_count,
            "error_count": self._error_count,
            "timeout_count": self._timeout_count,
            "cache_size": len(self._cache),
            "cache_max_size": self.config.cache_max_size,
        }

    def shutdown(self) -> None:
        """释放资源"""
        with self._cache_lock:
            self._cache.clear()
        self._initialized = False

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"backend={self.config.backend!r}, "
            f"model_name={self.config.model_name!r}, "
            f"dimension={self.dimension})"
        )
