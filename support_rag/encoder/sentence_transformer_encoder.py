"""
SentenceTransformer 编码器

使用 sentence-transformers 库将文本编码为向量。
默认模型 all-MiniLM-L6-v2：384 维，mean pooling，L2 归一化。

这是推荐的生产编码器，因为：
1. sentence-transformers 提供高质量的语义嵌入
2. 模型体积小，CPU 友好
3. 支持多语言模型（替换 model_name 即可）

依赖:
    pip install sentence-transformers
"""

import logging
from typing import List, Dict, Any

from .base import BaseEncoder, EncoderConfig

logger = logging.getLogger(__name__)


class SentenceTransformerEncoder(BaseEncoder):
    """
    基于 SentenceTransformer 的编码器

    编码流程:
        text -> SentenceTransformer (mean pooling) -> L2 归一化 -> [dimension]

    配置:
        encoder:
          backend: "sentence_transformer"
          model_name: "all-MiniLM-L6-v2"    # 384 维
          device: "cpu"
          options:
            text_prefix: ""                  # 编码前添加的文本前缀
    """

    def __init__(self, config: EncoderConfig):
        super().__init__(config)
        self._model = None

    def _initialize(self) -> None:
        """延迟加载 SentenceTransformer 模型"""
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "SentenceTransformerEncoder 需要 sentence-transformers 包。\n"
                "请运行: pip install sentence-transformers"
            )

        logger.info(f"加载 SentenceTransformer 模型: {self.config.model_name}")
        self._model = SentenceTransformer(
            self.config.model_name,
            device=self.config.device,
        )

        embed_dim = self._model.get_sentence_embedding_dimension()
        if embed_dim and embed_dim != self.config.dimension:
            logger.warning(
                f"模型维度 ({embed_dim}) 与配置 dimension ({self.config.dimension}) 不一致，"
                f"以模型维度为准"
            )
        self._dimension = embed_dim or self.config.dimension

        logger.info(
            f"SentenceTransformerEncoder 初始化完成: "
            f"model={self.config.model_name}, "
            f"dimension={self._dimension}"
        )

    def _encode_texts(self, texts: List[str]) -> List[List[float]]:
        """批量编码文本"""
        prefix = self.config.options.get("text_prefix", "")
        prefixed = [f"{prefix}{t}" for t in texts]

        embeddings = self._model.encode(
            prefixed,
            batch_size=self.config.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
            show_progress_bar=False,
        )
        return [[float(v) for v in row] for row in embeddings]

    def get_stats(self) -> Dict[str, Any]:
        """获取编码器统计"""
        stats = super().get_stats()
        stats["model_loaded"] = self._model is not None
        return stats

    def shutdown(self) -> None:
        """释放资源"""
        super().shutdown()
        self._model = None
        self._dimension = None
