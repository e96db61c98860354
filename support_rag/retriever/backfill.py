"""
后台向量补全

文档入库时编码器可能不可用或尚未加载，向量缺失的文档由本任务
在后台分批补全（每批默认 10 个，编码文本为 "title content"）。

约束:
  - 任务与请求解耦（detached asyncio task），同一时刻至多一个在运行
  - 失败只记录日志，不向请求方抛出，也不持久化重试队列；
    下一次 trigger() 自然重试
"""

import asyncio
import logging
from typing import Optional, Dict, Any

from ..encoder.base import BaseEncoder
from ..persistence.base import DocumentStore

logger = logging.getLogger(__name__)


class EmbeddingBackfiller:
    """
    向量补全器

    Args:
        store: 文档存储
        encoder: 编码器（None 时 trigger 不做任何事）
        batch_size: 每批处理的文档数
    """

    def __init__(
        self,
        store: DocumentStore,
        encoder: Optional[BaseEncoder],
        batch_size: int = 10,
    ):
        self.store = store
        self.encoder = encoder
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None
        self._stats = {
            "runs": 0,
            "embedded": 0,
            "failures": 0,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> Optional[asyncio.Task]:
        """
        启动一次后台补全（已有任务在运行时直接返回该任务）

        必须在事件循环内调用。

        Returns:
            后台任务；编码器不可用时返回 None
        """
        if self.encoder is None:
            return None
        if self.running:
            return self._task

        self._task = asyncio.get_running_loop().create_task(
            self.run(), name="support-rag-embedding-backfill"
        )
        self._task.add_done_callback(self._on_done)
        return self._task

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._stats["failures"] += 1
            logger.warning(f"向量补全失败，等待下次触发: {error}")

    async def run(self) -> int:
        """
        补全所有缺失向量的文档（分批）

        维度与当前编码器不符或包含 NaN/Inf 的旧向量同样会被重新计算。
        某一批没有任何文档写入成功时停止，避免空转。

        Returns:
            本次补全的文档数
        """
        if self.encoder is None:
            return 0

        self._stats["runs"] += 1
        # 模型加载后才能确定实际维度
        await asyncio.to_thread(self.encoder.warmup)
        dimension = self.encoder.dimension

        total = 0
        while True:
            docs = await self.store.find_without_vectors(limit=self.batch_size, dimension=dimension)
            if not docs:
                break

            vectors = await self.encoder.aembed_batch([doc.embedding_text for doc in docs])

            written = 0
            for doc, vector in zip(docs, vectors):
                if await self.store.set_embedding(doc.doc_id, vector):
                    written += 1
            total += written
            self._stats["embedded"] += written
            logger.debug(f"向量补全批次完成: batch={len(docs)}, written={written}")

            if written == 0 or len(docs) < self.batch_size:
                break

        if total:
            logger.info(f"向量补全完成: documents={total}")
        return total

    async def wait(self) -> None:
        """等待当前后台任务结束（不抛出任务异常）"""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        """取消当前后台任务"""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._task = None

    def get_stats(self) -> Dict[str, Any]:
        """获取补全统计"""
        return {
            **self._stats,
            "running": self.running,
            "batch_size": self.batch_size,
        }
