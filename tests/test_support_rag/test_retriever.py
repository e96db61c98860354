"""
support-rag 检索模块测试
"""

import asyncio
import logging
import math

import pytest

from support_rag.config import RetrieverConfig
from support_rag.encoder.base import BaseEncoder, EncoderConfig
from support_rag.encoder.simple_encoder import SimpleHashEncoder
from support_rag.exceptions import StoreUnavailableError
from support_rag.persistence import MemoryAdapter
from support_rag.retriever import (
    SemanticSearcher,
    KeywordSearcher,
    HybridRanker,
    HybridRetriever,
    EmbeddingBackfiller,
    cosine_similarity,
    rank_by_similarity,
    tokenize_query,
    squash_score,
)
from support_rag.types import (
    KnowledgeDocument,
    SearchResult,
    Provenance,
    DegradedReason,
)


# ==================== 辅助 ====================

class KeyedEncoder(BaseEncoder):
    """按文本查表的编码器，未登记的文本映射到最后一维"""

    def __init__(self, vectors=None, dimension=3):
        super().__init__(EncoderConfig(backend="simple_hash", dimension=dimension, cache_enabled=False))
        self.vectors = vectors or {}

    def _initialize(self):
        pass

    def _encode_texts(self, texts):
        fallback = [0.0] * (self.config.dimension - 1) + [1.0]
        return [self.vectors.get(t, fallback) for t in texts]


class BrokenEncoder(BaseEncoder):
    """模型不可用的编码器"""

    def __init__(self):
        super().__init__(EncoderConfig(backend="simple_hash", dimension=3))

    def _initialize(self):
        raise RuntimeError("model not downloaded")

    def _encode_texts(self, texts):
        raise AssertionError("unreachable")


class FlakyFullTextStore(MemoryAdapter):
    """全文检索失败的存储"""

    async def full_text_search(self, query, limit=10):
        raise StoreUnavailableError("fts index corrupted")


def doc(doc_id, title="Title", content="Content", embedding=None, **kwargs):
    return KnowledgeDocument(doc_id=doc_id, title=title, content=content, embedding=embedding, **kwargs)


def result(doc_id, score, provenance=Provenance.SEMANTIC):
    return SearchResult(document=doc(doc_id), score=score, provenance=provenance)


ALERT_DOC = dict(title="Alert Management", content="How to triage and acknowledge alerts", category="Alerts")
DASHBOARD_DOC = dict(title="Dashboards", content="Create a dashboard widget", category="Navigation")


@pytest.fixture
def store():
    adapter = MemoryAdapter()
    asyncio.run(adapter.connect())
    return adapter


# ==================== 余弦相似度 ====================

class TestCosineSimilarity:
    """测试余弦相似度"""

    def test_identity(self):
        assert cosine_similarity([0.3, 0.4, 0.5], [0.3, 0.4, 0.5]) == pytest.approx(1.0)

    def test_symmetry(self):
        a, b = [0.1, 0.9, -0.2], [0.5, -0.1, 0.3]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_orthogonal(self):
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)

    def test_zero_norm(self):
        assert cosine_similarity([0, 0, 0], [1, 2, 3]) == 0.0

    def test_dimension_mismatch(self):
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0

    def test_empty(self):
        assert cosine_similarity([], []) == 0.0

    def test_non_finite(self):
        assert cosine_similarity([math.nan, 1.0], [1.0, 1.0]) == 0.0


class TestRankBySimilarity:
    """测试全量相似度排序"""

    def test_threshold_and_order(self):
        corpus = [
            doc("low", embedding=[0.0, 1.0]),
            doc("high", embedding=[1.0, 0.0]),
            doc("mid", embedding=[1.0, 1.0]),
        ]
        results = rank_by_similarity([1.0, 0.0], corpus, min_similarity=0.3, k=5)
        assert [r.doc_id for r in results] == ["high", "mid"]
        assert results[1].score == pytest.approx(1 / math.sqrt(2))
        assert all(r.provenance == Provenance.SEMANTIC for r in results)

    def test_stable_ties(self):
        corpus = [doc(f"d{i}", embedding=[1.0, 0.0]) for i in range(4)]
        results = rank_by_similarity([2.0, 0.0], corpus, min_similarity=0.0, k=3)
        assert [r.doc_id for r in results] == ["d0", "d1", "d2"]

    def test_excludes_malformed(self):
        corpus = [
            doc("nan", embedding=[math.nan, 0.0]),
            doc("short", embedding=[1.0]),
            doc("ok", embedding=[1.0, 0.0]),
        ]
        results = rank_by_similarity([1.0, 0.0], corpus, min_similarity=0.0, k=5)
        assert [r.doc_id for r in results] == ["ok"]

    def test_empty_inputs(self):
        assert rank_by_similarity([1.0], [], 0.0, 5) == []
        assert rank_by_similarity([1.0], [doc("d", embedding=[1.0])], 0.0, 0) == []
        assert rank_by_similarity([0.0], [doc("d", embedding=[1.0])], 0.0, 5) == []


# ==================== 混合排序 ====================

class TestHybridRanker:
    """测试分数融合"""

    def test_both_sources_averaged(self):
        merged = HybridRanker().merge([result("d1", 0.8)], [result("d1", 0.6, Provenance.KEYWORD)], k=5)
        assert len(merged) == 1
        assert merged[0].score == pytest.approx(0.78)
        assert merged[0].provenance == Provenance.HYBRID

    def test_semantic_only_boosted_unclamped(self):
        merged = HybridRanker().merge([result("d1", 0.9)], [], k=5)
        assert merged[0].score == pytest.approx(1.08)
        assert merged[0].provenance == Provenance.SEMANTIC

    def test_keyword_only_unchanged(self):
        merged = HybridRanker().merge([], [result("d1", 0.5, Provenance.KEYWORD)], k=5)
        assert merged[0].score == 0.5
        assert merged[0].provenance == Provenance.KEYWORD

    def test_order_and_truncate(self):
        semantic = [result("a", 0.5), result("b", 0.25)]
        keyword = [result("c", 0.5, Provenance.KEYWORD), result("b", 0.95, Provenance.KEYWORD)]
        merged = HybridRanker().merge(semantic, keyword, k=2)
        # b=(0.3+0.95)/2=0.625, a=0.6, c=0.5
        assert [r.doc_id for r in merged] == ["b", "a"]

    def test_custom_boost(self):
        merged = HybridRanker(semantic_boost=1.0).merge([result("d1", 0.8)], [], k=1)
        assert merged[0].score == pytest.approx(0.8)

    def test_empty(self):
        assert HybridRanker().merge([], [], k=5) == []


# ==================== 关键词检索 ====================

class TestKeywordHelpers:
    """测试查询分词与分数压缩"""

    def test_tokenize_query(self):
        assert tokenize_query("How do I set up an Alert rule? alert") == ["how", "set", "alert", "rule"]

    def test_squash_score(self):
        assert squash_score(0) == 0.0
        assert squash_score(-1.0) == 0.0
        assert squash_score(1.0) == pytest.approx(0.5)
        assert squash_score(9.0) == pytest.approx(0.9)


class TestKeywordSearcher:
    """测试关键词检索"""

    @pytest.mark.asyncio
    async def test_fallback_score(self, store):
        await store.save_document(doc("alert", **ALERT_DOC))
        outcome = await KeywordSearcher(store).search("Alert Management", k=5)
        assert not outcome.degraded
        assert [r.doc_id for r in outcome.results] == ["alert"]
        assert outcome.results[0].score == 0.5
        assert outcome.results[0].provenance == Provenance.KEYWORD

    @pytest.mark.asyncio
    async def test_keyword_intersection(self, store):
        await store.save_document(doc("kw", title="Other", content="Nothing", keywords=["siem"]))
        outcome = await KeywordSearcher(store).search("where are siem logs", k=5)
        assert [r.doc_id for r in outcome.results] == ["kw"]

    @pytest.mark.asyncio
    async def test_full_text_scores_in_unit_range(self, store):
        await store.save_documents([
            doc("alert", **ALERT_DOC),
            doc("dash", **DASHBOARD_DOC),
            doc("report", title="Reports", content="Schedule a monthly report"),
        ])
        outcome = await KeywordSearcher(store).search("dashboard widget", k=5)
        assert outcome.results[0].doc_id == "dash"
        assert 0.0 < outcome.results[0].score < 1.0

    @pytest.mark.asyncio
    async def test_no_match(self, store):
        await store.save_document(doc("alert", **ALERT_DOC))
        outcome = await KeywordSearcher(store).search("billing invoice", k=5)
        assert outcome.results == []

    @pytest.mark.asyncio
    async def test_full_text_failure_degrades(self):
        store = FlakyFullTextStore()
        await store.connect()
        await store.save_document(doc("alert", **ALERT_DOC))
        outcome = await KeywordSearcher(store).search("alert management", k=5)
        assert outcome.degraded_reason == DegradedReason.KEYWORD_UNAVAILABLE
        assert [r.doc_id for r in outcome.results] == ["alert"]

    @pytest.mark.asyncio
    async def test_store_unavailable(self):
        outcome = await KeywordSearcher(MemoryAdapter()).search("alert", k=5)
        assert outcome.results == []
        assert outcome.degraded

    @pytest.mark.asyncio
    async def test_k_zero(self, store):
        await store.save_document(doc("alert", **ALERT_DOC))
        assert (await KeywordSearcher(store).search("alert", k=0)).results == []

    @pytest.mark.asyncio
    async def test_fallback_prefers_recently_updated(self, store):
        for i in range(3):
            await store.save_document(doc(f"d{i}", keywords=["alert"]))
        outcome = await KeywordSearcher(store).search("find alert", k=1)
        assert [r.doc_id for r in outcome.results] == ["d2"]

        await store.save_document(doc("d0", keywords=["alert"]))
        outcome = await KeywordSearcher(store).search("find alert", k=1)
        assert [r.doc_id for r in outcome.results] == ["d0"]


# ==================== 语义检索 ====================

class TestSemanticSearcher:
    """测试语义检索"""

    @pytest.mark.asyncio
    async def test_no_encoder(self, store):
        outcome = await SemanticSearcher(None, store).search("q", 5, 0.3)
        assert outcome.degraded_reason == DegradedReason.EMBEDDING_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_empty_corpus(self, store):
        outcome = await SemanticSearcher(KeyedEncoder(), store).search("q", 5, 0.3)
        assert outcome.degraded_reason == DegradedReason.NO_VECTORS
        assert outcome.results == []

    @pytest.mark.asyncio
    async def test_dimension_mismatch_is_no_vectors(self, store):
        await store.save_document(doc("d1", embedding=[1.0, 0.0]))
        outcome = await SemanticSearcher(KeyedEncoder(dimension=3), store).search("q", 5, 0.0)
        assert outcome.degraded_reason == DegradedReason.NO_VECTORS

    @pytest.mark.asyncio
    async def test_encoder_failure(self, store):
        await store.save_document(doc("d1", embedding=[1.0, 0.0, 0.0]))
        outcome = await SemanticSearcher(BrokenEncoder(), store).search("q", 5, 0.3)
        assert outcome.degraded_reason == DegradedReason.EMBEDDING_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_store_failure(self):
        outcome = await SemanticSearcher(KeyedEncoder(), MemoryAdapter()).search("q", 5, 0.3)
        assert outcome.degraded_reason == DegradedReason.STORE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_ranked_results(self, store):
        await store.save_documents([
            doc("x", embedding=[1.0, 0.0, 0.0]),
            doc("y", embedding=[0.0, 1.0, 0.0]),
        ])
        encoder = KeyedEncoder({"find y": [0.1, 1.0, 0.0]})
        outcome = await SemanticSearcher(encoder, store).search("find y", 5, 0.3)
        assert not outcome.degraded
        assert [r.doc_id for r in outcome.results] == ["y"]


# ==================== 混合检索 ====================

class TestHybridRetriever:
    """测试混合检索编排"""

    @pytest.mark.asyncio
    async def test_hybrid_merge(self, store):
        await store.save_documents([
            doc("alert", embedding=[1.0, 0.0, 0.0], **ALERT_DOC),
            doc("dash", embedding=[0.0, 1.0, 0.0], **DASHBOARD_DOC),
        ])
        encoder = KeyedEncoder({"alert management": [1.0, 0.0, 0.0]})
        retriever = HybridRetriever(store, encoder, RetrieverConfig())

        outcome = await retriever.retrieve("alert management", k=5)
        assert not outcome.degraded
        assert [r.doc_id for r in outcome.results] == ["alert"]
        top = outcome.results[0]
        assert top.provenance == Provenance.HYBRID
        assert top.score == pytest.approx((1.0 * 1.2 + 0.5) / 2)

    @pytest.mark.asyncio
    async def test_usage_incremented(self, store):
        await store.save_document(doc("alert", **ALERT_DOC))
        retriever = HybridRetriever(store, None)
        await retriever.retrieve("alert management")
        await retriever.retrieve("alert management")
        assert (await store.get_document("alert")).usage_count == 2

    @pytest.mark.asyncio
    async def test_degraded_to_keyword_only(self, store, caplog):
        await store.save_document(doc("alert", embedding=[1.0, 0.0, 0.0], **ALERT_DOC))
        retriever = HybridRetriever(store, BrokenEncoder())

        with caplog.at_level(logging.WARNING, logger="support_rag"):
            outcome = await retriever.retrieve("alert management", k=5)

        assert outcome.degraded_reason == DegradedReason.EMBEDDING_UNAVAILABLE
        assert [r.doc_id for r in outcome.results] == ["alert"]
        assert outcome.results[0].score == 0.5
        assert outcome.results[0].provenance == Provenance.KEYWORD
        assert any("降级" in rec.getMessage() for rec in caplog.records)
        assert retriever.get_stats()["degraded_by_reason"] == {"embedding_unavailable": 1}

    @pytest.mark.asyncio
    async def test_empty_corpus(self, store):
        retriever = HybridRetriever(store, KeyedEncoder())
        outcome = await retriever.retrieve("anything")
        assert outcome.results == []
        await retriever.backfiller.wait()
        assert retriever.get_stats()["empty"] == 1

    @pytest.mark.asyncio
    async def test_no_vectors_triggers_backfill(self, store):
        await store.save_documents([doc("alert", **ALERT_DOC), doc("dash", **DASHBOARD_DOC)])
        encoder = SimpleHashEncoder(EncoderConfig(backend="simple_hash", dimension=32))
        retriever = HybridRetriever(store, encoder)

        outcome = await retriever.retrieve("alert management")
        assert outcome.degraded_reason == DegradedReason.NO_VECTORS
        await retriever.backfiller.wait()

        assert await store.find_without_vectors() == []
        outcome = await retriever.retrieve("alert management")
        assert not outcome.degraded
        assert outcome.results[0].doc_id == "alert"

    @pytest.mark.asyncio
    async def test_semantic_search_threshold(self, store):
        await store.save_documents([
            doc("x", embedding=[1.0, 0.0, 0.0]),
            doc("y", embedding=[1.0, 1.0, 0.0]),
        ])
        encoder = KeyedEncoder({"q": [1.0, 0.0, 0.0]})
        retriever = HybridRetriever(store, encoder)
        outcome = await retriever.semantic_search("q", k=5, min_similarity=0.9)
        assert [r.doc_id for r in outcome.results] == ["x"]
        outcome = await retriever.semantic_search("q", k=5)
        assert [r.doc_id for r in outcome.results] == ["x", "y"]
        # 独立语义检索不更新使用计数
        assert (await store.get_document("x")).usage_count == 0


# ==================== 向量补全 ====================

class TestEmbeddingBackfiller:
    """测试后台向量补全"""

    @pytest.mark.asyncio
    async def test_run_in_batches(self, store):
        await store.save_documents([doc(f"d{i:02d}", title=f"Doc {i}") for i in range(25)])
        encoder = SimpleHashEncoder(EncoderConfig(backend="simple_hash", dimension=16))
        backfiller = EmbeddingBackfiller(store, encoder, batch_size=10)

        assert await backfiller.run() == 25
        assert await store.find_without_vectors() == []
        stats = backfiller.get_stats()
        assert stats["embedded"] == 25
        assert stats["runs"] == 1

    @pytest.mark.asyncio
    async def test_embedding_text(self, store):
        await store.save_document(doc("d1", title="Alert", content="triage"))
        encoder = KeyedEncoder({"Alert triage": [0.0, 1.0, 0.0]})
        await EmbeddingBackfiller(store, encoder).run()
        assert (await store.get_document("d1")).embedding == [0.0, 1.0, 0.0]

    @pytest.mark.asyncio
    async def test_trigger_single_flight(self, store):
        await store.save_documents([doc(f"d{i}") for i in range(3)])
        backfiller = EmbeddingBackfiller(store, KeyedEncoder())
        first = backfiller.trigger()
        second = backfiller.trigger()
        assert first is second
        await backfiller.wait()
        assert not backfiller.running
        assert await store.find_without_vectors() == []

    @pytest.mark.asyncio
    async def test_no_encoder(self, store):
        backfiller = EmbeddingBackfiller(store, None)
        assert backfiller.trigger() is None
        assert await backfiller.run() == 0

    @pytest.mark.asyncio
    async def test_failure_logged_not_raised(self, store, caplog):
        await store.save_document(doc("d1"))
        backfiller = EmbeddingBackfiller(store, BrokenEncoder())
        with caplog.at_level(logging.WARNING, logger="support_rag"):
            backfiller.trigger()
            await backfiller.wait()
            await asyncio.sleep(0)
        assert backfiller.get_stats()["failures"] == 1
        assert await store.find_without_vectors() != []

    @pytest.mark.asyncio
    async def test_stop(self, store):
        backfiller = EmbeddingBackfiller(store, KeyedEncoder())
        backfiller.trigger()
        await backfiller.stop()
        assert not backfiller.running

    @pytest.mark.asyncio
    async def test_reembeds_stale_dimension(self, store):
        await store.save_document(doc("old", embedding=[1.0, 0.0]))
        await store.save_document(doc("bad", embedding=[math.nan] * 8))
        encoder = SimpleHashEncoder(EncoderConfig(backend="simple_hash", dimension=8))
        backfiller = EmbeddingBackfiller(store, encoder)

        assert await backfiller.run() == 2
        assert (await store.get_document("old")).has_vector(8)
        assert (await store.get_document("bad")).has_vector(8)
        assert await store.find_without_vectors(dimension=8) == []

    @pytest.mark.asyncio
    async def test_semantic_search_after_dimension_change(self, store):
        await store.save_document(doc("alert", embedding=[1.0, 0.0], **ALERT_DOC))
        encoder = SimpleHashEncoder(EncoderConfig(backend="simple_hash", dimension=8))
        searcher = SemanticSearcher(encoder, store)

        before = await searcher.search("Alert Management", 5, -1.0)
        assert before.degraded_reason == DegradedReason.NO_VECTORS

        await EmbeddingBackfiller(store, encoder).run()
        after = await searcher.search("Alert Management", 5, -1.0)
        assert not after.degraded
        assert [r.doc_id for r in after.results] == ["alert"]
