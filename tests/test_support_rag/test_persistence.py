"""
support-rag 持久化适配器测试

同一组行为测试同时在 MemoryAdapter 与 SQLiteAdapter 上运行。
"""

import asyncio
import math
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from support_rag.exceptions import (
    StoreUnavailableError,
    MalformedVectorError,
)
from support_rag.persistence import MemoryAdapter, SQLiteAdapter, create_adapter
from support_rag.persistence.bm25_index import BM25Index
from support_rag.types import KnowledgeDocument, LearningPattern


def make_doc(doc_id, title="Title", content="Content", **kwargs):
    return KnowledgeDocument(doc_id=doc_id, title=title, content=content, **kwargs)


def make_pattern(pattern, frequency=1, last_seen="2024-01-01T00:00:00+00:00", **kwargs):
    return LearningPattern(
        pattern=pattern,
        original_query=pattern,
        variations=kwargs.pop("variations", [pattern]),
        frequency=frequency,
        first_seen="2024-01-01T00:00:00+00:00",
        last_seen=last_seen,
        **kwargs,
    )


@pytest.fixture
def sqlite_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, sqlite_path):
    if request.param == "memory":
        adapter = MemoryAdapter()
    else:
        adapter = SQLiteAdapter(db_path=sqlite_path)
    return adapter


class TestDocumentStore:
    """测试文档存储（memory / sqlite）"""

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, store):
        assert not await store.is_connected()
        assert await store.connect()
        assert await store.is_connected()
        health = await store.health_check()
        assert health["status"] == "healthy"
        await store.disconnect()
        assert not await store.is_connected()

    @pytest.mark.asyncio
    async def test_requires_connection(self, store):
        with pytest.raises(StoreUnavailableError):
            await store.get_document("d1")

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        await store.connect()
        saved = await store.save_document(make_doc("d1", category="Alerts", keywords=["alert"]))
        assert saved.created_at is not None
        assert saved.updated_at is not None

        loaded = await store.get_document("d1")
        assert loaded.title == "Title"
        assert loaded.category == "Alerts"
        assert loaded.keywords == ["alert"]
        assert await store.get_document("missing") is None

    @pytest.mark.asyncio
    async def test_resave_preserves_created_at_and_usage(self, store):
        await store.connect()
        first = await store.save_document(make_doc("d1", embedding=[1.0, 0.0]))
        await store.increment_usage(["d1"])
        await store.save_document(make_doc("d1", title="New title"))

        loaded = await store.get_document("d1")
        assert loaded.title == "New title"
        assert loaded.created_at == first.created_at
        assert loaded.usage_count == 1
        # 重新保存未带向量时清除旧向量，等待补全
        assert loaded.embedding is None

    @pytest.mark.asyncio
    async def test_save_documents_and_list(self, store):
        await store.connect()
        count = await store.save_documents([make_doc(f"d{i}") for i in range(5)])
        assert count == 5
        assert await store.count_documents() == 5
        listed = await store.list_documents(limit=2, offset=1)
        assert [d.doc_id for d in listed] == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.connect()
        await store.save_document(make_doc("d1"))
        assert await store.delete_document("d1")
        assert not await store.delete_document("d1")
        assert await store.count_documents() == 0

    @pytest.mark.asyncio
    async def test_vectors(self, store):
        await store.connect()
        await store.save_documents([
            make_doc("d1", embedding=[0.1, 0.2]),
            make_doc("d2"),
            make_doc("d3"),
        ])
        with_vectors = await store.find_with_vectors()
        assert [d.doc_id for d in with_vectors] == ["d1"]

        missing = await store.find_without_vectors(limit=1)
        assert [d.doc_id for d in missing] == ["d2"]

        assert await store.set_embedding("d2", [0.3, 0.4])
        assert not await store.set_embedding("nope", [0.3, 0.4])
        assert [d.doc_id for d in await store.find_without_vectors()] == ["d3"]
        assert (await store.get_document("d2")).embedding == [0.3, 0.4]

    @pytest.mark.asyncio
    async def test_set_embedding_rejects_malformed(self, store):
        await store.connect()
        await store.save_document(make_doc("d1"))
        with pytest.raises(MalformedVectorError):
            await store.set_embedding("d1", [math.nan, 1.0])
        with pytest.raises(MalformedVectorError):
            await store.set_embedding("d1", [])

    @pytest.mark.asyncio
    async def test_find_by_keywords(self, store):
        await store.connect()
        await store.save_documents([
            make_doc("kw", title="Other", content="Nothing", keywords=["Alert"]),
            make_doc("title", title="Alert Management", content="Triage"),
            make_doc("content", title="Guide", content="The alert management page"),
            make_doc("none", title="Reports", content="Export"),
        ])
        by_token = await store.find_by_keywords(["alert"], "")
        assert [d.doc_id for d in by_token] == ["kw"]

        by_phrase = await store.find_by_keywords([], "alert management")
        assert {d.doc_id for d in by_phrase} == {"title", "content"}

        assert await store.find_by_keywords([], "") == []

    @pytest.mark.asyncio
    async def test_find_by_keywords_newest_first(self, store):
        await store.connect()
        for i in range(3):
            await store.save_document(make_doc(f"d{i}", keywords=["alert"]))
        newest = await store.find_by_keywords(["alert"], "", limit=1)
        assert [d.doc_id for d in newest] == ["d2"]

        await store.save_document(make_doc("d0", keywords=["alert"]))
        assert [d.doc_id for d in await store.find_by_keywords(["alert"], "", limit=2)] == ["d0", "d2"]

    @pytest.mark.asyncio
    async def test_find_without_vectors_by_dimension(self, store):
        await store.connect()
        await store.save_documents([
            make_doc("stale", embedding=[1.0, 0.0]),
            make_doc("current", embedding=[0.0, 0.0, 1.0]),
            make_doc("bad", embedding=[math.nan, 0.0, 1.0]),
            make_doc("empty"),
        ])
        assert [d.doc_id for d in await store.find_without_vectors(limit=10)] == ["bad", "empty"]
        assert [d.doc_id for d in await store.find_without_vectors(limit=10, dimension=3)] == [
            "stale", "bad", "empty",
        ]
        assert [d.doc_id for d in await store.find_without_vectors(limit=1, dimension=3)] == ["stale"]

    @pytest.mark.asyncio
    async def test_find_by_category_and_counts(self, store):
        await store.connect()
        await store.save_documents([
            make_doc("d1", category="Alerts"),
            make_doc("d2", category="Alerts"),
            make_doc("d3", category="Reports"),
        ])
        alerts = await store.find_by_category("Alerts")
        assert {d.doc_id for d in alerts} == {"d1", "d2"}
        assert await store.count_documents_by_category() == {"Alerts": 2, "Reports": 1}

    @pytest.mark.asyncio
    async def test_increment_usage(self, store):
        await store.connect()
        await store.save_documents([make_doc("d1"), make_doc("d2")])
        await store.increment_usage(["d1", "d2"])
        await store.increment_usage(["d1", "missing"])
        assert (await store.get_document("d1")).usage_count == 2
        assert (await store.get_document("d2")).usage_count == 1

    @pytest.mark.asyncio
    async def test_full_text_search(self, store):
        await store.connect()
        if not store.supports_full_text:
            pytest.skip("FTS5 not available")
        await store.save_documents([
            make_doc("d1", title="Alert triage", content="Acknowledge and assign alerts"),
            make_doc("d2", title="Dashboards", content="Create a dashboard widget"),
            make_doc("d3", title="Reports", content="Schedule a monthly report"),
        ])
        hits = await store.full_text_search("dashboard widget", limit=5)
        assert hits
        assert hits[0][0].doc_id == "d2"
        assert all(score > 0 for _, score in hits)


class TestPatternStore:
    """测试模式存储（memory / sqlite）"""

    @pytest.mark.asyncio
    async def test_upsert_create_and_update(self, store):
        await store.connect()

        def bump(current):
            if current is None:
                return make_pattern("reset password")
            current.frequency += 1
            return current

        created = await store.upsert_pattern("reset password", bump)
        assert created.frequency == 1
        updated = await store.upsert_pattern("reset password", bump)
        assert updated.frequency == 2
        assert (await store.get_pattern("reset password")).frequency == 2
        assert await store.count_patterns() == 1

    @pytest.mark.asyncio
    async def test_concurrent_upserts_single_record(self, store):
        await store.connect()

        def bump(current):
            if current is None:
                return make_pattern("same key")
            current.frequency += 1
            return current

        await asyncio.gather(*[store.upsert_pattern("same key", bump) for _ in range(20)])
        assert await store.count_patterns() == 1
        assert (await store.get_pattern("same key")).frequency == 20

    @pytest.mark.asyncio
    async def test_find_similar(self, store):
        await store.connect()
        for p in [
            make_pattern("how to create a dashboard", frequency=3, keywords=["create", "dashboard"]),
            make_pattern("dashboard", frequency=5, keywords=["dashboard"]),
            make_pattern("export report", frequency=9, keywords=["export", "report"]),
            make_pattern("alerts", frequency=1, variations=["show me alerts please"]),
        ]:
            await store.upsert_pattern(p.pattern, lambda _, p=p: p)

        # 子串命中
        similar = await store.find_similar_patterns("dashboard", [], limit=5)
        assert [p.pattern for p in similar] == ["dashboard", "how to create a dashboard"]

        # 关键词命中
        similar = await store.find_similar_patterns("zzz", ["report"], limit=5)
        assert [p.pattern for p in similar] == ["export report"]

        # 变体命中
        similar = await store.find_similar_patterns("me alerts", [], limit=5)
        assert [p.pattern for p in similar] == ["alerts"]

    @pytest.mark.asyncio
    async def test_popular_order_ties_by_last_seen(self, store):
        await store.connect()
        for p in [
            make_pattern("a", frequency=2, last_seen="2024-01-01T00:00:00+00:00"),
            make_pattern("b", frequency=2, last_seen="2024-03-01T00:00:00+00:00"),
            make_pattern("c", frequency=7),
        ]:
            await store.upsert_pattern(p.pattern, lambda _, p=p: p)
        popular = await store.list_popular_patterns(limit=10)
        assert [p.pattern for p in popular] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_category_and_topic_counts(self, store):
        await store.connect()
        for p in [
            make_pattern("a", category="Security", topics=["Alerts", "Security"]),
            make_pattern("b", category="Security", topics=["Investigations", "Security"]),
            make_pattern("c", category="Navigation", topics=["Dashboards"]),
        ]:
            await store.upsert_pattern(p.pattern, lambda _, p=p: p)

        assert await store.count_patterns_by_category() == [("Security", 2), ("Navigation", 1)]
        topics = await store.count_patterns_by_topic(limit=2)
        assert topics == [("Security", 2), ("Alerts", 1)]

        by_category = await store.find_patterns_by_category("Security")
        assert {p.pattern for p in by_category} == {"a", "b"}


class TestSQLiteSpecific:
    """测试 SQLite 特有行为"""

    def test_concurrent_upserts_across_connections(self, sqlite_path):
        """多个适配器实例在线程中并发写同一模式，只产生一条记录"""
        adapters = [SQLiteAdapter(db_path=sqlite_path) for _ in range(4)]
        for adapter in adapters:
            asyncio.run(adapter.connect())

        def bump(current):
            if current is None:
                return make_pattern("same key")
            current.frequency += 1
            return current

        def worker(i):
            return asyncio.run(adapters[i % len(adapters)].upsert_pattern("same key", bump))

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(worker, range(40)))

        assert asyncio.run(adapters[0].count_patterns()) == 1
        assert asyncio.run(adapters[0].get_pattern("same key")).frequency == 40

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, sqlite_path):
        a = SQLiteAdapter(db_path=sqlite_path)
        await a.connect()
        await a.save_document(make_doc("d1", keywords=["alert"], embedding=[0.5, 0.5]))
        await a.disconnect()

        b = SQLiteAdapter(db_path=sqlite_path)
        await b.connect()
        loaded = await b.get_document("d1")
        assert loaded.keywords == ["alert"]
        assert loaded.embedding == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_fts_disabled(self, sqlite_path):
        adapter = SQLiteAdapter(db_path=sqlite_path, enable_fts=False)
        await adapter.connect()
        assert adapter.supports_full_text is False
        assert await adapter.full_text_search("anything") == []

    @pytest.mark.asyncio
    async def test_fts_query_is_quoted(self, sqlite_path):
        adapter = SQLiteAdapter(db_path=sqlite_path)
        await adapter.connect()
        if not adapter.supports_full_text:
            pytest.skip("FTS5 not available")
        await adapter.save_document(make_doc("d1", title="NEAR OR AND", content="x"))
        # FTS5 运算符作为普通词处理，不会抛出语法错误
        await adapter.full_text_search('NEAR(" OR AND *')


class TestBM25Index:
    """测试 BM25 索引"""

    def test_search_ranks_relevant_first(self):
        index = BM25Index()
        index.add("d1", "Alert triage", "Acknowledge alerts", ["alert"])
        index.add("d2", "Dashboards", "Create a dashboard widget")
        index.add("d3", "Reports", "Schedule a monthly report")
        hits = index.search("dashboard widget", k=3)
        assert hits[0][0] == "d2"
        assert all(score > 0 for _, score in hits)

    def test_single_document_scores_not_positive(self):
        index = BM25Index()
        index.add("d1", "Alert Management", "How to triage alerts")
        assert index.search("alert management") == []

    def test_remove_and_replace(self):
        index = BM25Index()
        index.add("d1", "a", "b")
        index.add("d1", "c", "d")
        assert index.count == 1
        index.remove("d1")
        assert not index.contains("d1")
        assert index.search("c") == []

    def test_chinese_tokenize(self):
        assert BM25Index._tokenize("告警 alert 42") == ["告", "警", "alert", "42"]


class TestCreateAdapter:
    """测试适配器工厂"""

    def test_memory(self):
        assert isinstance(create_adapter({"type": "memory"}), MemoryAdapter)

    def test_sqlite(self, sqlite_path):
        adapter = create_adapter({"type": "sqlite", "sqlite_path": sqlite_path})
        assert isinstance(adapter, SQLiteAdapter)
        assert adapter.db_path == sqlite_path

    def test_unknown(self):
        with pytest.raises(ValueError):
            create_adapter({"type": "mongo"})
