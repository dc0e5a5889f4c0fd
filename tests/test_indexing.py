"""
Tests for indexing.py: chunking, one-time collection setup, retries with
backoff, exhaustion and upsert semantics.
"""

import asyncio

import pytest

from conftest import InMemoryBackend

from spider.errors import BackendUnavailableError, IndexWriteError
from spider.indexing import CollectionSettings, DocumentBuffer, IndexingPipeline
from spider.utils import RetryHandler

COLL = "apollo_docs"


def _pipeline(backend, batch_size=1000, retries=3, sleeps=None, **kwargs):
    async def fake_sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)
    return IndexingPipeline(
        backend,
        batch_size=batch_size,
        retry_handler=RetryHandler(max_attempts=retries, base_delay=1.0, sleep=fake_sleep),
        **kwargs,
    )


def _docs(n, prefix="doc"):
    return [{"id": f"{prefix}{i}", "title": f"T{i}"} for i in range(n)]


class TestChunking:

    def test_chunks_of_batch_size(self, backend):
        pipeline = _pipeline(backend, batch_size=3)
        written = asyncio.run(pipeline.save_batch(COLL, _docs(7)))
        assert written == 7
        assert backend.calls.count("add_or_update_documents") == 3
        assert len(backend.docs(COLL)) == 7

    def test_empty_batch_is_noop(self, backend):
        assert asyncio.run(_pipeline(backend).save_batch(COLL, [])) == 0
        assert backend.calls == []

    def test_batch_size_validated(self, backend):
        with pytest.raises(ValueError):
            IndexingPipeline(backend, batch_size=0)


class TestCollectionSetup:

    def test_collection_created_once(self, backend):
        pipeline = _pipeline(backend, batch_size=2)

        async def run():
            await asyncio.gather(
                pipeline.save_batch(COLL, _docs(4, "a")),
                pipeline.save_batch(COLL, _docs(4, "b")),
            )

        asyncio.run(run())
        assert backend.calls.count("create_collection_if_absent") == 1
        assert len(backend.docs(COLL)) == 8

    def test_settings_applied(self, backend):
        settings = {"apollo_articles": CollectionSettings(filterable=["id"], sortable=["id", "publishTimestamp"])}
        pipeline = _pipeline(backend, collection_settings=settings)
        asyncio.run(pipeline.save_batch("apollo_articles", [{"id": 1000, "title": "x"}]))
        assert backend.filterable["apollo_articles"] == ["id"]
        assert backend.sortable["apollo_articles"] == ["id", "publishTimestamp"]


class TestRetries:

    def test_fail_fail_succeed(self, backend):
        sleeps = []
        pipeline = _pipeline(backend, retries=3, sleeps=sleeps)
        backend.fail_next("add_or_update_documents", BackendUnavailableError("down"), times=2)
        docs = _docs(5)
        assert asyncio.run(pipeline.save_batch(COLL, docs)) == 5
        assert backend.docs(COLL) == {d["id"]: d for d in docs}
        assert sleeps == [1.0, 2.0]

    def test_failed_task_retried(self, backend):
        pipeline = _pipeline(backend, retries=3)
        backend.fail_tasks(2)
        asyncio.run(pipeline.save_batch(COLL, _docs(3)))
        assert len(backend.docs(COLL)) == 3
        assert backend.calls.count("add_or_update_documents") == 3

    def test_exhaustion_raises_index_write_error(self, backend):
        pipeline = _pipeline(backend, retries=3)
        backend.fail_tasks(3)
        with pytest.raises(IndexWriteError) as info:
            asyncio.run(pipeline.save_batch(COLL, _docs(2)))
        assert info.value.collection == COLL
        assert info.value.attempts == 3
        assert info.value.chunk_number == 1
        assert backend.docs(COLL) == {}

    def test_later_chunk_failure_reports_its_number(self, backend):
        pipeline = _pipeline(backend, batch_size=2, retries=1)

        calls = {"n": 0}
        original = backend.add_or_update_documents

        async def fail_second_chunk(name, documents, primary_key="id"):
            calls["n"] += 1
            if calls["n"] == 2:
                raise BackendUnavailableError("down")
            return await original(name, documents, primary_key)

        backend.add_or_update_documents = fail_second_chunk
        with pytest.raises(IndexWriteError) as info:
            asyncio.run(pipeline.save_batch(COLL, _docs(4)))
        assert info.value.chunk_number == 2
        assert len(backend.docs(COLL)) == 2


class TestUpsert:

    def test_same_id_overwrites(self, backend):
        pipeline = _pipeline(backend)
        asyncio.run(pipeline.save_batch(COLL, [{"id": "x", "title": "old"}]))
        asyncio.run(pipeline.save_batch(COLL, [{"id": "x", "title": "new"}]))
        assert backend.docs(COLL) == {"x": {"id": "x", "title": "new"}}


class TestDocumentBuffer:

    def test_flushes_at_size_and_on_demand(self):
        backend = InMemoryBackend()
        buffer = DocumentBuffer(_pipeline(backend), COLL, flush_size=2)

        async def run():
            flushed = [await buffer.add(d) for d in _docs(3)]
            remaining = len(buffer)
            final = await buffer.flush()
            return flushed, remaining, final

        flushed, remaining, final = asyncio.run(run())
        assert flushed == [0, 2, 0]
        assert remaining == 1
        assert final == 1
        assert buffer.flushed == 3
        assert len(backend.docs(COLL)) == 3

    def test_flush_empty(self, backend):
        buffer = DocumentBuffer(_pipeline(backend), COLL)
        assert asyncio.run(buffer.flush()) == 0

    def test_on_flushed_gets_each_written_batch(self, backend):
        batches = []

        async def on_flushed(docs):
            batches.append([d["id"] for d in docs])

        buffer = DocumentBuffer(_pipeline(backend), COLL, flush_size=2, on_flushed=on_flushed)

        async def run():
            for d in _docs(3):
                await buffer.add(d)
            await buffer.flush()

        asyncio.run(run())
        assert batches == [["doc0", "doc1"], ["doc2"]]

    def test_on_flushed_skipped_when_write_fails(self, backend):
        batches = []

        async def on_flushed(docs):
            batches.append(docs)

        buffer = DocumentBuffer(_pipeline(backend, retries=1), COLL, flush_size=2, on_flushed=on_flushed)
        backend.fail_next("add_or_update_documents", BackendUnavailableError("down"))

        async def run():
            for d in _docs(2):
                await buffer.add(d)

        with pytest.raises(IndexWriteError):
            asyncio.run(run())
        assert batches == []
        assert backend.docs(COLL) == {}
