import asyncio
from dataclasses import replace

from companion_memory.services.embedding import EmbeddingService
from companion_memory.utils.config import config

from conftest import FakeEmbedder, build_memory

MODEL = config.bedrock_embed.model_version


def make_service(embedder, batch_size=10):
    return EmbeddingService(embedder, replace(config.bedrock_embed, batch_size=batch_size))


def test_only_missing_or_stale_embeddings_are_refreshed():
    current = build_memory(content='Knows Rust', embedding=[0.5, 0.5, 0.0], embedding_model=MODEL)
    stale = build_memory(content='Plays chess', embedding=[0.1, 0.2, 0.3], embedding_model='titan-v1')
    missing = build_memory(content='Lives in Lisbon', context='since 2020')
    embedder = FakeEmbedder({'chess': [0.0, 1.0, 0.0]})

    updated = asyncio.run(make_service(embedder).embed_memories([current, stale, missing]))

    assert updated == [stale, missing]
    assert embedder.document_calls == [['Plays chess', 'Lives in Lisbon since 2020']]
    assert stale.embedding == [0.0, 1.0, 0.0]
    assert stale.embedding_model == MODEL
    assert current.embedding == [0.5, 0.5, 0.0]


def test_memories_are_embedded_in_batches():
    memories = [build_memory(content=f'Fact {i}') for i in range(5)]
    embedder = FakeEmbedder()

    updated = asyncio.run(make_service(embedder, batch_size=2).embed_memories(memories))

    assert len(updated) == 5
    assert [len(batch) for batch in embedder.document_calls] == [2, 2, 1]


def test_failed_batches_leave_memories_untouched():
    memory = build_memory()

    updated = asyncio.run(make_service(FakeEmbedder(fail=True)).embed_memories([memory]))

    assert updated == []
    assert memory.embedding is None


def test_embed_query():
    embedder = FakeEmbedder()
    service = make_service(embedder)

    assert asyncio.run(service.embed_query('rust projects')) == [1.0, 0.0, 0.0]
    assert asyncio.run(service.embed_query('   ')) is None
    assert embedder.query_calls == ['rust projects']
    assert asyncio.run(make_service(FakeEmbedder(fail=True)).embed_query('rust')) is None
