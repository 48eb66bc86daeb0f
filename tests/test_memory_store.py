import asyncio
from copy import deepcopy
from dataclasses import replace
from datetime import timedelta

import pytest

from companion_memory.models.core import ConversationSummary, ExtractedMemory, MemorySource
from companion_memory.services.memory_store import MEMORIES_KEY, SUMMARIES_KEY, MemoryStore, memory_size_bytes
from companion_memory.utils.config import config
from companion_memory.utils.kv_store import InMemoryKeyValueStore

from conftest import NOW, build_memory

SOURCE = MemorySource(conversation_id='conv-1', message_id='msg-1', timestamp=NOW, url='https://github.com/me/cli')


def run(coro):
    return asyncio.run(coro)


def candidate(content='Knows Rust', type='skill', importance=0.6, confidence=0.8, context=None):
    return ExtractedMemory(type=type, content=content, importance=importance, confidence=confidence, context=context)


async def loaded_store(kv_store=None, **limits):
    store = MemoryStore(kv_store if kv_store is not None else InMemoryKeyValueStore(),
                        replace(config.memory, **limits) if limits else None)
    await store.load(NOW)
    return store


async def seeded_store(memories, kv_store=None):
    kv_store = kv_store if kv_store is not None else InMemoryKeyValueStore()
    await kv_store.set(MEMORIES_KEY, [m.to_dict() for m in memories])
    return await loaded_store(kv_store)


def test_added_memories_are_persisted():
    async def scenario():
        kv_store = InMemoryKeyValueStore()
        store = await loaded_store(kv_store)
        added = await store.add_memories([candidate(context='for a CLI rewrite')], SOURCE, NOW)
        return added, await kv_store.get(MEMORIES_KEY)

    added, raw = run(scenario())

    assert len(added) == 1
    assert added[0].id.startswith('mem-')
    assert added[0].source.url == 'https://github.com/me/cli'
    assert added[0].created_at == NOW
    assert [item['content'] for item in raw] == ['Knows Rust']


def test_same_fact_is_merged():
    async def scenario():
        store = await loaded_store()
        first = await store.add_memories([candidate(importance=0.5, confidence=0.9)], SOURCE, NOW)
        second = await store.add_memories([candidate(content=' knows rust ', importance=0.8, confidence=0.6)], SOURCE,
                                          NOW + timedelta(hours=1))
        return store, first, second

    store, first, second = run(scenario())

    assert len(store.memories) == 1
    assert second[0] is first[0]
    assert first[0].importance == 0.8
    assert first[0].confidence == 0.9
    assert first[0].access_count == 1
    assert first[0].last_accessed == NOW + timedelta(hours=1)


def test_same_content_with_other_type_is_kept_apart():
    async def scenario():
        store = await loaded_store()
        await store.add_memories([candidate(type='skill'), candidate(type='preference')], SOURCE, NOW)
        return store

    assert len(run(scenario()).memories) == 2


def test_sensitive_candidates_are_never_stored():
    async def scenario():
        kv_store = InMemoryKeyValueStore()
        store = await loaded_store(kv_store)
        added = await store.add_memories([candidate(content='password: hunter22', type='identity'),
                                          candidate(content='Works on billing', context='card 4111 1111 1111 1111')],
                                         SOURCE, NOW)
        return store, added, await kv_store.get(MEMORIES_KEY)

    store, added, raw = run(scenario())

    assert added == []
    assert store.memories == []
    assert raw is None


def test_per_type_cap_drops_least_important():
    async def scenario():
        store = await loaded_store(max_memories_per_type=3)
        await store.add_memories([candidate(content=f'Skill {i}', importance=i / 10) for i in range(1, 6)], SOURCE, NOW)
        return store

    store = run(scenario())

    assert sorted(m.content for m in store.memories) == ['Skill 3', 'Skill 4', 'Skill 5']


def test_total_cap_prunes_down_to_target():
    async def scenario():
        store = await loaded_store(max_total_memories=10)
        types = ['skill', 'project', 'person', 'preference', 'opinion', 'event', 'identity', 'skill', 'project']
        await store.add_memories([candidate(content=f'Fact {i}', type=t, importance=0.5 + i / 20)
                                  for i, t in enumerate(types)], SOURCE, NOW)
        return store

    store = run(scenario())

    assert len(store.memories) == 7
    assert 'Fact 0' not in [m.content for m in store.memories]
    assert 'Fact 1' not in [m.content for m in store.memories]


def test_size_cap_prunes_until_under_budget():
    async def scenario():
        memories = [build_memory(content=f'Fact number {i}', importance=0.3 + i / 10) for i in range(4)]
        budget = sum(memory_size_bytes(m) for m in memories[2:])
        store = await seeded_store(memories)
        store.config = replace(config.memory, max_storage_bytes=budget)
        removed = await store.prune(NOW)
        return memories, store, removed

    memories, store, removed = run(scenario())

    assert removed == [memories[0].id, memories[1].id]
    assert len(store.memories) == 2


def test_edit_marks_verified_and_clears_stale_embedding():
    async def scenario():
        original = build_memory(content='Knows Rust', embedding=[1.0, 0.0], embedding_model='titan-v2')
        store = await seeded_store([original])
        edited = await store.edit_memory(original.id, {'content': 'Knows Rust and Go', 'importance': 0.9},
                                         NOW + timedelta(hours=1))
        return edited

    edited = run(scenario())

    assert edited.content == 'Knows Rust and Go'
    assert edited.importance == 0.9
    assert edited.user_verified is True
    assert edited.embedding is None
    assert edited.last_accessed == NOW + timedelta(hours=1)


def test_edit_keeps_embedding_when_text_is_unchanged():
    async def scenario():
        original = build_memory(content='Knows Rust', embedding=[1.0, 0.0], embedding_model='titan-v2')
        store = await seeded_store([original])
        return await store.edit_memory(original.id, {'importance': 0.2}, NOW)

    assert run(scenario()).embedding == [1.0, 0.0]


@pytest.mark.parametrize('updates', [
    {'content': '   '},
    {'type': 'hobby'},
    {'context': 42},
    {'content': 'api_key=abc123'},
])
def test_invalid_edits_are_rejected(updates):
    async def scenario():
        memory = build_memory()
        store = await seeded_store([memory])
        await store.edit_memory(memory.id, updates, NOW)

    with pytest.raises(ValueError):
        run(scenario())


def test_editing_missing_memory_returns_none():
    async def scenario():
        store = await loaded_store()
        return await store.edit_memory('mem-missing', {'content': 'x'}, NOW)

    assert run(scenario()) is None


def test_embeddings_are_not_applied_to_edited_memories():
    async def scenario():
        memory = build_memory(content='Knows Rust')
        store = await seeded_store([memory])
        stale_copy = deepcopy(store.get(memory.id))
        stale_copy.embedding = [0.0, 1.0]
        stale_copy.embedding_model = 'titan-v2'

        await store.edit_memory(memory.id, {'content': 'Knows Zig'}, NOW)
        skipped = await store.apply_embeddings([stale_copy])

        fresh_copy = deepcopy(store.get(memory.id))
        fresh_copy.embedding = [0.0, 1.0]
        fresh_copy.embedding_model = 'titan-v2'
        applied = await store.apply_embeddings([fresh_copy])
        return store.get(memory.id), skipped, applied

    live, skipped, applied = run(scenario())

    assert skipped == 0
    assert applied == 1
    assert live.embedding == [0.0, 1.0]


def test_usage_feeds_the_decay_model():
    async def scenario():
        memory = build_memory()
        store = await seeded_store([memory])
        await store.record_usage([memory.id, 'mem-missing'], NOW)
        return store.get(memory.id)

    used = run(scenario())

    assert used.usage_count == 1
    assert used.positive_interactions == 1
    assert used.last_used_at == NOW
    assert used.feedback_score == pytest.approx(0.02)
    assert used.adaptive_decay_rate == pytest.approx(0.85)


@pytest.mark.parametrize('outcome,positive,negative,score', [
    ('engaged', 1, 0, 0.1),
    ('dismissed', 0, 1, -0.05),
    ('ignored', 0, 1, 0.0),
])
def test_feedback_outcomes(outcome, positive, negative, score):
    async def scenario():
        memory = build_memory()
        store = await seeded_store([memory])
        return await store.apply_feedback(memory.id, outcome, NOW)

    memory = run(scenario())

    assert memory.positive_interactions == positive
    assert memory.negative_interactions == negative
    assert memory.feedback_score == pytest.approx(score)


def test_feedback_on_missing_memory_and_unknown_outcome():
    async def scenario():
        store = await loaded_store()
        missing = await store.apply_feedback('mem-missing', 'engaged', NOW)
        with pytest.raises(ValueError):
            await store.apply_feedback('mem-missing', 'loved', NOW)
        return missing

    assert run(scenario()) is None


def test_access_bookkeeping():
    async def scenario():
        memory = build_memory(age_days=3)
        store = await seeded_store([memory])
        touched = await store.mark_accessed([memory.id, 'mem-missing'], NOW)
        return store.get(memory.id), touched

    memory, touched = run(scenario())

    assert touched == 1
    assert memory.access_count == 1
    assert memory.last_accessed == NOW


def test_expired_memories_are_deleted():
    async def scenario():
        expired = build_memory(content='Concert tonight', type='event', expires_at=NOW - timedelta(minutes=1))
        current = build_memory(content='Knows Rust')
        store = await seeded_store([expired, current])
        active = store.active_memories(NOW)
        deleted = await store.delete_expired(NOW)
        return store, active, deleted, current

    store, active, deleted, current = run(scenario())

    assert active == [current]
    assert deleted == 1
    assert [m.id for m in store.memories] == [current.id]


def test_delete_memory():
    async def scenario():
        memory = build_memory()
        store = await seeded_store([memory])
        return await store.delete_memory(memory.id), await store.delete_memory(memory.id), store.memories

    assert run(scenario()) == (True, False, [])


def test_corrupt_blobs_load_as_empty():
    async def scenario():
        kv_store = InMemoryKeyValueStore({MEMORIES_KEY: 'garbage', SUMMARIES_KEY: {'not': 'a list'}})
        return await loaded_store(kv_store)

    store = run(scenario())

    assert store.loaded
    assert store.memories == []
    assert store.summaries == []


def test_malformed_records_are_skipped():
    async def scenario():
        good = build_memory(content='Knows Rust')
        kv_store = InMemoryKeyValueStore({MEMORIES_KEY: [good.to_dict(), {'id': 'x', 'type': 'hobby'}, 7]})
        return good, await loaded_store(kv_store)

    good, store = run(scenario())

    assert [m.id for m in store.memories] == [good.id]


def test_summaries_are_keyed_by_conversation():
    async def scenario():
        kv_store = InMemoryKeyValueStore()
        store = await loaded_store(kv_store)
        for text in ('First take', 'Second take'):
            await store.save_summary(ConversationSummary(id=f'sum-{text}',
                                                         conversation_id='conv-1',
                                                         summary=text,
                                                         key_topics=['rust'],
                                                         memory_ids=[],
                                                         message_count=10,
                                                         conversation_started_at=NOW,
                                                         conversation_ended_at=NOW,
                                                         created_at=NOW))
        reloaded = await loaded_store(kv_store)
        return store, reloaded

    store, reloaded = run(scenario())

    assert store.get_summary('conv-1').summary == 'Second take'
    assert [s.summary for s in reloaded.summaries] == ['Second take']


def test_stats():
    async def scenario():
        store = await seeded_store([build_memory(type='skill', age_days=5), build_memory(type='project')])
        return store.stats()

    stats = run(scenario())

    assert stats['total'] == 2
    assert stats['by_type']['skill'] == 1
    assert stats['by_type']['identity'] == 0
    assert stats['oldest_memory'] == NOW - timedelta(days=5)
    assert stats['newest_memory'] == NOW
