import pytest

from companion_memory.services.hybrid_search import HybridRanker, has_usable_embedding, rank_memories
from companion_memory.utils.vector_utils import cosine_similarity

from conftest import build_memory

QUERY = 'budgeting app React'


def test_cosine_similarity_edge_cases():
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
    assert cosine_similarity([], []) == 0.0


def test_keyword_only_ranking_filters_unrelated_memories():
    budgeting = build_memory(content='Building a budgeting app with React and Supabase', type='project')
    marathon = build_memory(content='Training for a marathon in October', type='event')

    results = rank_memories(QUERY, [budgeting, marathon])

    assert [r.memory for r in results] == [budgeting]
    assert results[0].score == pytest.approx(1.0)
    assert results[0].semantic_score == 0.0


def test_semantic_and_keyword_scores_are_fused():
    marathon = build_memory(content='Training for a marathon in October',
                            embedding=[1.0, 0.0, 0.0],
                            embedding_model='titan-v2')

    results = rank_memories(QUERY, [marathon], query_embedding=[1.0, 0.0, 0.0], embedding_model='titan-v2')

    assert results[0].semantic_score == pytest.approx(1.0)
    assert results[0].keyword_score == 0.0
    assert results[0].score == pytest.approx(0.6)


def test_vectors_from_another_model_fall_back_to_keywords():
    marathon = build_memory(content='Training for a marathon in October',
                            embedding=[1.0, 0.0, 0.0],
                            embedding_model='titan-v1')

    assert not has_usable_embedding(marathon, [1.0, 0.0, 0.0], 'titan-v2')
    assert rank_memories(QUERY, [marathon], query_embedding=[1.0, 0.0, 0.0], embedding_model='titan-v2') == []

    results = rank_memories(QUERY, [marathon], query_embedding=[1.0, 0.0, 0.0], embedding_model='titan-v2',
                            min_score=0.0)
    assert results[0].score == 0.0


def test_mismatched_dimensions_fall_back_to_keywords():
    budgeting = build_memory(content='Building a budgeting app with React', embedding=[1.0, 0.0])

    results = rank_memories(QUERY, [budgeting], query_embedding=[1.0, 0.0, 0.0])

    assert results[0].semantic_score == 0.0
    assert results[0].score == pytest.approx(1.0)


def test_ties_break_on_access_count_then_recency():
    rarely = build_memory(content='Budgeting app in React', access_count=1)
    often = build_memory(content='Budgeting app in React', access_count=5)
    often_recent = build_memory(content='Budgeting app in React', access_count=5, accessed_days_ago=0)
    often_older = build_memory(content='Budgeting app in React', access_count=5, accessed_days_ago=3)

    results = rank_memories(QUERY, [rarely, often_older, often, often_recent])

    assert results[-1].memory is rarely
    assert results[0].memory.access_count == 5
    assert results.index(next(r for r in results if r.memory is often_recent)) < \
        results.index(next(r for r in results if r.memory is often_older))


def test_limit_and_empty_inputs():
    memories = [build_memory(content=f'Budgeting app in React, part {i}') for i in range(5)]

    assert len(rank_memories(QUERY, memories, limit=2)) == 2
    assert rank_memories(QUERY, memories, limit=0) == []
    assert rank_memories(QUERY, []) == []


def test_index_is_rebuilt_only_when_candidates_change():
    ranker = HybridRanker()
    first = build_memory(content='Budgeting app in React')
    second = build_memory(content='Learning Rust for a CLI', accessed_days_ago=1)

    ranker.rank(QUERY, [first])
    assert len(ranker.index) == 1

    ranker.rank(QUERY, [first, second])
    index = ranker.index
    assert len(index) == 2

    ranker.rank('Rust CLI', [first, second])
    assert ranker.index is index

    second.content = 'Learning Go for a CLI'
    ranker.rank('Rust CLI', [first, second])
    assert ranker.index is not index


def test_to_dict_includes_scores():
    budgeting = build_memory(content='Budgeting app in React', id='mem-budget', accessed_days_ago=1)

    result = rank_memories(QUERY, [budgeting])[0].to_dict()

    assert result['memory']['id'] == 'mem-budget'
    assert set(result) == {'memory', 'score', 'semantic_score', 'keyword_score'}
