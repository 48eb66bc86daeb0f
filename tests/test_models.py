from datetime import timedelta, timezone

from companion_memory.models.core import ConversationSummary, Memory, OperationResult
from companion_memory.models.proactive import PageContext, ProactiveHistoryEntry, ProactiveState, WelcomeBackAction

from conftest import NOW, build_memory


def test_memory_clamps_scores_on_construction():
    memory = build_memory(importance=1.5, confidence=-0.2, feedback_score=-3, adaptive_decay_rate=5.0)

    assert memory.importance == 1.0
    assert memory.confidence == 0.0
    assert memory.feedback_score == -1.0
    assert memory.adaptive_decay_rate == 2.0


def test_memory_clamps_scores_on_assignment():
    memory = build_memory()

    memory.importance = -0.5
    memory.feedback_score = 1.7
    memory.adaptive_decay_rate = 0.1

    assert memory.importance == 0.0
    assert memory.feedback_score == 1.0
    assert memory.adaptive_decay_rate == 0.5


def test_uncomputed_decay_rate_stays_none():
    memory = build_memory()
    assert memory.adaptive_decay_rate is None


def test_memory_round_trips_through_dict():
    original = build_memory(url='https://github.com/me/repo',
                            usage_count=4,
                            last_used_at=NOW,
                            embedding=[0.1, 0.2],
                            embedding_model='titan-v2',
                            adaptive_decay_rate=0.8,
                            positive_interactions=2)

    restored = Memory.from_dict(original.to_dict(), NOW)

    assert restored == original


def test_memory_from_dict_falls_back_on_malformed_fields():
    data = {
        'id': 'mem-x',
        'type': 'project',
        'content': 'Building a budgeting app',
        'importance': 'very',
        'confidence': True,
        'access_count': -4,
        'created_at': 'not a date',
        'embedding': ['a', 'b'],
        'user_verified': 'yes',
        'source': 'nowhere',
    }

    memory = Memory.from_dict(data, NOW)

    assert memory.importance == 0.5
    assert memory.confidence == 0.5
    assert memory.access_count == 0
    assert memory.created_at == NOW
    assert memory.last_accessed == NOW
    assert memory.embedding is None
    assert memory.user_verified is False
    assert memory.source.conversation_id == ''


def test_memory_from_dict_rejects_records_without_identity():
    assert Memory.from_dict({'id': 'x', 'type': 'skill', 'content': '  '}, NOW) is None
    assert Memory.from_dict({'id': 'x', 'type': 'hobby', 'content': 'Chess'}, NOW) is None
    assert Memory.from_dict({'type': 'skill', 'content': 'Chess'}, NOW) is None
    assert Memory.from_dict('garbage', NOW) is None


def test_memory_expiry():
    memory = build_memory(expires_at=NOW + timedelta(hours=1))

    assert not memory.is_expired(NOW)
    assert memory.is_expired(NOW + timedelta(hours=1))


def test_millisecond_timestamps_are_understood():
    millis = int(NOW.replace(tzinfo=timezone.utc).timestamp() * 1000)
    memory = Memory.from_dict({'id': 'm', 'type': 'skill', 'content': 'Go', 'created_at': millis}, NOW)

    assert memory.created_at == NOW


def test_summary_from_dict_defaults():
    summary = ConversationSummary.from_dict({'id': 's1', 'summary': 'Talked about Rust', 'key_topics': 'rust'}, NOW)

    assert summary.key_topics == []
    assert summary.memory_ids == []
    assert summary.conversation_ended_at == NOW


def test_proactive_state_parses_garbage_to_defaults():
    assert ProactiveState.from_dict(None) == ProactiveState()
    assert ProactiveState.from_dict('corrupt') == ProactiveState()

    state = ProactiveState.from_dict({
        'session_count': 'three',
        'memory_cooldowns': {'m1': 'tomorrow', 'm2': (NOW + timedelta(hours=2)).isoformat()},
        'history': [{'id': 'h1', 'type': 'unknown'}, 42],
    })

    assert state.session_count == 0
    assert state.memory_cooldowns == {'m2': NOW + timedelta(hours=2)}
    assert state.history == []


def test_proactive_state_keeps_bounded_history():
    history = [
        ProactiveHistoryEntry(id=f'h{i}', type='follow_up', message='Hi', timestamp=NOW + timedelta(minutes=i))
        for i in range(30)
    ]
    state = ProactiveState(history=history)

    restored = ProactiveState.from_dict(state.to_dict())

    assert len(restored.history) == 20
    assert restored.history[0].id == 'h10'
    assert restored.history[-1].id == 'h29'


def test_page_context_derives_origin():
    context = PageContext.from_dict({'url': 'https://github.com/me/repo', 'title': 'repo', 'page_type': 'weird'})

    assert context.origin == 'https://github.com'
    assert context.page_type is None
    assert PageContext.from_dict(None) is None


def test_action_to_dict_carries_variant_tag():
    memory = build_memory(id='mem-a')
    action = WelcomeBackAction(message='Welcome back!', memory=memory, absence_days=8)

    assert action.to_dict() == {
        'type': 'welcome_back',
        'message': 'Welcome back!',
        'memory_id': 'mem-a',
        'metadata': {'absence_days': 8},
    }


def test_operation_result_failure_keeps_cause():
    result = OperationResult.fail('boom', ValueError('bad'))

    assert result.success is False
    assert result.cause == "ValueError('bad')"
    assert OperationResult.ok([1]).to_dict() == {'success': True, 'message': None, 'cause': None, 'data': [1]}


def test_offset_timestamps_are_stored_as_naive_utc():
    memory = Memory.from_dict({'id': 'm', 'type': 'event', 'content': 'Flight to Lisbon',
                               'created_at': '2025-06-11T14:00:00+02:00',
                               'last_accessed': '2025-06-11T12:00:00Z',
                               'expires_at': '2030-01-01T00:00:00+00:00'}, NOW)

    assert memory.created_at == NOW
    assert memory.last_accessed == NOW
    assert memory.expires_at.tzinfo is None
    assert not memory.is_expired(NOW)


def test_assigned_aware_datetimes_are_normalized():
    memory = build_memory()
    memory.last_used_at = NOW.replace(tzinfo=timezone(timedelta(hours=-4))) + timedelta(hours=4)

    assert memory.last_used_at == NOW + timedelta(hours=8)
    assert memory.last_used_at.tzinfo is None


def test_non_finite_and_out_of_range_values_fall_back():
    memory = Memory.from_dict({'id': 'm', 'type': 'skill', 'content': 'Go',
                               'access_count': float('inf'),
                               'last_accessed': '0001-01-01T00:00:00+05:00',
                               'expires_at': 1e400}, NOW)

    assert memory.access_count == 0
    assert memory.last_accessed == NOW
    assert memory.expires_at is None
