import random
from dataclasses import replace
from datetime import timedelta

import pytest

from companion_memory.services.follow_up import (EVENT_PASSED, EVENT_UPCOMING, FOLLOW_UP_TEMPLATES, PERSON_CHECK,
                                                 PROJECT_STALE, SKILL_MILESTONE, extract_subject,
                                                 get_follow_up_candidates, matching_rule)
from companion_memory.utils.config import config

from conftest import NOW, build_memory


def reasons(memories, now, **kwargs):
    return [c.reason for c in get_follow_up_candidates(memories, now=now, rng=random.Random(7), **kwargs)]


@pytest.mark.parametrize('content,expected', [
    ('User is learning Rust, slowly.', 'Rust'),
    ("User's sister Ana. Lives in Porto", 'sister Ana'),
    ('Working on a budgeting app', 'a budgeting app'),
    ('Job interview on Friday', 'Job interview on Friday'),
])
def test_extract_subject(content, expected):
    assert extract_subject(content) == expected


def test_event_is_upcoming_the_day_before():
    interview = build_memory(content='Job interview on Friday', type='event')

    assert reasons([interview], NOW + timedelta(hours=26)) == [EVENT_UPCOMING]


def test_event_has_passed_a_day_after():
    interview = build_memory(content='Job interview on Friday', type='event')

    candidates = get_follow_up_candidates([interview], now=NOW + timedelta(days=4), rng=random.Random(7))

    assert candidates[0].reason == EVENT_PASSED
    rendered = {t.replace('{subject}', 'Job interview on Friday') for t in FOLLOW_UP_TEMPLATES[EVENT_PASSED]}
    assert candidates[0].suggested_question in rendered


def test_expired_event_counts_as_passed():
    concert = build_memory(content='Going to a concert', type='event', expires_at=NOW - timedelta(hours=1))

    assert matching_rule(concert, NOW).reason == EVENT_PASSED


def test_undated_event_without_expiry_is_skipped():
    assert reasons([build_memory(content='Went to a concert', type='event')], NOW) == []


def test_project_stale_after_more_than_a_week():
    week = build_memory(content='Building a budgeting app', type='project', age_days=20, accessed_days_ago=7)
    older = build_memory(content='Writing a novel', type='project', age_days=20, accessed_days_ago=8)

    candidates = get_follow_up_candidates([week, older], now=NOW)

    assert [(c.memory, c.reason) for c in candidates] == [(older, PROJECT_STALE)]


@pytest.mark.parametrize('age,matches', [(7, True), (8, True), (15, False), (30, True), (90, True), (92, False)])
def test_skill_milestones(age, matches):
    skill = build_memory(content='Learning Rust', type='skill', age_days=age, accessed_days_ago=0)

    assert (reasons([skill], NOW) == [SKILL_MILESTONE]) is matches


def test_person_check_after_two_weeks():
    sister = build_memory(content='Sister Ana moved to Porto', type='person', age_days=30, accessed_days_ago=15)

    assert reasons([sister], NOW) == [PERSON_CHECK]


def test_cooldown_and_low_importance_skip():
    stale = build_memory(content='Writing a novel', type='project', age_days=20)
    minor = build_memory(content='Fixing a lamp', type='project', importance=0.2, age_days=20)

    assert reasons([stale, minor], NOW, cooldowns={stale.id: NOW + timedelta(hours=1)}) == []
    assert reasons([stale, minor], NOW, cooldowns={stale.id: NOW - timedelta(hours=1)}) == [PROJECT_STALE]


def test_candidates_sorted_by_priority_times_importance():
    sister = build_memory(content='Sister Ana', type='person', importance=0.9, age_days=30)
    novel = build_memory(content='Writing a novel', type='project', importance=0.5, age_days=20)
    interview = build_memory(content='Job interview on Friday', type='event', importance=0.8,
                             expires_at=NOW - timedelta(hours=1))

    candidates = get_follow_up_candidates([sister, novel, interview], now=NOW)

    assert [c.memory for c in candidates] == [interview, sister, novel]
    assert candidates[0].priority == pytest.approx(0.9 * 0.8)


def test_thresholds_come_from_configuration():
    eager = replace(config.follow_up, stale_project_days=3, skill_milestone_days=(15,), min_importance=0.6)
    project = build_memory(content='Building a budgeting app', type='project', age_days=20, accessed_days_ago=4)
    skill = build_memory(content='Learning Rust', type='skill', age_days=15, accessed_days_ago=0)
    minor = build_memory(content='Fixing a lamp', type='project', importance=0.5, age_days=20)

    assert reasons([project, skill, minor], NOW) == [PROJECT_STALE]
    assert sorted(reasons([project, skill, minor], NOW, follow_up_config=eager)) == [PROJECT_STALE, SKILL_MILESTONE]
    assert matching_rule(skill, NOW + timedelta(days=15), eager) is None
