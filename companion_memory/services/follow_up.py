"""
Follow-up detection: memories that deserve an unprompted question, with
templated wording.
"""

import math
import random
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..models.core import EVENT, PERSON, PROJECT, SKILL, Memory
from ..utils.config import FollowUpConfig, config
from ..utils.timestamp_utils import days_between, hours_between, resolve_now
from .date_parsing import parse_relative_date

EVENT_PASSED = 'event_passed'
EVENT_UPCOMING = 'event_upcoming'
PROJECT_STALE = 'project_stale'
SKILL_MILESTONE = 'skill_milestone'
PERSON_CHECK = 'person_check'

FOLLOW_UP_TEMPLATES = {
    EVENT_PASSED: ['How did {subject} go?', 'Hey, how was {subject}?', 'So... {subject} - how did it turn out?'],
    EVENT_UPCOMING: ['Ready for {subject}?', '{subject} is coming up soon!', 'Good luck with {subject}!'],
    PROJECT_STALE: ['Any progress on {subject}?', 'Still working on {subject}?', "How's {subject} coming along?"],
    SKILL_MILESTONE: ["How's learning {subject} going?", 'Still practicing {subject}?', 'Getting better at {subject}?'],
    PERSON_CHECK: ["How's {subject} doing?", 'Heard from {subject} lately?'],
}

_SUBJECT_PREFIX = re.compile(r"^(User is |User has |User's |They are |Their )", re.IGNORECASE)
_SUBJECT_VERB = re.compile(r'^(working on |learning |studying |practicing )', re.IGNORECASE)


@dataclass
class FollowUpCandidate:
    memory: Memory
    reason: str
    suggested_question: str
    priority: float  # rule priority x importance


def _whole_days(earlier: datetime, now: datetime) -> int:
    return math.floor(days_between(earlier, now))


def _event_date(memory: Memory) -> Optional[datetime]:
    return parse_relative_date(memory.content, memory.created_at)


def _event_passed(memory: Memory, now: datetime, cfg: FollowUpConfig) -> bool:
    if memory.expires_at is not None and now > memory.expires_at:
        return True
    event_date = _event_date(memory)
    return event_date is not None and now > event_date + timedelta(hours=cfg.event_passed_grace_hours)


def _event_upcoming(memory: Memory, now: datetime, cfg: FollowUpConfig) -> bool:
    event_date = memory.expires_at or _event_date(memory)
    if event_date is None:
        return False
    hours_until = hours_between(now, event_date)
    return 0 < hours_until <= cfg.upcoming_window_hours


def _project_stale(memory: Memory, now: datetime, cfg: FollowUpConfig) -> bool:
    return _whole_days(memory.last_accessed, now) > cfg.stale_project_days


def _skill_milestone(memory: Memory, now: datetime, cfg: FollowUpConfig) -> bool:
    days = _whole_days(memory.created_at, now)
    return any(start <= days <= start + cfg.skill_milestone_window_days for start in cfg.skill_milestone_days)


def _person_check(memory: Memory, now: datetime, cfg: FollowUpConfig) -> bool:
    return _whole_days(memory.last_accessed, now) > cfg.person_check_days


@dataclass(frozen=True)
class FollowUpRule:
    reason: str
    memory_type: str
    priority: float
    condition: Callable[[Memory, datetime, FollowUpConfig], bool]


FOLLOW_UP_RULES = (
    FollowUpRule(EVENT_UPCOMING, EVENT, 0.95, _event_upcoming),
    FollowUpRule(EVENT_PASSED, EVENT, 0.9, _event_passed),
    FollowUpRule(PROJECT_STALE, PROJECT, 0.6, _project_stale),
    FollowUpRule(SKILL_MILESTONE, SKILL, 0.5, _skill_milestone),
    FollowUpRule(PERSON_CHECK, PERSON, 0.4, _person_check),
)


def extract_subject(content: str) -> str:
    """Short phrase of a memory for question templates, e.g. "Rust" from "User is learning Rust, slowly."."""
    subject = _SUBJECT_PREFIX.sub('', content.strip())
    subject = _SUBJECT_VERB.sub('', subject)
    subject = re.split(r'[,.]', subject)[0].strip()
    return subject[:50]


def render_question(memory: Memory, reason: str, rng: random.Random) -> str:
    template = rng.choice(FOLLOW_UP_TEMPLATES[reason])
    return template.replace('{subject}', extract_subject(memory.content))


def is_on_cooldown(memory_id: str, cooldowns: Mapping[str, datetime], now: datetime) -> bool:
    expiry = cooldowns.get(memory_id)
    return expiry is not None and now < expiry


def matching_rule(memory: Memory, now: datetime,
                  follow_up_config: Optional[FollowUpConfig] = None) -> Optional[FollowUpRule]:
    """Highest-priority rule that applies to the memory."""
    cfg = follow_up_config or config.follow_up
    best = None
    for rule in FOLLOW_UP_RULES:
        if rule.memory_type != memory.type or not rule.condition(memory, now, cfg):
            continue
        if best is None or rule.priority > best.priority:
            best = rule
    return best


def get_follow_up_candidates(memories: Sequence[Memory],
                             cooldowns: Optional[Dict[str, datetime]] = None,
                             now: Optional[datetime] = None,
                             rng: Optional[random.Random] = None,
                             follow_up_config: Optional[FollowUpConfig] = None) -> List[FollowUpCandidate]:
    """
    Memories warranting a follow-up question, most urgent first.

    Args:
        memories: Candidate memories
        cooldowns: Memory id -> cooldown expiry; memories on cooldown are skipped
        now: Evaluation time
        rng: Random source for template choice
        follow_up_config: Rule thresholds, uses global config if None

    Returns:
        Candidates sorted by rule priority x importance, descending
    """
    now = resolve_now(now)
    cooldowns = cooldowns or {}
    rng = rng or random.Random()
    cfg = follow_up_config or config.follow_up

    candidates = []
    for memory in memories:
        if is_on_cooldown(memory.id, cooldowns, now) or memory.importance < cfg.min_importance:
            continue
        rule = matching_rule(memory, now, cfg)
        if rule is None:
            continue
        candidates.append(FollowUpCandidate(memory=memory,
                                            reason=rule.reason,
                                            suggested_question=render_question(memory, rule.reason, rng),
                                            priority=rule.priority * memory.importance))

    candidates.sort(key=lambda c: c.priority, reverse=True)
    return candidates
