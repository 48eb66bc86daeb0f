"""
Decay model: effective importance from static importance, age, type half-life
and a usage-derived adaptive decay rate.

All functions are pure apart from the `record_*` helpers, which mutate the
memory they are given. None of them touch storage; callers persist.
"""

import math
from datetime import datetime
from typing import Iterable, List, Optional

from ..models.core import MEMORY_HALF_LIFE_DAYS, Memory, clamp
from ..utils.config import DecayConfig, FeedbackConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import days_between, resolve_now

logger = get_logger(__name__)


def half_life_days(memory_type: str) -> float:
    """Half-life for a memory type; unknown types decay like opinions."""
    return MEMORY_HALF_LIFE_DAYS.get(memory_type, MEMORY_HALF_LIFE_DAYS['opinion'])


def age_in_days(memory: Memory, now: Optional[datetime] = None) -> float:
    return max(0.0, days_between(memory.created_at, resolve_now(now)))


def days_since_activity(memory: Memory, now: Optional[datetime] = None) -> float:
    """Days since the memory was last accessed or used, whichever is later."""
    last_activity = memory.last_accessed
    if memory.last_used_at is not None and memory.last_used_at > last_activity:
        last_activity = memory.last_used_at
    return max(0.0, days_between(last_activity, resolve_now(now)))


def calculate_adaptive_decay_rate(memory: Memory,
                                  now: Optional[datetime] = None,
                                  decay_config: Optional[DecayConfig] = None) -> float:
    """Decay rate multiplier derived from the memory's interaction history.

    < 1.0 decays slower (useful memories), > 1.0 decays faster (neglected ones).

    Args:
        memory: Memory to evaluate
        now: Evaluation time
        decay_config: Tuning constants, uses global config if None

    Returns:
        Rate clamped to [min_decay_rate, max_decay_rate]
    """
    cfg = decay_config or config.decay

    rate = cfg.default_decay_rate
    rate -= memory.positive_interactions * cfg.positive_weight
    rate += memory.negative_interactions * cfg.negative_weight

    if memory.usage_count >= cfg.usage_threshold:
        rate -= min(memory.usage_count * cfg.usage_bonus_per_use, cfg.max_usage_bonus)

    # Rarely used memories left alone past the stale threshold fade faster
    if memory.usage_count < cfg.usage_threshold and days_since_activity(memory, now) > cfg.stale_threshold_days:
        rate *= cfg.stale_decay_multiplier

    return clamp(rate, cfg.min_decay_rate, cfg.max_decay_rate)


def current_decay_rate(memory: Memory,
                       now: Optional[datetime] = None,
                       decay_config: Optional[DecayConfig] = None) -> float:
    """Cached adaptive rate when present, otherwise computed on the fly."""
    if memory.adaptive_decay_rate is not None:
        return memory.adaptive_decay_rate
    return calculate_adaptive_decay_rate(memory, now, decay_config)


def calculate_decayed_importance(memory: Memory,
                                 now: Optional[datetime] = None,
                                 decay_config: Optional[DecayConfig] = None) -> float:
    """Static importance after exponential decay with the adaptive half-life."""
    half_life = half_life_days(memory.type)
    if math.isinf(half_life):
        return memory.importance

    rate = current_decay_rate(memory, now, decay_config)
    adjusted_half_life = half_life / rate
    decay_factor = math.pow(0.5, age_in_days(memory, now) / adjusted_half_life)
    return memory.importance * decay_factor


def effective_importance(memory: Memory,
                         now: Optional[datetime] = None,
                         decay_config: Optional[DecayConfig] = None) -> float:
    """Importance used for ranking and pruning, always within [0, 1].

    Memories whose type never decays return their static importance unchanged.
    Otherwise the decayed importance is shifted by the feedback score and
    boosted for user-verified memories.
    """
    cfg = decay_config or config.decay

    if math.isinf(half_life_days(memory.type)):
        return memory.importance

    decayed = calculate_decayed_importance(memory, now, cfg)
    value = decayed + memory.feedback_score * cfg.feedback_weight
    if memory.user_verified:
        value *= cfg.verified_multiplier
    return clamp(value, 0.0, 1.0)


def refresh_decay_rate(memory: Memory,
                       now: Optional[datetime] = None,
                       decay_config: Optional[DecayConfig] = None) -> bool:
    """Recompute the cached adaptive rate, writing it only on a meaningful shift.

    Returns:
        True when the memory was changed and needs persisting
    """
    cfg = decay_config or config.decay

    new_rate = calculate_adaptive_decay_rate(memory, now, cfg)
    cached_rate = memory.adaptive_decay_rate if memory.adaptive_decay_rate is not None else cfg.default_decay_rate
    if abs(new_rate - cached_rate) <= cfg.rate_hysteresis:
        return False

    logger.debug(f'Adaptive decay rate for {memory.id}: {cached_rate:.2f} -> {new_rate:.2f}')
    memory.adaptive_decay_rate = new_rate
    return True


def record_positive_interaction(memory: Memory, now: Optional[datetime] = None) -> None:
    """The memory was useful: used in a response or engaged with."""
    memory.positive_interactions += 1
    memory.last_used_at = resolve_now(now)


def record_negative_interaction(memory: Memory) -> None:
    """The memory was dismissed or ignored."""
    memory.negative_interactions += 1


def adjust_feedback_score(memory: Memory, engaged: bool, feedback_config: Optional[FeedbackConfig] = None) -> float:
    """Nudge the feedback score after a proactive message; assignment clamps to [-1, 1]."""
    cfg = feedback_config or config.feedback
    memory.feedback_score = memory.feedback_score + (cfg.engage_boost if engaged else cfg.dismiss_penalty)
    return memory.feedback_score


def find_stale_memories(memories: Iterable[Memory],
                        now: Optional[datetime] = None,
                        decay_config: Optional[DecayConfig] = None) -> List[Memory]:
    """Decaying memories that have sat unused past the stale threshold."""
    cfg = decay_config or config.decay
    return [
        memory for memory in memories
        if not math.isinf(half_life_days(memory.type)) and memory.usage_count < cfg.usage_threshold and
        days_since_activity(memory, now) > cfg.stale_threshold_days
    ]


def rank_by_effective_importance(memories: Iterable[Memory],
                                 now: Optional[datetime] = None,
                                 decay_config: Optional[DecayConfig] = None) -> List[Memory]:
    """Highest effective importance first."""
    now = resolve_now(now)
    return sorted(memories, key=lambda m: effective_importance(m, now, decay_config), reverse=True)
