"""
Restart backoff and crash-loop protection.

Pure functions: given the restart history and the timing settings they
decide how long to wait before the next automatic restart and whether the
worker has to cool down first. No I/O, no clocks.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class RestartPlan:
    """Outcome of planning an automatic restart."""

    delay_ms: int
    history: list[int]
    cooldown_until_ms: Optional[int] = None

    @property
    def crash_loop(self) -> bool:
        return self.cooldown_until_ms is not None


def prune_restart_history(history: list[int], now_ms: int, window_ms: int) -> list[int]:
    """Drop restart timestamps that fall outside the rolling window."""
    cutoff = now_ms - window_ms
    return [ts for ts in history if ts >= cutoff]


def compute_restart_delay(attempt: int, base_ms: int, max_ms: int) -> int:
    """Exponential backoff: base * 2^(attempt-1), capped at max."""
    exponent = max(0, attempt - 1)
    # Cap the exponent so huge attempt counts don't build huge integers
    if exponent > 62:
        return max_ms
    return min(base_ms * 2**exponent, max_ms)


def plan_restart(
    history: list[int],
    now_ms: int,
    base_ms: int,
    max_ms: int,
    window_ms: int,
    max_count: int,
    cooldown_ms: int,
) -> RestartPlan:
    """
    Record a restart at `now_ms` and plan the delay before it happens.

    The attempt number is the count of restarts inside the window, this one
    included. Going over `max_count` triggers crash-loop cooldown: the
    cooldown deadline is set and the delay is raised to at least the
    cooldown duration.
    """
    pruned = prune_restart_history(history + [now_ms], now_ms, window_ms)
    delay_ms = compute_restart_delay(len(pruned), base_ms, max_ms)

    if len(pruned) > max_count:
        return RestartPlan(
            delay_ms=max(delay_ms, cooldown_ms),
            history=pruned,
            cooldown_until_ms=now_ms + cooldown_ms,
        )
    return RestartPlan(delay_ms=delay_ms, history=pruned)


def cooldown_remaining_ms(cooldown_until_ms: int, now_ms: int) -> int:
    return cooldown_until_ms - now_ms if cooldown_until_ms > now_ms else 0
