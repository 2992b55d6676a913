"""Tests for restart backoff and crash-loop planning."""

import pytest

from guardian.scheduler import (
    compute_restart_delay,
    cooldown_remaining_ms,
    plan_restart,
    prune_restart_history,
)

BASE_MS = 1_000
MAX_MS = 30_000
WINDOW_MS = 5 * 60_000
COOLDOWN_MS = 120_000


def plan(history, now_ms, max_count=12):
    return plan_restart(
        history,
        now_ms,
        base_ms=BASE_MS,
        max_ms=MAX_MS,
        window_ms=WINDOW_MS,
        max_count=max_count,
        cooldown_ms=COOLDOWN_MS,
    )


class TestComputeRestartDelay:
    def test_doubles_per_attempt(self):
        assert [compute_restart_delay(n, BASE_MS, MAX_MS) for n in range(1, 6)] == [
            1_000,
            2_000,
            4_000,
            8_000,
            16_000,
        ]

    def test_caps_at_max(self):
        assert compute_restart_delay(6, BASE_MS, MAX_MS) == MAX_MS
        assert compute_restart_delay(500, BASE_MS, MAX_MS) == MAX_MS

    def test_monotonic_and_never_below_base(self):
        delays = [compute_restart_delay(n, BASE_MS, MAX_MS) for n in range(1, 100)]
        assert delays == sorted(delays)
        assert min(delays) == BASE_MS
        assert max(delays) == MAX_MS

    def test_attempt_below_one_uses_base(self):
        assert compute_restart_delay(0, BASE_MS, MAX_MS) == BASE_MS


class TestPlanRestart:
    def test_first_restart_uses_base_delay(self):
        result = plan([], 1_000_000)
        assert result.delay_ms == BASE_MS
        assert result.history == [1_000_000]
        assert not result.crash_loop

    def test_history_outside_window_is_pruned(self):
        now = 10_000_000
        old = [now - WINDOW_MS - 1, now - WINDOW_MS - 500]
        result = plan(old + [now - 1_000], now)
        assert result.history == [now - 1_000, now]
        assert result.delay_ms == 2_000

    def test_does_not_mutate_input(self):
        history = [5_000]
        plan(history, 6_000)
        assert history == [5_000]

    def test_exceeding_max_count_enters_cooldown(self):
        now = 10_000_000
        history = [now - i * 1_000 for i in range(3, 0, -1)]
        result = plan(history, now, max_count=3)

        assert len(result.history) == 4
        assert result.crash_loop
        assert result.cooldown_until_ms == now + COOLDOWN_MS
        assert result.delay_ms >= COOLDOWN_MS

    def test_reaching_max_count_is_not_a_crash_loop(self):
        now = 10_000_000
        result = plan([now - 2_000, now - 1_000], now, max_count=3)
        assert not result.crash_loop
        assert result.delay_ms == 4_000


def test_prune_keeps_boundary_entry():
    assert prune_restart_history([100, 200, 300], 1_200, 1_000) == [200, 300]


@pytest.mark.parametrize(
    "until,now,expected",
    [(0, 1_000, 0), (1_000, 1_000, 0), (1_500, 1_000, 500)],
)
def test_cooldown_remaining(until, now, expected):
    assert cooldown_remaining_ms(until, now) == expected
