"""Shared fixtures for guardian tests."""

import sys
import time

import pytest

from guardian.config import GuardianConfig
from guardian.process import WorkerSupervisor

SLEEP_WORKER = (sys.executable, "-c", "import time\nwhile True:\n    time.sleep(0.1)")


def build_config(tmp_path, **overrides) -> GuardianConfig:
    values = dict(
        bind="127.0.0.1",
        port=8787,
        secret="secret-123",
        secret_source="env",
        secret_file=tmp_path / "guardian-control.secret",
        worker_command=SLEEP_WORKER,
        worker_cwd=None,
        heartbeat_file=tmp_path / "worker-heartbeat.json",
        heartbeat_interval_seconds=10,
        heartbeat_timeout_ms=45_000,
        heartbeat_check_interval_ms=5_000,
        restart_base_ms=1_000,
        restart_max_ms=30_000,
        restart_window_ms=5 * 60_000,
        restart_max_count=12,
        restart_cooldown_ms=120_000,
        signature_max_skew_ms=300_000,
        nonce_ttl_ms=600_000,
        log_tail_limit=200,
        data_dir=tmp_path,
        log_file=tmp_path / "guardian.log",
    )
    values.update(overrides)
    return GuardianConfig(**values)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = None):
        self.now = start_ms if start_ms is not None else int(time.time() * 1000)

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll until predicate() is truthy or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides):
        return build_config(tmp_path, **overrides)

    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_supervisor(make_config, clock):
    """Build supervisors on a fake clock and make sure no worker outlives the test."""
    created = []

    def factory(use_clock: bool = True, **overrides):
        config = make_config(**overrides)
        supervisor = WorkerSupervisor(config, clock=clock) if use_clock else WorkerSupervisor(config)
        supervisor.stop_grace_seconds = 2.0
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        supervisor.shutdown("test teardown")
