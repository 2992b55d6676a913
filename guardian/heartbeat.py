"""
Worker heartbeat tracking.

The worker proves liveness by rewriting a small JSON file
(``{"pid": ..., "timestampMs": ...}``) every few seconds. The guardian only
looks at the file's modification time. A file older than the current
child's start is ignored so a leftover heartbeat from a previous instance
cannot hide a dead new one.

Also provides the worker-side writer for Python workers, configured from
the WORKER_HEARTBEAT_FILE / WORKER_HEARTBEAT_INTERVAL_SECONDS variables the
guardian passes to the child.
"""

import asyncio
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

# A heartbeat written this long before the child started still counts
START_SLACK_MS = 1000


def heartbeat_age_ms(
    child_started_at_ms: Optional[int],
    heartbeat_file: Path,
    now_ms: int,
) -> Optional[int]:
    """
    Age of the worker heartbeat in milliseconds.

    Returns None ("unknown") when no child is tracked, when the file is
    missing or unreadable, or when it predates the child's start.
    """
    if not child_started_at_ms:
        return None
    try:
        mtime_ms = os.stat(heartbeat_file).st_mtime_ns // 1_000_000
    except OSError:
        return None
    if mtime_ms + START_SLACK_MS < child_started_at_ms:
        return None
    return max(0, now_ms - mtime_ms)


class HeartbeatWatchdog:
    """Periodically asks the supervisor to check the worker heartbeat."""

    def __init__(self, supervisor, interval_ms: int):
        self._supervisor = supervisor
        self._interval = interval_ms / 1000
        self._running = False
        self._task = None

    async def start(self):
        """Start the watchdog loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"Heartbeat watchdog started (every {self._interval:g}s)")

    async def stop(self):
        """Stop the watchdog loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat watchdog stopped")

    async def _watch_loop(self):
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                # Restarting blocks for up to the stop grace period
                await asyncio.to_thread(self._supervisor.check_heartbeat)
            except Exception as e:
                logger.error(f"Error in heartbeat watchdog: {e}")


def write_heartbeat(heartbeat_file: Path, pid: Optional[int] = None):
    """Atomically rewrite the heartbeat file for the current process."""
    record = {
        "pid": pid if pid is not None else os.getpid(),
        "timestampMs": int(time.time() * 1000),
    }
    heartbeat_file = Path(heartbeat_file)
    tmp_file = heartbeat_file.with_name(f".{heartbeat_file.name}.tmp")
    tmp_file.write_text(json.dumps(record), encoding="utf-8")
    os.replace(tmp_file, heartbeat_file)


class HeartbeatWriter:
    """Background thread that keeps a worker's heartbeat file fresh."""

    def __init__(self, heartbeat_file: Optional[Path], interval_seconds: float = 10):
        self.heartbeat_file = Path(heartbeat_file) if heartbeat_file else None
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread = None
        self._write_failed = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "HeartbeatWriter":
        env = os.environ if env is None else env
        heartbeat_file = (env.get("WORKER_HEARTBEAT_FILE") or "").strip()
        try:
            interval = int((env.get("WORKER_HEARTBEAT_INTERVAL_SECONDS") or "10").strip())
        except ValueError:
            interval = 10
        if interval <= 0:
            interval = 10
        return cls(Path(heartbeat_file) if heartbeat_file else None, interval)

    def beat(self):
        """Write one heartbeat, logging the first failure of a streak."""
        if not self.heartbeat_file:
            return
        try:
            write_heartbeat(self.heartbeat_file)
            self._write_failed = False
        except OSError as e:
            if not self._write_failed:
                logger.warning(f"Failed to write worker heartbeat: {e}")
            self._write_failed = True

    def start(self):
        if not self.heartbeat_file or self._thread:
            return
        try:
            self.heartbeat_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create heartbeat directory: {e}")

        self.beat()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.interval_seconds + 1)
            self._thread = None

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            self.beat()
