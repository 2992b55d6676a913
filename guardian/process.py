"""
Worker process supervision.

Owns the single supervised worker: starts it in its own process group,
captures stdout/stderr line by line into the log buffer, restarts it with
exponential backoff after crashes, enforces crash-loop cooldown, and
restarts it when its heartbeat goes stale.

All state lives on one WorkerSupervisor guarded by a single re-entrant
lock, since it is touched from HTTP handler threads, the exit waiter
threads, restart timers and the heartbeat watchdog.
"""

import logging
import math
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .config import GuardianConfig
from .heartbeat import heartbeat_age_ms
from .logbuffer import LogBuffer
from .models import StatusSnapshot, WorkerExitInfo, WorkerStatus
from .scheduler import cooldown_remaining_ms, plan_restart, prune_restart_history

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("guardian.worker")

STOP_GRACE_SECONDS = 8.0
OUTPUT_DRAIN_SECONDS = 1.0


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class WorkerProcess:
    """A running worker and the threads attached to it."""

    process: subprocess.Popen
    started_at_ms: int
    output_threads: list[threading.Thread] = field(default_factory=list)
    waiter: Optional[threading.Thread] = None

    @property
    def pid(self) -> int:
        return self.process.pid


class WorkerSupervisor:
    """Keeps one worker process alive."""

    stop_grace_seconds = STOP_GRACE_SECONDS

    def __init__(
        self,
        config: GuardianConfig,
        logs: Optional[LogBuffer] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.logs = logs if logs is not None else LogBuffer(config.log_tail_limit)
        self._clock = clock
        self._lock = threading.RLock()
        self.started_at_ms = clock()

        self._worker: Optional[WorkerProcess] = None
        self._last_exit: Optional[WorkerExitInfo] = None
        self._restart_history: list[int] = []
        self._restart_timer: Optional[threading.Timer] = None
        self._restart_generation = 0
        self._cooldown_until_ms = 0

        self._manual_stop = False
        self._stopping_for_restart = False
        self._restart_in_flight = False
        self._shutting_down = False

    # Logging

    def log(self, message: str, level: int = logging.INFO):
        """Log a supervisor line and keep it in the log tail."""
        self.logs.append("supervisor", message)
        logger.log(level, message)

    # State

    @property
    def running(self) -> bool:
        with self._lock:
            return self._worker is not None

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._worker.pid if self._worker else None

    @property
    def restart_in_flight(self) -> bool:
        with self._lock:
            return self._restart_in_flight

    @property
    def restart_pending(self) -> bool:
        with self._lock:
            return self._restart_timer is not None

    def heartbeat_age_ms(self, now: Optional[int] = None) -> Optional[int]:
        with self._lock:
            started = self._worker.started_at_ms if self._worker else None
        return heartbeat_age_ms(started, self.config.heartbeat_file, now if now is not None else self._clock())

    def status_snapshot(self) -> StatusSnapshot:
        """Current supervisor and worker state for the control API."""
        with self._lock:
            now = self._clock()
            worker = self._worker
            started = worker.started_at_ms if worker else None
            age = heartbeat_age_ms(started, self.config.heartbeat_file, now)
            recent = prune_restart_history(self._restart_history, now, self.config.restart_window_ms)
            return StatusSnapshot(
                guardian_pid=os.getpid(),
                uptime_ms=now - self.started_at_ms,
                worker=WorkerStatus(
                    running=worker is not None,
                    pid=worker.pid if worker else None,
                    started_at_ms=started,
                    heartbeat_age_ms=age,
                    stale_heartbeat=age is not None and age > self.config.heartbeat_timeout_ms,
                    last_exit=self._last_exit,
                    manual_stop=self._manual_stop,
                    cooldown_remaining_ms=cooldown_remaining_ms(self._cooldown_until_ms, now),
                    recent_restart_count=len(recent),
                ),
            )

    # Lifecycle

    def start(self, reason: str, force: bool = False) -> bool:
        """
        Start the worker. Returns True if a new process was spawned.

        Does nothing while a worker is tracked. Outside of a forced start,
        requests are refused while crash-loop cooldown is active.
        """
        with self._lock:
            if self._shutting_down or self._worker is not None:
                return False

            now = self._clock()
            if not force and self._cooldown_until_ms > now:
                wait_s = math.ceil((self._cooldown_until_ms - now) / 1000)
                self.log(f"Start request ignored during cooldown ({wait_s}s remaining).", logging.WARNING)
                return False

            try:
                self.config.heartbeat_file.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning(f"Could not create heartbeat directory: {e}")

            try:
                process = subprocess.Popen(
                    list(self.config.worker_command),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=self.config.worker_cwd,
                    env=self._worker_env(),
                    start_new_session=True,  # Own process group, signalled as a whole
                )
            except OSError as e:
                self.log(f"Failed to start worker ({reason}): {e}", logging.ERROR)
                if not self._manual_stop:
                    self._schedule_auto_restart()
                return False

            worker = WorkerProcess(process=process, started_at_ms=now)
            self._worker = worker
            self._cooldown_until_ms = 0
            self._cancel_restart_timer()
            self.log(f"Starting worker ({reason}) pid={process.pid}.")

            for stream, name in ((process.stdout, "stdout"), (process.stderr, "stderr")):
                thread = threading.Thread(
                    target=self._capture_output,
                    args=(stream, name),
                    daemon=True,
                )
                worker.output_threads.append(thread)
                thread.start()

            worker.waiter = threading.Thread(target=self._wait_for_exit, args=(worker,), daemon=True)
            worker.waiter.start()
            return True

    def stop(self, reason: str, manual: bool):
        """
        Stop the worker: SIGTERM, then SIGKILL after the grace period.

        Returns once the exit has been handled. A manual stop disables
        auto-restart until the next explicit start; it also cancels a pending
        auto-restart when no worker is running.
        """
        with self._lock:
            worker = self._worker
            if worker is None:
                if manual:
                    self._manual_stop = True
                    self._cancel_restart_timer()
                return
            self._cancel_restart_timer()
            self._manual_stop = manual
            self._stopping_for_restart = not manual
            self.log(f"Stopping worker ({reason}) pid={worker.pid}...")

        self._signal(worker.process, signal.SIGTERM)
        try:
            worker.process.wait(timeout=self.stop_grace_seconds)
        except subprocess.TimeoutExpired:
            self.log("Worker did not stop after SIGTERM; sending SIGKILL.", logging.WARNING)
            self._signal(worker.process, signal.SIGKILL)
            worker.process.wait()

        if worker.waiter is not None:
            worker.waiter.join()

    def restart(self, reason: str) -> bool:
        """Stop then force-start the worker. Concurrent restarts are rejected."""
        with self._lock:
            if self._restart_in_flight or self._shutting_down:
                return False
            self._restart_in_flight = True
            self._manual_stop = False

        try:
            self.stop(reason, manual=False)
            return self.start(f"restart:{reason}", force=True)
        finally:
            with self._lock:
                self._restart_in_flight = False
                self._stopping_for_restart = False

    def start_by_operator(self, reason: str = "control API") -> bool:
        """Explicit operator start: clears the manual stop and bypasses cooldown."""
        with self._lock:
            self._manual_stop = False
        return self.start(reason, force=True)

    def stop_by_operator(self, reason: str = "control API"):
        self.stop(reason, manual=True)

    def check_heartbeat(self) -> bool:
        """Restart the worker if its heartbeat is stale. Returns True if restarted."""
        with self._lock:
            if self._shutting_down or self._worker is None or self._restart_in_flight:
                return False

            now = self._clock()
            started = self._worker.started_at_ms
            timeout = self.config.heartbeat_timeout_ms
            if now - started < timeout:
                return False

            age = heartbeat_age_ms(started, self.config.heartbeat_file, now)
            if age is not None and age <= timeout:
                return False

            stale_for = age if age is not None else now - started
            self.log(
                f"Heartbeat stale for {math.ceil(stale_for / 1000)}s; restarting worker.",
                logging.WARNING,
            )

        return self.restart("stale heartbeat")

    def shutdown(self, reason: str):
        """Cease supervision: cancel timers, then stop the worker for good."""
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True
            self.log(f"Shutting down ({reason})...")
            self._cancel_restart_timer()

        self.stop("guardian shutdown", manual=True)
        self.log("Shutdown complete.")

    # Internals

    def _worker_env(self) -> dict[str, str]:
        env = {key: value for key, value in os.environ.items() if not key.startswith("GUARDIAN_")}
        env["WORKER_HEARTBEAT_FILE"] = str(self.config.heartbeat_file)
        env["WORKER_HEARTBEAT_INTERVAL_SECONDS"] = str(self.config.heartbeat_interval_seconds)
        return env

    def _capture_output(self, stream, stream_name: str):
        """Forward worker output to the log tail, one line at a time."""
        level = logging.WARNING if stream_name == "stderr" else logging.INFO
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line.strip():
                    continue
                self.logs.append(stream_name, line)
                worker_logger.log(level, f"[{stream_name}] {line}")
        except (OSError, ValueError) as e:
            logger.error(f"Error capturing worker {stream_name}: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _wait_for_exit(self, worker: WorkerProcess):
        code = worker.process.wait()
        for thread in worker.output_threads:
            thread.join(timeout=OUTPUT_DRAIN_SECONDS)
        self._handle_exit(worker, code)

    def _handle_exit(self, worker: WorkerProcess, code: int):
        with self._lock:
            if self._worker is worker:
                self._worker = None
            self._last_exit = WorkerExitInfo(code=code, at_ms=self._clock())
            self.log(f"Worker exited (code={code}).")

            if self._shutting_down:
                return
            if self._manual_stop:
                self.log("Worker is stopped manually. Auto-restart disabled.")
                return
            if self._stopping_for_restart:
                self._stopping_for_restart = False
                return
            self._schedule_auto_restart()

    def _schedule_auto_restart(self):
        """Plan the next automatic start. Caller holds the lock."""
        plan = plan_restart(
            self._restart_history,
            self._clock(),
            base_ms=self.config.restart_base_ms,
            max_ms=self.config.restart_max_ms,
            window_ms=self.config.restart_window_ms,
            max_count=self.config.restart_max_count,
            cooldown_ms=self.config.restart_cooldown_ms,
        )
        self._restart_history = plan.history
        if plan.crash_loop:
            self._cooldown_until_ms = plan.cooldown_until_ms
            self.log(
                f"Crash-loop protection triggered. Cooling down for "
                f"{math.ceil(self.config.restart_cooldown_ms / 1000)}s.",
                logging.WARNING,
            )

        self._arm_restart_timer(plan.delay_ms)
        self.log(f"Scheduling auto-restart in {math.ceil(plan.delay_ms / 1000)}s.")

    def _arm_restart_timer(self, delay_ms: int):
        """Replace any pending restart timer. Caller holds the lock."""
        self._cancel_restart_timer()
        generation = self._restart_generation
        timer = threading.Timer(delay_ms / 1000, self._auto_restart, args=(generation,))
        timer.daemon = True
        self._restart_timer = timer
        timer.start()

    def _auto_restart(self, generation: int):
        with self._lock:
            # A timer that already fired can't be cancelled, so check it is still current
            if generation != self._restart_generation or self._restart_timer is None:
                return
            self._restart_timer = None
            self._restart_generation += 1
            if self._shutting_down or self._manual_stop:
                return

            # Timers run on the monotonic clock, the cooldown deadline on wall time
            remaining = cooldown_remaining_ms(self._cooldown_until_ms, self._clock())
            if remaining > 0:
                self.log(f"Cooldown still active; retrying auto-restart in {math.ceil(remaining / 1000)}s.")
                self._arm_restart_timer(remaining)
                return

            self.start("auto-restart")

    def _cancel_restart_timer(self):
        with self._lock:
            self._restart_generation += 1
            if self._restart_timer is not None:
                self._restart_timer.cancel()
                self._restart_timer = None

    @staticmethod
    def _signal(process: subprocess.Popen, sig: int):
        """Signal the worker's process group, ignoring an already-gone process."""
        # Once reaped, the pid may belong to someone else
        if process.returncode is not None:
            return
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except ProcessLookupError:
            pass
