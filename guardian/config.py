"""
Configuration for the guardian service.

Loads settings from environment variables with bounded defaults. Invalid
values are fatal: a malformed or out-of-range number raises ConfigError
naming the offending variable instead of falling back to the default.
All persistent data is stored under GUARDIAN_DATA_DIR (./data by default).
"""

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .secret import provision_secret

DEFAULT_CONTROL_BIND = "0.0.0.0"
DEFAULT_CONTROL_PORT = 8787
DEFAULT_DATA_DIR = "./data"
DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 45
DEFAULT_HEARTBEAT_CHECK_SECONDS = 5
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 10
DEFAULT_RESTART_BASE_SECONDS = 1
DEFAULT_RESTART_MAX_SECONDS = 30
DEFAULT_RESTART_WINDOW_SECONDS = 5 * 60
DEFAULT_RESTART_MAX_COUNT = 12
DEFAULT_RESTART_COOLDOWN_SECONDS = 2 * 60
DEFAULT_LOG_TAIL_LIMIT = 200
DEFAULT_SIGNATURE_SKEW_SECONDS = 5 * 60
DEFAULT_NONCE_TTL_SECONDS = 10 * 60
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_LOG_BACKUP_COUNT = 5

DAY_SECONDS = 24 * 3600


@dataclass(frozen=True)
class GuardianConfig:
    """Guardian configuration. Built once at startup, never mutated."""

    # Control plane
    bind: str
    port: int
    secret: str
    secret_source: str  # env, file, generated, generated-ephemeral
    secret_file: Path

    # Worker
    worker_command: tuple[str, ...]
    worker_cwd: Optional[Path]
    heartbeat_file: Path
    heartbeat_interval_seconds: int

    # Supervision timing (milliseconds)
    heartbeat_timeout_ms: int
    heartbeat_check_interval_ms: int
    restart_base_ms: int
    restart_max_ms: int
    restart_window_ms: int
    restart_max_count: int
    restart_cooldown_ms: int

    # Request signing
    signature_max_skew_ms: int
    nonce_ttl_ms: int

    # Logging
    log_tail_limit: int
    data_dir: Path
    log_file: Path
    log_max_bytes: int = DEFAULT_LOG_MAX_BYTES
    log_backup_count: int = DEFAULT_LOG_BACKUP_COUNT


def parse_int_env(
    raw_value: Optional[str],
    fallback: int,
    variable_name: str,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    """Parse an integer variable, enforcing inclusive bounds."""
    if raw_value is None or not raw_value.strip():
        return fallback

    try:
        parsed = int(raw_value.strip(), 10)
    except ValueError:
        raise ConfigError(f'Invalid {variable_name}: expected integer, got "{raw_value}"') from None

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"Invalid {variable_name}: expected >= {minimum}, got {parsed}")
    if maximum is not None and parsed > maximum:
        raise ConfigError(f"Invalid {variable_name}: expected <= {maximum}, got {parsed}")
    return parsed


def _seconds_env(env: Mapping[str, str], name: str, fallback: int, minimum: int, maximum: int) -> int:
    return parse_int_env(env.get(name), fallback, name, minimum, maximum) * 1000


def _text_env(env: Mapping[str, str], name: str, fallback: str) -> str:
    value = (env.get(name) or "").strip()
    return value or fallback


def load_config(env: Optional[Mapping[str, str]] = None) -> GuardianConfig:
    """
    Build the guardian configuration from an environment mapping.

    When no mapping is given, a .env file is loaded and os.environ is used.
    The control secret is resolved through provision_secret, which may
    create the secret file on first run.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    bind = _text_env(env, "GUARDIAN_CONTROL_BIND", DEFAULT_CONTROL_BIND)
    port = parse_int_env(
        env.get("GUARDIAN_CONTROL_PORT"), DEFAULT_CONTROL_PORT, "GUARDIAN_CONTROL_PORT", 1, 65535
    )

    data_dir = Path(_text_env(env, "GUARDIAN_DATA_DIR", DEFAULT_DATA_DIR))
    secret_file = Path(
        _text_env(env, "GUARDIAN_CONTROL_SECRET_FILE", str(data_dir / "guardian-control.secret"))
    )
    heartbeat_file = Path(
        _text_env(env, "GUARDIAN_WORKER_HEARTBEAT_FILE", str(data_dir / "worker-heartbeat.json"))
    )
    log_file = Path(_text_env(env, "GUARDIAN_LOG_FILE", str(data_dir / "guardian.log")))

    command_raw = (env.get("GUARDIAN_WORKER_COMMAND") or "").strip()
    if not command_raw:
        raise ConfigError("GUARDIAN_WORKER_COMMAND is required (the command that runs the worker).")
    try:
        worker_command = tuple(shlex.split(command_raw))
    except ValueError as e:
        raise ConfigError(f"Invalid GUARDIAN_WORKER_COMMAND: {e}") from None
    worker_cwd_raw = (env.get("GUARDIAN_WORKER_CWD") or "").strip()

    heartbeat_interval_seconds = parse_int_env(
        env.get("GUARDIAN_WORKER_HEARTBEAT_INTERVAL_SECONDS"),
        DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        "GUARDIAN_WORKER_HEARTBEAT_INTERVAL_SECONDS",
        1,
        300,
    )
    heartbeat_timeout_ms = _seconds_env(
        env, "GUARDIAN_HEARTBEAT_TIMEOUT_SECONDS", DEFAULT_HEARTBEAT_TIMEOUT_SECONDS, 5, 3600
    )
    heartbeat_check_interval_ms = _seconds_env(
        env, "GUARDIAN_HEARTBEAT_CHECK_INTERVAL_SECONDS", DEFAULT_HEARTBEAT_CHECK_SECONDS, 1, 300
    )
    restart_base_ms = _seconds_env(
        env, "GUARDIAN_RESTART_BASE_SECONDS", DEFAULT_RESTART_BASE_SECONDS, 1, 300
    )
    restart_max_ms = _seconds_env(
        env, "GUARDIAN_RESTART_MAX_SECONDS", DEFAULT_RESTART_MAX_SECONDS, 1, 1800
    )
    restart_window_ms = _seconds_env(
        env, "GUARDIAN_RESTART_WINDOW_SECONDS", DEFAULT_RESTART_WINDOW_SECONDS, 10, DAY_SECONDS
    )
    restart_max_count = parse_int_env(
        env.get("GUARDIAN_RESTART_MAX_COUNT"),
        DEFAULT_RESTART_MAX_COUNT,
        "GUARDIAN_RESTART_MAX_COUNT",
        1,
        1000,
    )
    restart_cooldown_ms = _seconds_env(
        env, "GUARDIAN_RESTART_COOLDOWN_SECONDS", DEFAULT_RESTART_COOLDOWN_SECONDS, 5, DAY_SECONDS
    )
    log_tail_limit = parse_int_env(
        env.get("GUARDIAN_LOG_TAIL_LIMIT"),
        DEFAULT_LOG_TAIL_LIMIT,
        "GUARDIAN_LOG_TAIL_LIMIT",
        10,
        10_000,
    )
    signature_max_skew_ms = _seconds_env(
        env, "GUARDIAN_SIGNATURE_SKEW_SECONDS", DEFAULT_SIGNATURE_SKEW_SECONDS, 10, DAY_SECONDS
    )
    nonce_ttl_ms = _seconds_env(
        env, "GUARDIAN_NONCE_TTL_SECONDS", DEFAULT_NONCE_TTL_SECONDS, 10, DAY_SECONDS
    )
    log_max_bytes = parse_int_env(
        env.get("GUARDIAN_LOG_MAX_BYTES"),
        DEFAULT_LOG_MAX_BYTES,
        "GUARDIAN_LOG_MAX_BYTES",
        1024,
        1024 * 1024 * 1024,
    )
    log_backup_count = parse_int_env(
        env.get("GUARDIAN_LOG_BACKUP_COUNT"),
        DEFAULT_LOG_BACKUP_COUNT,
        "GUARDIAN_LOG_BACKUP_COUNT",
        0,
        100,
    )

    secret, secret_source = provision_secret(
        explicit=env.get("GUARDIAN_CONTROL_SECRET"),
        secret_file=secret_file,
        bind=bind,
    )

    return GuardianConfig(
        bind=bind,
        port=port,
        secret=secret,
        secret_source=secret_source,
        secret_file=secret_file,
        worker_command=worker_command,
        worker_cwd=Path(worker_cwd_raw) if worker_cwd_raw else None,
        heartbeat_file=heartbeat_file,
        heartbeat_interval_seconds=heartbeat_interval_seconds,
        heartbeat_timeout_ms=heartbeat_timeout_ms,
        heartbeat_check_interval_ms=heartbeat_check_interval_ms,
        restart_base_ms=restart_base_ms,
        restart_max_ms=restart_max_ms,
        restart_window_ms=restart_window_ms,
        restart_max_count=restart_max_count,
        restart_cooldown_ms=restart_cooldown_ms,
        signature_max_skew_ms=signature_max_skew_ms,
        nonce_ttl_ms=nonce_ttl_ms,
        log_tail_limit=log_tail_limit,
        data_dir=data_dir,
        log_file=log_file,
        log_max_bytes=log_max_bytes,
        log_backup_count=log_backup_count,
    )
