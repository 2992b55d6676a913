"""
Response models for the control API.

Pydantic models with camelCase aliases so operator tooling sees
``guardianPid``, ``heartbeatAgeMs`` and so on.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that serializes field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkerExitInfo(CamelModel):
    code: int
    at_ms: int


class LogEntry(CamelModel):
    ts: str
    stream: Literal["supervisor", "stdout", "stderr"]
    line: str


class WorkerStatus(CamelModel):
    running: bool
    pid: Optional[int] = None
    started_at_ms: Optional[int] = None
    heartbeat_age_ms: Optional[int] = None
    stale_heartbeat: bool = False
    last_exit: Optional[WorkerExitInfo] = None
    manual_stop: bool = False
    cooldown_remaining_ms: int = 0
    recent_restart_count: int = 0


class StatusSnapshot(CamelModel):
    ok: bool = True
    guardian_pid: int
    uptime_ms: int
    worker: WorkerStatus


class RestartResponse(StatusSnapshot):
    restarted: bool


class StartResponse(StatusSnapshot):
    started: bool


class LogsResponse(CamelModel):
    ok: bool = True
    logs: list[LogEntry] = Field(default_factory=list)


class HealthResponse(CamelModel):
    ok: bool = True
    service: str = "guardian"
    ts: int
