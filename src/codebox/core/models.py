from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple


class JobState(str, Enum):
    CREATED = "CREATED"
    MATERIALIZED = "MATERIALIZED"
    BUILDING = "BUILDING"
    BUILT = "BUILT"
    RUNNING = "RUNNING"
    BUILD_FAILED = "BUILD_FAILED"
    RUN_SUCCEEDED = "RUN_SUCCEEDED"
    RUN_FAILED = "RUN_FAILED"
    TIMED_OUT = "TIMED_OUT"
    ERRORED = "ERRORED"
    # input refused before a job was created
    REJECTED = "REJECTED"


TERMINAL_STATES = frozenset({
    JobState.BUILD_FAILED,
    JobState.RUN_SUCCEEDED,
    JobState.RUN_FAILED,
    JobState.TIMED_OUT,
    JobState.ERRORED,
    JobState.REJECTED,
})

_TRANSITIONS = {
    JobState.CREATED: {JobState.MATERIALIZED},
    JobState.MATERIALIZED: {JobState.BUILDING},
    JobState.BUILDING: {JobState.BUILT, JobState.BUILD_FAILED, JobState.TIMED_OUT},
    JobState.BUILT: {JobState.RUNNING},
    JobState.RUNNING: {JobState.RUN_SUCCEEDED, JobState.RUN_FAILED, JobState.TIMED_OUT},
}


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    EXITED_NONZERO = "exited_nonzero"
    TIMED_OUT = "timed_out"
    SPAWN_FAILED = "spawn_failed"
    BOUNDARY_FAILED = "boundary_failed"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class SourceUnit:
    name: str         # relative path inside the workspace, e.g. HelloWorld.java
    content: str
    derived: bool = False

    @property
    def entry(self) -> str:
        """Identifier used to invoke the unit: path without extension, dotted."""
        return str(PurePosixPath(self.name).with_suffix("")).replace("/", ".")


@dataclass(frozen=True)
class ProcessOutcome:
    command: Tuple[str, ...]
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0
    memory_bytes: int = 0
    timed_out: bool = False
    kind: OutcomeKind = OutcomeKind.SUCCEEDED
    detail: Optional[str] = None  # spawn / boundary error text
    pid: Optional[int] = None
    payload: bytes = b""
    truncated: bool = False
    timeout_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCEEDED

    @property
    def reason(self) -> Optional[str]:
        if self.kind == OutcomeKind.SUCCEEDED:
            return None
        if self.kind == OutcomeKind.TIMED_OUT:
            return f"timeout_{self.timeout_s:g}s"
        if self.kind == OutcomeKind.SPAWN_FAILED:
            return f"spawn_error:{self.detail}"
        if self.kind == OutcomeKind.BOUNDARY_FAILED:
            return f"boundary_error:{self.exit_code}"
        if self.kind == OutcomeKind.LAUNCH_FAILED:
            return "launch_failed"
        return f"exit_{self.exit_code}"


@dataclass
class Job:
    job_id: str
    workspace: Path
    units: List[SourceUnit]
    isolation: str
    deadline: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: JobState = JobState.CREATED
    sources: List[str] = field(default_factory=list)  # materialized relative paths

    @property
    def primary(self) -> SourceUnit:
        return self.units[0]

    @property
    def entry(self) -> str:
        return self.primary.entry

    def advance(self, state: JobState) -> None:
        if self.state in TERMINAL_STATES:
            raise ValueError(f"job {self.job_id} already finished ({self.state.value})")
        if state != JobState.ERRORED and state not in _TRANSITIONS.get(self.state, ()):
            raise ValueError(f"illegal transition {self.state.value} -> {state.value}")
        self.state = state

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class Diagnostic:
    file: str
    line: int
    severity: str
    message: str


@dataclass
class JobResult:
    success: bool
    output: str
    error: str
    exit_code: int
    execution_time_ms: int = 0
    memory_used_bytes: int = 0
    reason: Optional[str] = None
    state: JobState = JobState.RUN_SUCCEEDED
    diagnostics: List[Diagnostic] = field(default_factory=list)
