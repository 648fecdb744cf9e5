from __future__ import annotations
from typing import Iterable, Optional

from ..core.diagnostics import normalize_diagnostics, parse_diagnostics
from ..core.errors import (
    BuildError,
    CodeboxError,
    GuestRuntimeError,
    InfrastructureError,
    InputError,
    JobTimeoutError,
)
from ..core.models import JobResult, JobState, OutcomeKind, ProcessOutcome

TIMEOUT_EXIT_CODE = 124
NO_STATUS_EXIT_CODE = -1

_PHASE = {"build": ("Compilation", "Compiler"), "run": ("Execution", "Runtime")}


def exit_code_of(outcome: ProcessOutcome) -> int:
    if outcome.kind == OutcomeKind.TIMED_OUT:
        return TIMEOUT_EXIT_CODE
    if outcome.exit_code is None:
        return NO_STATUS_EXIT_CODE
    return outcome.exit_code


def failure_of(outcome: ProcessOutcome, phase: str, roots: Iterable[str] = ()) -> Optional[CodeboxError]:
    """Classify a finished stage into the error taxonomy (None when it succeeded)."""
    if outcome.ok:
        return None
    action, tool = _PHASE[phase]
    stderr = normalize_diagnostics(outcome.stderr, roots).strip()
    if outcome.kind == OutcomeKind.TIMED_OUT:
        msg = f"{action} timed out after {outcome.timeout_s:g}s"
        return JobTimeoutError(f"{msg}\n{stderr}" if stderr else msg, reason=outcome.reason)
    if outcome.kind in (OutcomeKind.SPAWN_FAILED, OutcomeKind.BOUNDARY_FAILED):
        return InfrastructureError(
            f"Infrastructure error: {tool.lower()} could not be started ({outcome.detail})",
            reason=outcome.reason,
        )
    code = exit_code_of(outcome)
    if phase == "build":
        text = stderr or normalize_diagnostics(outcome.stdout, roots).strip()
        return BuildError(text or f"Compilation failed with exit code {code}", reason=outcome.reason)
    return GuestRuntimeError(stderr or f"Process exited with code {code}", reason=outcome.reason)


def _state_for(err: CodeboxError, phase: str) -> JobState:
    if isinstance(err, JobTimeoutError):
        return JobState.TIMED_OUT
    if isinstance(err, InfrastructureError):
        return JobState.ERRORED
    return JobState.BUILD_FAILED if phase == "build" else JobState.RUN_FAILED


def _failed(err: CodeboxError, phase: str, outcome: ProcessOutcome, time_s: float, memory: int) -> JobResult:
    text = str(err)
    return JobResult(
        success=False,
        output="" if phase == "build" else outcome.stdout.strip(),
        error=text,
        exit_code=exit_code_of(outcome),
        execution_time_ms=int(time_s * 1000),
        memory_used_bytes=memory,
        reason=err.reason,
        state=_state_for(err, phase),
        diagnostics=parse_diagnostics(text),
    )


def assemble(build: ProcessOutcome, run: Optional[ProcessOutcome] = None, *, roots: Iterable[str] = ()) -> JobResult:
    """Merge stage outcomes into the caller-facing result. Pure."""
    roots = tuple(roots)
    err = failure_of(build, "build", roots)
    if err is not None:
        return _failed(err, "build", build, build.duration_s, build.memory_bytes)
    if run is None:
        raise ValueError("a successful build needs a run outcome")

    time_s = build.duration_s + run.duration_s
    memory = max(build.memory_bytes, run.memory_bytes)
    err = failure_of(run, "run", roots)
    if err is not None:
        return _failed(err, "run", run, time_s, memory)
    return JobResult(
        success=True,
        output=run.stdout.strip(),
        error="",
        exit_code=exit_code_of(run),
        execution_time_ms=int(time_s * 1000),
        memory_used_bytes=memory,
        reason=None,
        state=JobState.RUN_SUCCEEDED,
    )


def rejected(err: InputError) -> JobResult:
    return JobResult(
        success=False,
        output="",
        error=str(err),
        exit_code=NO_STATUS_EXIT_CODE,
        reason=err.reason,
        state=JobState.REJECTED,
    )


def errored(err: CodeboxError, time_s: float = 0.0) -> JobResult:
    return JobResult(
        success=False,
        output="",
        error=str(err),
        exit_code=NO_STATUS_EXIT_CODE,
        execution_time_ms=int(time_s * 1000),
        reason=err.reason,
        state=JobState.ERRORED,
    )
