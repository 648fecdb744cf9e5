from __future__ import annotations
import dataclasses
from typing import Sequence

import structlog

from ..core.models import Job, OutcomeKind, ProcessOutcome
from ..executor.base import Executor

log = structlog.get_logger(__name__)

LAUNCH_FAILED_PREFIX = "Runtime failed to start: "


def is_launch_failure(outcome: ProcessOutcome, markers: Sequence[str]) -> bool:
    return outcome.kind == OutcomeKind.EXITED_NONZERO and any(m in outcome.stderr for m in markers if m)


class ExecutionStage:
    def __init__(self, executor: Executor, launch_failure_markers: Sequence[str] = ()):
        self.executor = executor
        self.markers = tuple(launch_failure_markers)

    def run(self, job: Job) -> ProcessOutcome:
        outcome = self.executor.execute(job)
        if is_launch_failure(outcome, self.markers):
            # the runtime never reached guest code, e.g. missing entry class
            outcome = dataclasses.replace(
                outcome,
                kind=OutcomeKind.LAUNCH_FAILED,
                stderr=LAUNCH_FAILED_PREFIX + outcome.stderr.strip(),
            )
        log.info(
            "run.done",
            job_id=job.job_id,
            entry=job.entry,
            kind=outcome.kind.value,
            exit_code=outcome.exit_code,
            duration_s=round(outcome.duration_s, 3),
            memory_bytes=outcome.memory_bytes,
        )
        return outcome
