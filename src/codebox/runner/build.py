from __future__ import annotations

import structlog

from ..core.models import Job, OutcomeKind, ProcessOutcome
from ..executor.base import Executor

log = structlog.get_logger(__name__)


class BuildStage:
    """Compile the materialized sources of a job through the isolation backend.

    Exit 0 is success; a nonzero or missing status is a compile failure with
    the compiler's stderr as diagnostic. A compiler that cannot be started at
    all (missing binary, permission denied, container not created) comes back
    as ``spawn_failed`` / ``boundary_failed`` so callers can tell "bad user
    code" from "broken service".
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    def compile(self, job: Job) -> ProcessOutcome:
        outcome = self.executor.compile(job)
        if outcome.kind in (OutcomeKind.SPAWN_FAILED, OutcomeKind.BOUNDARY_FAILED):
            log.error("build.infrastructure", job_id=job.job_id, reason=outcome.reason, detail=outcome.detail)
        else:
            log.info(
                "build.done",
                job_id=job.job_id,
                kind=outcome.kind.value,
                exit_code=outcome.exit_code,
                duration_s=round(outcome.duration_s, 3),
            )
        return outcome
