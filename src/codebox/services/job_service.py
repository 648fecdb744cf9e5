from __future__ import annotations
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Tuple

import structlog
from structlog.contextvars import bound_contextvars

from ..core.errors import CodeboxError, InfrastructureError, InputError
from ..core.models import Job, JobResult, JobState, ProcessOutcome
from ..core.utils import new_job_id
from ..executor.base import Executor
from ..executor.factory import make_executor
from ..runner.build import BuildStage
from ..runner.execute import ExecutionStage
from ..settings import Settings, load_settings
from . import assembler
from .materializer import materialize, plan_units
from .workspace import WorkspaceManager

log = structlog.get_logger(__name__)


class JobService:
    """
    Orchestrator: workspace + materializer + build/run stages over the
    configured isolation backend. ``execute`` never raises; every failure is
    turned into a ``JobResult``.
    """

    def __init__(self, settings: Optional[Settings] = None, executor: Optional[Executor] = None):
        self.settings = settings or load_settings()
        self.workspaces = WorkspaceManager(self.settings.jobs_dir)
        self.executor = executor or make_executor(self.settings)
        self.build = BuildStage(self.executor)
        self.runner = ExecutionStage(self.executor, self.settings.launch_failure_markers)

    def job_deadline(self, start: datetime) -> datetime:
        """Latest expected end of a job started at ``start``.

        Nothing waits on this value: the per-stage timeouts in the executors
        are what bound a job. It is kept on the ``Job`` and a job finishing
        past it is logged as ``job.deadline_exceeded``.
        """
        s = self.settings
        budget = s.compile_timeout_s + s.run_timeout_s
        if self.executor.name == "docker":
            budget += 2 * s.container_startup_grace_s
        return start + timedelta(seconds=budget)

    def execute(
        self,
        code: Optional[str] = None,
        files: Optional[Sequence[Tuple[Optional[str], str]]] = None,
        debug: bool = False,
    ) -> JobResult:
        started = time.monotonic()
        try:
            units = plan_units(code, files, self.settings)
        except InputError as e:
            log.info("job.rejected", reason=e.reason, error=str(e))
            return assembler.rejected(e)
        if debug:
            # no debugger protocol behind this flag yet
            log.info("job.debug_ignored")

        job_id = new_job_id()
        with bound_contextvars(job_id=job_id):
            try:
                with self.workspaces.scoped(job_id) as ws:
                    now = datetime.now(timezone.utc)
                    job = Job(
                        job_id=job_id,
                        workspace=ws,
                        units=units,
                        isolation=self.executor.name,
                        created_at=now,
                        deadline=self.job_deadline(now),
                    )
                    log.info("job.created", units=[u.name for u in units], entry=job.entry, isolation=job.isolation)
                    result = self._drive(job)
            except InputError as e:
                return assembler.rejected(e)
            except CodeboxError as e:
                log.error("job.failed", reason=e.reason, error=str(e))
                return assembler.errored(e, time.monotonic() - started)
            except Exception as e:
                log.exception("job.crashed")
                return assembler.errored(InfrastructureError(f"Infrastructure error: {e}"), time.monotonic() - started)
        log.info(
            "job.finished",
            job_id=job_id,
            state=result.state.value,
            success=result.success,
            exit_code=result.exit_code,
            execution_time_ms=result.execution_time_ms,
        )
        return result

    def _drive(self, job: Job) -> JobResult:
        try:
            job.sources = materialize(job.workspace, job.units)
        except OSError as e:
            raise InfrastructureError(f"Infrastructure error: cannot write sources ({e})", reason="workspace_error") from e
        job.advance(JobState.MATERIALIZED)

        job.advance(JobState.BUILDING)
        built = self.build.compile(job)
        roots = self.executor.roots(job)
        if not built.ok:
            result = assembler.assemble(built, roots=roots)
            job.advance(result.state)
            return result
        job.advance(JobState.BUILT)

        job.advance(JobState.RUNNING)
        ran = self.runner.run(job)
        result = assembler.assemble(built, ran, roots=roots)
        job.advance(result.state)
        if datetime.now(timezone.utc) > job.deadline:
            log.warning("job.deadline_exceeded", deadline=job.deadline.isoformat())
        return result

    def toolchain_version(self) -> ProcessOutcome:
        return self.executor.version()
