from __future__ import annotations
from pathlib import Path

import structlog

from ..core.models import Job, ProcessOutcome
from .base import ExecSpec, Executor
from .process import run_process

log = structlog.get_logger(__name__)


class HostExecutor(Executor):
    """
    Runs compiler and runtime directly on the host with the job workspace as
    cwd. The only bound is the wall-clock deadline (process group SIGKILL);
    memory and network are whatever the host allows. Lower isolation tier,
    meant for trusted/internal deployments.
    """

    name = "host"

    def compile(self, job: Job) -> ProcessOutcome:
        spec = ExecSpec(
            cmd=self.compile_argv(job),
            workdir=job.workspace,
            env=self.base_env(),
            timeout_s=self.settings.compile_timeout_s,
            stage="build",
        )
        return self._run(job.job_id, spec)

    def execute(self, job: Job) -> ProcessOutcome:
        spec = ExecSpec(
            cmd=self.run_argv(job),
            workdir=job.workspace,
            env=self.base_env(),
            timeout_s=self.settings.run_timeout_s,
            stage="run",
        )
        return self._run(job.job_id, spec)

    def version(self) -> ProcessOutcome:
        spec = ExecSpec(
            cmd=list(self.settings.version_cmd),
            workdir=Path.cwd(),
            env=self.base_env(),
            timeout_s=self.settings.compile_timeout_s,
            stage="version",
        )
        return self._run("-", spec)

    def _run(self, job_id: str, spec: ExecSpec) -> ProcessOutcome:
        log.debug("host.spawn", job_id=job_id, stage=spec.stage, cmd=spec.cmd)
        return run_process(
            spec.cmd,
            cwd=spec.workdir,
            env=spec.env,
            timeout_s=spec.timeout_s,
            max_output_bytes=self.settings.max_output_bytes,
            kill_grace_s=self.settings.kill_grace_s,
        )
