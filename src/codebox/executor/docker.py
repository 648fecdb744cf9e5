from __future__ import annotations
import dataclasses
import io
import os
import shlex
import tarfile
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from ..core.models import Job, OutcomeKind, ProcessOutcome
from ..core.utils import new_job_id
from .base import ExecSpec, Executor
from .process import run_process

log = structlog.get_logger(__name__)

STREAM_WORKDIR = "/tmp/job"
MOUNT_WORKDIR = "/workspace"
# docker run's own failure status; the stage scripts reuse it for setup errors
BOUNDARY_EXIT = 125
TIMEOUT_EXIT = 124
# last stderr line written by the stage scripts; a guest may exit 124/125 itself
BOUNDARY_MARKER = "codebox:boundary"
TIMEOUT_MARKER = "codebox:timeout"
DAEMON_ERROR = "Error response from daemon"

_SETUP = f"mkdir -p {STREAM_WORKDIR} && cd {STREAM_WORKDIR} && tar -xzf - || {{ echo {BOUNDARY_MARKER} >&2; exit {BOUNDARY_EXIT}; }}"


def _timed(cmd: str) -> List[str]:
    """Run ``cmd`` and tag its status when the inner ``timeout`` fired."""
    return [
        f"{cmd}; rc=$?",
        f'[ "$rc" -eq {TIMEOUT_EXIT} ] && echo {TIMEOUT_MARKER} >&2',
    ]


def split_marker(text: str) -> Tuple[str, Optional[str]]:
    """Return ``(stderr without the trailing marker line, marker or None)``."""
    body, _, last = text.rstrip("\n").rpartition("\n")
    if last in (BOUNDARY_MARKER, TIMEOUT_MARKER):
        return body, last
    return text, None


def make_snapshot(root: Path) -> bytes:
    """gzip tar of every regular file under ``root`` (paths relative to it)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for path in sorted(root.rglob("*")):
            if path.is_file() and not path.is_symlink():
                tf.add(path, arcname=path.relative_to(root).as_posix(), recursive=False)
    return buf.getvalue()


def extract_snapshot(data: bytes, dest: Path) -> None:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tf:
        tf.extractall(dest, filter="data")


class DockerExecutor(Executor):
    """
    One fresh ``docker run --rm`` container per stage, capped on memory, CPU
    and pids, without network, with a read-only root and a tmpfs scratch.

    Streaming mode (default): sources go in as a tar on stdin; the build
    container sends the compiled tree back as a tar on stdout and the run
    container receives it the same way. Mount mode bind-mounts the workspace
    instead (read-write for build, read-only for run).

    The toolchain is wrapped in ``timeout`` inside the container and the
    docker client gets an outer deadline of timeout + startup grace; if that
    one fires the container is removed with ``docker rm -f`` before returning.
    """

    name = "docker"

    def container_name(self, job_id: str, stage: str) -> str:
        return f"codebox-{job_id}-{stage}"

    def roots(self, job: Job) -> List[str]:
        return [str(job.workspace), STREAM_WORKDIR, MOUNT_WORKDIR]

    # ---------- command builders ----------

    def docker_argv(self, name: str, mounts: Optional[List[str]] = None) -> List[str]:
        s = self.settings
        argv = [
            s.container_bin, "run", "--rm", "-i",
            "--name", name,
            f"--memory={s.container_memory}",
            f"--memory-swap={s.container_memory}",
            f"--cpus={s.container_cpus}",
            f"--pids-limit={s.container_pids}",
            "--network=none",
            "--read-only",
            f"--tmpfs=/tmp:rw,exec,nosuid,size={s.container_tmpfs_size}",
            "--cap-drop=ALL",
            "--security-opt=no-new-privileges",
        ]
        for key, value in s.env.items():
            argv += ["-e", f"{key}={value}"]
        return argv + list(mounts or []) + [s.container_image]

    def _mounts(self, job: Job, mode: str) -> List[str]:
        return [
            "-v", f"{job.workspace}:{MOUNT_WORKDIR}:{mode}",
            "-w", MOUNT_WORKDIR,
            "--user", f"{os.getuid()}:{os.getgid()}",
        ]

    def build_script(self, job: Job) -> str:
        compile_cmd = f"timeout {self.settings.compile_timeout_s} {shlex.join(self.compile_argv(job))}"
        if self.settings.mount_workspace:
            return "\n".join(_timed(compile_cmd) + ['exit "$rc"'])
        return "\n".join([
            _SETUP,
            # stdout carries the artifact tar, compiler chatter goes to stderr
            *_timed(f"{compile_cmd} 1>&2"),
            '[ "$rc" -eq 0 ] || exit "$rc"',
            f"tar -czf - . || {{ echo {BOUNDARY_MARKER} >&2; exit {BOUNDARY_EXIT}; }}",
        ])

    def run_script(self, job: Job) -> str:
        run_cmd = f"timeout {self.settings.run_timeout_s} {shlex.join(self.run_argv(job))}"
        lines = _timed(run_cmd) + ['exit "$rc"']
        if self.settings.mount_workspace:
            return "\n".join(lines)
        return "\n".join([_SETUP, *lines])

    # ---------- stages ----------

    def compile(self, job: Job) -> ProcessOutcome:
        name = self.container_name(job.job_id, "build")
        stream = not self.settings.mount_workspace
        mounts = None if stream else self._mounts(job, "rw")
        spec = ExecSpec(
            cmd=self.docker_argv(name, mounts) + ["sh", "-c", self.build_script(job)],
            workdir=job.workspace,
            env=self.base_env(),
            timeout_s=self.settings.compile_timeout_s,
            stdin=make_snapshot(job.workspace) if stream else None,
            stage="build",
        )
        outcome = self._run(name, spec, binary_stdout=stream)
        if stream and outcome.ok:
            try:
                extract_snapshot(outcome.payload, job.workspace)
            except (tarfile.TarError, OSError) as e:
                log.error("docker.artifacts_unreadable", job_id=job.job_id, error=str(e))
                return dataclasses.replace(
                    outcome,
                    kind=OutcomeKind.BOUNDARY_FAILED,
                    detail=f"could not unpack build artifacts: {e}",
                    payload=b"",
                )
        return dataclasses.replace(outcome, payload=b"")

    def execute(self, job: Job) -> ProcessOutcome:
        name = self.container_name(job.job_id, "run")
        stream = not self.settings.mount_workspace
        mounts = None if stream else self._mounts(job, "ro")
        spec = ExecSpec(
            cmd=self.docker_argv(name, mounts) + ["sh", "-c", self.run_script(job)],
            workdir=job.workspace,
            env=self.base_env(),
            timeout_s=self.settings.run_timeout_s,
            stdin=make_snapshot(job.workspace) if stream else None,
            stage="run",
        )
        return self._run(name, spec)

    def version(self) -> ProcessOutcome:
        s = self.settings
        name = self.container_name(new_job_id(), "version")
        spec = ExecSpec(
            cmd=[s.container_bin, "run", "--rm", "--name", name, "--network=none", s.container_image, *s.version_cmd],
            workdir=Path.cwd(),
            env=self.base_env(),
            timeout_s=s.compile_timeout_s,
            stage="version",
        )
        return self._run(name, spec)

    # ---------- plumbing ----------

    def remove(self, name: str) -> None:
        res = run_process(
            [self.settings.container_bin, "rm", "-f", name],
            timeout_s=self.settings.container_startup_grace_s,
            env=self.base_env(),
            kill_grace_s=self.settings.kill_grace_s,
        )
        if not res.ok:
            log.error("docker.remove_failed", container=name, reason=res.reason, stderr=res.stderr.strip())

    def _run(self, name: Optional[str], spec: ExecSpec, binary_stdout: bool = False) -> ProcessOutcome:
        log.debug("docker.spawn", container=name, stage=spec.stage)
        outcome = run_process(
            spec.cmd,
            cwd=spec.workdir,
            env=spec.env,
            stdin=spec.stdin,
            timeout_s=spec.timeout_s + self.settings.container_startup_grace_s,
            binary_stdout=binary_stdout,
            max_output_bytes=None if binary_stdout else self.settings.max_output_bytes,
            kill_grace_s=self.settings.kill_grace_s,
            on_timeout=(lambda: self.remove(name)) if name else None,
        )
        return self.classify(outcome, spec.timeout_s)

    @staticmethod
    def classify(outcome: ProcessOutcome, timeout_s: float) -> ProcessOutcome:
        """Map container-level exit statuses onto outcome kinds.

        124 and 125 are only trusted together with the marker line the stage
        scripts print (or docker's own daemon error); a guest exiting with
        either status on its own is an ordinary nonzero exit. A timeout also
        needs the stage to have actually lasted ``timeout_s``.
        """
        if outcome.kind == OutcomeKind.TIMED_OUT:
            return dataclasses.replace(outcome, timeout_s=timeout_s)
        if outcome.kind != OutcomeKind.EXITED_NONZERO:
            return outcome
        stderr, marker = split_marker(outcome.stderr)
        if (
            outcome.exit_code == TIMEOUT_EXIT
            and (marker == TIMEOUT_MARKER or outcome.truncated)
            and outcome.duration_s >= timeout_s
        ):
            return dataclasses.replace(outcome, stderr=stderr, kind=OutcomeKind.TIMED_OUT, timed_out=True, timeout_s=timeout_s)
        if outcome.exit_code == BOUNDARY_EXIT and (marker == BOUNDARY_MARKER or DAEMON_ERROR in stderr):
            detail = stderr.strip() or "container could not be started"
            return dataclasses.replace(outcome, stderr=stderr, kind=OutcomeKind.BOUNDARY_FAILED, detail=detail)
        return dataclasses.replace(outcome, stderr=stderr)
