import io
import tarfile
from datetime import datetime, timezone

import pytest

from codebox.core.models import Job, JobState, OutcomeKind, ProcessOutcome, SourceUnit
from codebox.executor import docker as docker_mod
from codebox.executor.docker import (
    BOUNDARY_EXIT,
    BOUNDARY_MARKER,
    TIMEOUT_MARKER,
    DockerExecutor,
    extract_snapshot,
    make_snapshot,
    split_marker,
)
from codebox.executor.factory import make_executor, probe_capabilities
from codebox.executor.host import HostExecutor
from codebox.executor.process import run_process
from codebox.services.assembler import assemble
from codebox.settings import Settings


@pytest.fixture
def dsettings(tmp_path):
    return Settings(jobs_dir=tmp_path / "jobs", iso_strategy="docker", env={"LANG": "C.UTF-8"})


def make_job(tmp_path, name="HelloWorld.java", content="class HelloWorld {}"):
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / name).write_text(content)
    return Job(
        job_id="abc123",
        workspace=ws,
        units=[SourceUnit(name=name, content=content)],
        isolation="docker",
        deadline=datetime.now(timezone.utc),
        sources=[name],
    )


class FakeRun:
    """Stands in for ``run_process``; records every call."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def __call__(self, cmd, **kw):
        self.calls.append((list(cmd), kw))
        if cmd[1] == "rm":
            return ProcessOutcome(command=tuple(cmd), exit_code=0)
        if callable(self.outcome):
            return self.outcome(cmd, **kw)
        return self.outcome


def test_docker_argv_limits(dsettings):
    argv = DockerExecutor(dsettings).docker_argv("codebox-x-run")
    assert argv[:4] == ["docker", "run", "--rm", "-i"]
    for flag in (
        "--memory=128m",
        "--memory-swap=128m",
        "--cpus=0.5",
        "--pids-limit=64",
        "--network=none",
        "--read-only",
        "--cap-drop=ALL",
        "--security-opt=no-new-privileges",
    ):
        assert flag in argv
    assert ["-e", "LANG=C.UTF-8"] == argv[argv.index("-e"):argv.index("-e") + 2]
    assert argv[-1] == dsettings.container_image


def test_stream_scripts(dsettings, tmp_path):
    ex = DockerExecutor(dsettings)
    job = make_job(tmp_path)
    build = ex.build_script(job)
    assert "tar -xzf -" in build
    assert "timeout 10 javac -encoding UTF-8 HelloWorld.java 1>&2; rc=$?" in build
    assert f"echo {BOUNDARY_MARKER} >&2; exit {BOUNDARY_EXIT}" in build
    assert build.rstrip().splitlines()[-1].startswith("tar -czf - .")
    run = ex.run_script(job)
    assert "timeout 10 java -cp . HelloWorld; rc=$?" in run
    assert f"echo {TIMEOUT_MARKER} >&2" in run
    assert run.endswith('exit "$rc"')


def test_mount_mode(tmp_path):
    s = Settings(jobs_dir=tmp_path / "jobs", mount_workspace=True)
    ex = DockerExecutor(s)
    job = make_job(tmp_path)
    build = ex.build_script(job)
    assert build.startswith("timeout 10 javac -encoding UTF-8 HelloWorld.java; rc=$?")
    assert "tar" not in build
    mounts = ex._mounts(job, "ro")
    assert mounts[:2] == ["-v", f"{job.workspace}:/workspace:ro"]
    assert "--user" in mounts


def outcome(exit_code, stderr="", duration_s=0.1, truncated=False):
    return ProcessOutcome(
        command=("docker",),
        exit_code=exit_code,
        stderr=stderr,
        duration_s=duration_s,
        truncated=truncated,
        kind=OutcomeKind.SUCCEEDED if exit_code == 0 else OutcomeKind.EXITED_NONZERO,
    )


@pytest.mark.parametrize(
    "raw, kind",
    [
        (outcome(0), OutcomeKind.SUCCEEDED),
        (outcome(1, "boom\n"), OutcomeKind.EXITED_NONZERO),
        (outcome(124, f"{TIMEOUT_MARKER}\n", duration_s=10.4), OutcomeKind.TIMED_OUT),
        (outcome(124, "... [output truncated]", duration_s=10.4, truncated=True), OutcomeKind.TIMED_OUT),
        (outcome(125, f"tar: short read\n{BOUNDARY_MARKER}\n"), OutcomeKind.BOUNDARY_FAILED),
        (outcome(125, "docker: Error response from daemon: no such image.\n"), OutcomeKind.BOUNDARY_FAILED),
    ],
)
def test_classify(raw, kind):
    out = DockerExecutor.classify(raw, 10)
    assert out.kind == kind
    assert TIMEOUT_MARKER not in out.stderr
    assert BOUNDARY_MARKER not in out.stderr
    if kind == OutcomeKind.TIMED_OUT:
        assert out.reason == "timeout_10s"
    if kind == OutcomeKind.BOUNDARY_FAILED:
        assert out.detail


@pytest.mark.parametrize(
    "raw",
    [
        # guest exiting with the container status codes on its own
        outcome(124, "bye\n"),
        outcome(125, "bye\n"),
        outcome(125, ""),
        # wrapper saw 124, but the stage ended long before its timeout
        outcome(124, f"bye\n{TIMEOUT_MARKER}\n", duration_s=0.5),
    ],
)
def test_guest_status_is_a_run_failure(raw):
    out = DockerExecutor.classify(raw, 10)
    assert out.kind == OutcomeKind.EXITED_NONZERO
    assert out.stderr.strip() in ("bye", "")
    res = assemble(ProcessOutcome(command=("javac",), exit_code=0), out)
    assert res.state == JobState.RUN_FAILED
    assert res.exit_code == raw.exit_code
    assert res.reason == f"exit_{raw.exit_code}"


def test_split_marker():
    assert split_marker(f"oops\n{BOUNDARY_MARKER}\n") == ("oops", BOUNDARY_MARKER)
    assert split_marker(TIMEOUT_MARKER) == ("", TIMEOUT_MARKER)
    assert split_marker(f"{TIMEOUT_MARKER} said the guest\n") == (f"{TIMEOUT_MARKER} said the guest\n", None)


def run_mounted(tmp_path, run_cmd, run_timeout_s=1):
    """Run the mount-mode run script through a real shell with a stand-in runtime."""
    s = Settings(jobs_dir=tmp_path / "jobs", mount_workspace=True, run_timeout_s=run_timeout_s, run_cmd=run_cmd)
    job = make_job(tmp_path)
    raw = run_process(["sh", "-c", DockerExecutor(s).run_script(job)], cwd=job.workspace, timeout_s=20)
    return DockerExecutor.classify(raw, run_timeout_s)


def test_script_marks_real_timeout(tmp_path):
    out = run_mounted(tmp_path, ["sleep", "5"])
    assert out.kind == OutcomeKind.TIMED_OUT
    assert out.exit_code == 124


@pytest.mark.parametrize("status", [124, 125])
def test_script_passes_guest_status_through(tmp_path, status):
    out = run_mounted(tmp_path, ["sh", "-c", f"echo guest >&2; exit {status}"], run_timeout_s=10)
    assert out.kind == OutcomeKind.EXITED_NONZERO
    assert out.exit_code == status
    assert out.stderr.strip() == "guest"


def test_snapshot_roundtrip(tmp_path):
    src = tmp_path / "src"
    (src / "pkg").mkdir(parents=True)
    (src / "Main.java").write_text("class Main {}")
    (src / "pkg" / "Util.java").write_text("class Util {}")
    dest = tmp_path / "dest"
    dest.mkdir()
    extract_snapshot(make_snapshot(src), dest)
    assert (dest / "Main.java").read_text() == "class Main {}"
    assert (dest / "pkg" / "Util.java").read_text() == "class Util {}"


def test_compile_unpacks_artifacts(dsettings, tmp_path, monkeypatch):
    artifacts = tmp_path / "artifacts"
    artifacts.mkdir()
    (artifacts / "HelloWorld.class").write_bytes(b"\xca\xfe\xba\xbe")
    fake = FakeRun(ProcessOutcome(command=("docker",), exit_code=0, payload=make_snapshot(artifacts)))
    monkeypatch.setattr(docker_mod, "run_process", fake)

    job = make_job(tmp_path)
    out = DockerExecutor(dsettings).compile(job)
    assert out.ok
    assert out.payload == b""
    assert (job.workspace / "HelloWorld.class").read_bytes() == b"\xca\xfe\xba\xbe"
    cmd, kw = fake.calls[0]
    assert "codebox-abc123-build" in cmd
    assert kw["stdin"]
    assert kw["binary_stdout"] is True
    assert kw["timeout_s"] == dsettings.compile_timeout_s + dsettings.container_startup_grace_s


def test_compile_bad_artifacts_is_boundary_failure(dsettings, tmp_path, monkeypatch):
    monkeypatch.setattr(docker_mod, "run_process", FakeRun(ProcessOutcome(command=("docker",), exit_code=0, payload=b"not a tar")))
    out = DockerExecutor(dsettings).compile(make_job(tmp_path))
    assert out.kind == OutcomeKind.BOUNDARY_FAILED
    assert out.reason == "boundary_error:0"


def test_outer_timeout_removes_container(dsettings, tmp_path, monkeypatch):
    def hang(cmd, on_timeout=None, **kw):
        on_timeout()
        return ProcessOutcome(command=tuple(cmd), exit_code=-9, timed_out=True, kind=OutcomeKind.TIMED_OUT, timeout_s=kw["timeout_s"])

    fake = FakeRun(hang)
    monkeypatch.setattr(docker_mod, "run_process", fake)
    out = DockerExecutor(dsettings).execute(make_job(tmp_path))
    assert out.kind == OutcomeKind.TIMED_OUT
    assert out.timeout_s == dsettings.run_timeout_s
    assert fake.calls[-1][0] == ["docker", "rm", "-f", "codebox-abc123-run"]


def test_factory(tmp_path):
    assert isinstance(make_executor(Settings(jobs_dir=tmp_path, iso_strategy="host")), HostExecutor)
    assert isinstance(make_executor(Settings(jobs_dir=tmp_path, iso_strategy="Docker")), DockerExecutor)
    with pytest.raises(ValueError):
        make_executor(Settings(jobs_dir=tmp_path, iso_strategy="chroot"))


def test_probe_capabilities(dsettings):
    caps = probe_capabilities(dsettings)
    assert caps["strategy"] == "docker"
    assert caps["image"] == dsettings.container_image
    assert isinstance(caps["has_container_bin"], bool)


def test_version_timeout_removes_named_container(dsettings, monkeypatch):
    def hang(cmd, on_timeout=None, **kw):
        on_timeout()
        return ProcessOutcome(command=tuple(cmd), exit_code=-9, timed_out=True, kind=OutcomeKind.TIMED_OUT)

    fake = FakeRun(hang)
    monkeypatch.setattr(docker_mod, "run_process", fake)
    out = DockerExecutor(dsettings).version()
    assert out.kind == OutcomeKind.TIMED_OUT
    run_cmd = fake.calls[0][0]
    name = run_cmd[run_cmd.index("--name") + 1]
    assert name.startswith("codebox-") and name.endswith("-version")
    assert fake.calls[-1][0] == ["docker", "rm", "-f", name]


def test_snapshot_refuses_paths_outside_destination(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        data = b"pwned"
        info = tarfile.TarInfo("../escaped.txt")
        info.size = len(data)
        tf.addfile(info, io.BytesIO(data))
    dest = tmp_path / "dest"
    dest.mkdir()
    with pytest.raises(tarfile.TarError):
        extract_snapshot(buf.getvalue(), dest)
    assert not (tmp_path / "escaped.txt").exists()
