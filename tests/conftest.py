import os
import sys
import time
from pathlib import Path

import pytest

from codebox.settings import Settings
from codebox.services.job_service import JobService
from codebox.executor.host import HostExecutor

# The Python interpreter stands in for compiler and runtime: py_compile is the
# "build", running the entry file is the "run".
PY_TOOLCHAIN = dict(
    iso_strategy="host",
    source_ext=".py",
    compile_cmd=[sys.executable, "-m", "py_compile", "{sources}"],
    run_cmd=[sys.executable, "{entry_file}"],
    version_cmd=[sys.executable, "--version"],
    launch_failure_markers=["can't open file"],
)


@pytest.fixture
def settings(tmp_path):
    return Settings(jobs_dir=tmp_path / "jobs", compile_timeout_s=20, run_timeout_s=20, **PY_TOOLCHAIN)


@pytest.fixture
def service(settings):
    return JobService(settings=settings, executor=HostExecutor(settings))


def jobs_left(settings):
    return sorted(p.name for p in Path(settings.jobs_dir).iterdir())


def pid_alive(pid, wait_s=3.0):
    """True if ``pid`` is still a live (non-zombie) process after ``wait_s``."""
    deadline = time.monotonic() + wait_s
    while True:
        stat = Path(f"/proc/{pid}/stat")
        if stat.exists():
            try:
                state = stat.read_text().rsplit(")", 1)[1].split()[0]
            except (OSError, IndexError):
                state = "X"
            alive = state not in ("Z", "X")
        else:
            try:
                os.kill(pid, 0)
                alive = True
            except ProcessLookupError:
                alive = False
            except PermissionError:
                alive = True
        if not alive or time.monotonic() > deadline:
            return alive
        time.sleep(0.05)
