"""Synchronous process execution with a hard deadline.

``run_process`` starts the child in its own session, drains stdout and stderr
on dedicated threads while it runs (a full pipe can never stall the child),
feeds stdin from another thread and reaps the child with ``wait4`` so the
peak RSS of the process tree is known. When the deadline passes the whole
process group is SIGKILLed and the call returns only once the child has been
reaped.
"""
from __future__ import annotations
import functools
import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

import structlog

from ..core.models import OutcomeKind, ProcessOutcome

log = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n... [output truncated]"
_CHUNK = 64 * 1024
# ru_maxrss is reported in kilobytes on Linux, bytes on macOS
_RSS_UNIT = 1 if sys.platform == "darwin" else 1024


class _Capture:
    def __init__(self, limit: Optional[int]):
        self.limit = limit
        self.chunks: list[bytes] = []
        self.size = 0
        self.truncated = False

    def feed(self, data: bytes) -> None:
        if self.limit is None:
            self.chunks.append(data)
            self.size += len(data)
            return
        room = self.limit - self.size
        if room > 0:
            self.chunks.append(data[:room])
            self.size += min(room, len(data))
        if len(data) > room:
            # keep reading so the writer never blocks, just drop the bytes
            self.truncated = True

    def value(self) -> bytes:
        return b"".join(self.chunks)

    def text(self) -> str:
        s = self.value().decode("utf-8", errors="replace")
        return s + TRUNCATION_MARKER if self.truncated else s


def _drain(stream, sink: _Capture) -> None:
    try:
        for chunk in iter(functools.partial(os.read, stream.fileno(), _CHUNK), b""):
            sink.feed(chunk)
    finally:
        stream.close()


def _feed(stream, data: bytes) -> None:
    try:
        stream.write(data)
        stream.flush()
    except BrokenPipeError:
        # child exited or closed stdin before reading everything
        pass
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            pass


class _Reaper(threading.Thread):
    def __init__(self, pid: int):
        super().__init__(name=f"reap-{pid}", daemon=True)
        self.pid = pid
        self.status: Optional[int] = None
        self.rusage = None

    def run(self) -> None:
        try:
            _, self.status, self.rusage = os.wait4(self.pid, 0)
        except ChildProcessError:
            log.warning("process.reap_lost", pid=self.pid)


def kill_group(pgid: int) -> None:
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        # group already empty
        pass


def run_process(
    cmd: Sequence[str],
    *,
    timeout_s: float,
    cwd: Optional[Path] = None,
    stdin: Optional[bytes] = None,
    env: Optional[Dict[str, str]] = None,
    binary_stdout: bool = False,
    max_output_bytes: Optional[int] = None,
    kill_grace_s: float = 2.0,
    on_timeout: Optional[Callable[[], None]] = None,
) -> ProcessOutcome:
    argv = tuple(str(c) for c in cmd)
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            start_new_session=True,
        )
    except OSError as e:
        log.warning("process.spawn_failed", cmd=argv[0], error=str(e))
        return ProcessOutcome(
            command=argv,
            exit_code=None,
            duration_s=time.monotonic() - start,
            kind=OutcomeKind.SPAWN_FAILED,
            detail=f"{argv[0]}: {e.strerror or e}",
            timeout_s=timeout_s,
        )

    out, err = _Capture(max_output_bytes), _Capture(max_output_bytes)
    workers = [
        threading.Thread(target=_drain, args=(proc.stdout, out), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err), daemon=True),
    ]
    if stdin is not None:
        workers.append(threading.Thread(target=_feed, args=(proc.stdin, stdin), daemon=True))
    reaper = _Reaper(proc.pid)
    for t in workers:
        t.start()
    reaper.start()

    reaper.join(timeout_s)
    timed_out = reaper.is_alive()
    if timed_out:
        log.warning("process.timeout", pid=proc.pid, cmd=argv[0], timeout_s=timeout_s)
        kill_group(proc.pid)
        if on_timeout is not None:
            on_timeout()
        reaper.join(kill_grace_s)
        while reaper.is_alive():
            log.error("process.unreaped", pid=proc.pid)
            kill_group(proc.pid)
            reaper.join(kill_grace_s)

    # leftovers the child forked into its group
    kill_group(proc.pid)
    for t in workers:
        t.join(kill_grace_s)
    if any(t.is_alive() for t in workers):
        log.warning("process.pipes_held_open", pid=proc.pid)

    exit_code = os.waitstatus_to_exitcode(reaper.status) if reaper.status is not None else None
    # already reaped by wait4; keep Popen from waiting again
    proc.returncode = exit_code if exit_code is not None else -1
    memory = reaper.rusage.ru_maxrss * _RSS_UNIT if reaper.rusage is not None else 0

    if timed_out:
        kind = OutcomeKind.TIMED_OUT
    elif exit_code == 0:
        kind = OutcomeKind.SUCCEEDED
    else:
        kind = OutcomeKind.EXITED_NONZERO

    return ProcessOutcome(
        command=argv,
        exit_code=exit_code,
        stdout="" if binary_stdout else out.text(),
        stderr=err.text(),
        duration_s=time.monotonic() - start,
        memory_bytes=memory,
        timed_out=timed_out,
        kind=kind,
        pid=proc.pid,
        payload=out.value() if binary_stdout else b"",
        truncated=out.truncated or err.truncated,
        timeout_s=timeout_s,
    )
