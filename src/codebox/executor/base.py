from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from ..core.models import Job, ProcessOutcome
from ..core.utils import format_cmd
from ..settings import Settings


@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Path
    env: Dict[str, str]
    timeout_s: int
    stdin: Optional[bytes] = None
    stage: str = "run"


class Executor:
    """Isolation backend: spawns the toolchain for one job stage.

    Implementations own how the process is bounded; classification of the
    outcome into build/run results happens in ``codebox.runner``.
    """

    name = "base"

    def __init__(self, settings: Settings):
        self.settings = settings

    def compile(self, job: Job) -> ProcessOutcome:
        raise NotImplementedError

    def execute(self, job: Job) -> ProcessOutcome:
        raise NotImplementedError

    def version(self) -> ProcessOutcome:
        raise NotImplementedError

    # ---------- command builders ----------

    def compile_argv(self, job: Job) -> List[str]:
        return format_cmd(self.settings.compile_cmd, sources=job.sources, entry=job.entry, entry_file=job.primary.name)

    def run_argv(self, job: Job) -> List[str]:
        return format_cmd(self.settings.run_cmd, sources=job.sources, entry=job.entry, entry_file=job.primary.name)

    def base_env(self) -> Dict[str, str]:
        return {**os.environ, **self.settings.env}

    def roots(self, job: Job) -> List[str]:
        """Absolute directories that appear in diagnostics for this job."""
        return [str(job.workspace)]
