from __future__ import annotations
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from ..core.errors import InfrastructureError

log = structlog.get_logger(__name__)


class WorkspaceManager:
    """
    One directory per job under ``jobs_dir``:
      jobs/<job_id>/
        ├─ <sources>       (materialized units)
        └─ <artifacts>     (compiler output)
    Directories are never reused and are removed when the job ends.
    """

    def __init__(self, jobs_dir: Path):
        # resolved so diagnostics can be stripped reliably
        self.jobs_dir = jobs_dir.resolve()
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def acquire(self, job_id: str) -> Path:
        p = self.jobs_dir / job_id
        try:
            p.mkdir(parents=False, exist_ok=False)
        except FileExistsError:
            raise InfrastructureError(f"Infrastructure error: workspace {job_id} already exists", reason="workspace_collision") from None
        except OSError as e:
            raise InfrastructureError(f"Infrastructure error: cannot create workspace ({e})", reason="workspace_error") from e
        return p

    def release(self, path: Path) -> None:
        """Remove the workspace recursively. A missing directory is fine."""
        path = path.resolve()
        if path.parent != self.jobs_dir:
            raise ValueError(f"refusing to remove {path}: not a workspace under {self.jobs_dir}")
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return

    @contextmanager
    def scoped(self, job_id: str) -> Iterator[Path]:
        path = self.acquire(job_id)
        try:
            yield path
        finally:
            try:
                self.release(path)
            except Exception:
                log.exception("workspace.release_failed", job_id=job_id, path=str(path))
