from __future__ import annotations
import shutil
from typing import Dict, Type

from ..settings import Settings
from .base import Executor
from .docker import DockerExecutor
from .host import HostExecutor

EXECUTORS: Dict[str, Type[Executor]] = {
    HostExecutor.name: HostExecutor,
    DockerExecutor.name: DockerExecutor,
}


def make_executor(settings: Settings) -> Executor:
    """Pick the isolation backend from deployment configuration."""
    strategy = (settings.iso_strategy or "").lower()
    try:
        return EXECUTORS[strategy](settings)
    except KeyError:
        raise ValueError(f"unknown iso_strategy {settings.iso_strategy!r}, expected one of {sorted(EXECUTORS)}") from None


def probe_capabilities(settings: Settings) -> dict:
    """Environment facts useful when an operator debugs a broken backend."""
    return {
        "strategy": settings.iso_strategy,
        "compiler": settings.compile_cmd[0] if settings.compile_cmd else None,
        "has_compiler": bool(settings.compile_cmd and shutil.which(settings.compile_cmd[0])),
        "has_runtime": bool(settings.run_cmd and shutil.which(settings.run_cmd[0])),
        "has_container_bin": bool(shutil.which(settings.container_bin)),
        "image": settings.container_image if settings.iso_strategy == DockerExecutor.name else None,
    }
