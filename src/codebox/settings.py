from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ---- core paths / flags ----
    jobs_dir: Path = Path(tempfile.gettempdir()) / "codebox" / "jobs"
    iso_strategy: str = "docker"  # host | docker
    static_dir: Optional[Path] = None
    api_prefix: str = "/api"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # ---- config files ----
    limits_file: Path = Path("conf/limits.yaml")

    # ---- limits ----
    compile_timeout_s: int = 10
    run_timeout_s: int = 10
    kill_grace_s: float = 2.0
    max_output_bytes: int = 1024 * 1024
    max_source_bytes: int = 256 * 1024
    max_files: int = 32

    # ---- toolchain ----
    source_ext: str = ".java"
    default_name: str = "Main"
    compile_cmd: List[str] = ["javac", "-encoding", "UTF-8", "{sources}"]
    run_cmd: List[str] = ["java", "-cp", ".", "{entry}"]
    version_cmd: List[str] = ["java", "--version"]
    launch_failure_markers: List[str] = [
        "Could not find or load main class",
        "Main method not found",
        "Error: Unable to initialize main class",
    ]

    # ---- container backend ----
    container_bin: str = "docker"
    container_image: str = "eclipse-temurin:24-alpine"
    container_memory: str = "128m"
    container_cpus: str = "0.5"
    container_pids: int = 64
    container_tmpfs_size: str = "64m"
    container_startup_grace_s: int = 5
    mount_workspace: bool = False

    env: Dict[str, str] = Field(default_factory=dict)

    # env prefix CBX_*
    model_config = SettingsConfigDict(env_prefix="CBX_", extra="ignore")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    return data if isinstance(data, dict) else {}


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = data.get(name) or {}
    return sec if isinstance(sec, dict) else {}


def load_settings() -> Settings:
    # 0) base from env CBX_*
    s = Settings()

    # 1) conf/codebox.yaml (or CODEBOX_CONF)
    data = _read_yaml(Path(os.environ.get("CODEBOX_CONF", "conf/codebox.yaml")))
    toolchain = _section(data, "toolchain")
    container = _section(data, "container")

    update: Dict[str, Any] = {}
    for key in ("jobs_dir", "iso_strategy", "static_dir", "api_prefix", "host", "port", "log_level", "env"):
        if key in data:
            update[key] = data[key]
    for key in ("source_ext", "default_name", "launch_failure_markers"):
        if key in toolchain:
            update[key] = toolchain[key]
    for key in ("compile", "run", "version"):
        if key in toolchain:
            update[f"{key}_cmd"] = toolchain[key]
    for key in ("image", "memory", "cpus", "pids", "tmpfs_size", "startup_grace_s"):
        if key in container:
            update[f"container_{key}"] = container[key]
    if "binary" in container:
        update["container_bin"] = container["binary"]
    if "mount_workspace" in container:
        update["mount_workspace"] = container["mount_workspace"]

    # 2) conf/limits.yaml (optional)
    limits = _read_yaml(Path(data.get("limits_file", s.limits_file)))
    for key in ("compile_timeout_s", "run_timeout_s", "kill_grace_s", "max_output_bytes", "max_source_bytes", "max_files"):
        if key in limits:
            update[key] = limits[key]

    s = Settings.model_validate({**s.model_dump(), **update})

    # 3) explicit env overrides win over YAML
    if os.getenv("CBX_JOBS_DIR"):
        s = s.model_copy(update={"jobs_dir": Path(os.environ["CBX_JOBS_DIR"])})
    if os.getenv("CBX_ISO_STRATEGY"):
        s = s.model_copy(update={"iso_strategy": os.environ["CBX_ISO_STRATEGY"]})
    return s
