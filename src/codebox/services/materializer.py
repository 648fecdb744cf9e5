from __future__ import annotations
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence, Tuple

from ..core.errors import InputError
from ..core.models import SourceUnit
from ..core.naming import derive_unit_name
from ..settings import Settings

NO_CODE = "No code provided"


def safe_relative_name(name: str) -> str:
    """Validate a caller-supplied file name; returns it in normalized posix form."""
    raw = (name or "").strip()
    if not raw or "\\" in raw or "\x00" in raw:
        raise InputError(f"invalid file name {name!r}")
    p = PurePosixPath(raw)
    if p.is_absolute() or any(part in ("", ".", "..") for part in raw.split("/")):
        raise InputError(f"invalid file name {name!r}")
    return p.as_posix()


def plan_units(code: Optional[str], files: Optional[Sequence[Tuple[Optional[str], str]]], settings: Settings) -> List[SourceUnit]:
    """Turn a request into named source units, before anything touches disk.

    ``files`` wins over ``code`` when it holds any non-blank content; the
    first unit is the one that gets executed.
    """
    pairs = [(n, c or "") for n, c in (files or [])]
    if not any(c.strip() for _, c in pairs):
        pairs = [(None, code or "")] if (code or "").strip() else []
    if not pairs:
        raise InputError(NO_CODE, reason="empty_input")
    if len(pairs) > settings.max_files:
        raise InputError(f"Too many files ({len(pairs)} > {settings.max_files})", reason="too_many_files")
    total = sum(len(c.encode("utf-8")) for _, c in pairs)
    if total > settings.max_source_bytes:
        raise InputError(f"Source too large ({total} bytes > {settings.max_source_bytes})", reason="source_too_large")

    ext = settings.source_ext
    units: List[SourceUnit] = []
    seen = set()
    for name, content in pairs:
        if name and name.strip():
            rel = safe_relative_name(name)
            if ext and not rel.endswith(ext):
                rel += ext
            unit = SourceUnit(name=rel, content=content)
        else:
            unit = SourceUnit(name=derive_unit_name(content, settings.default_name) + ext, content=content, derived=True)
        if unit.name in seen:
            raise InputError(f"Duplicate file name {unit.name}", reason="duplicate_name")
        seen.add(unit.name)
        units.append(unit)
    return units


def materialize(workspace: Path, units: Sequence[SourceUnit]) -> List[str]:
    """Write units under ``workspace``; returns their relative paths in order."""
    root = workspace.resolve()
    written: List[str] = []
    for unit in units:
        target = (root / unit.name).resolve()
        if root not in target.parents:
            raise InputError(f"invalid file name {unit.name!r}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(unit.content, encoding="utf-8")
        written.append(unit.name)
    return written
