from __future__ import annotations
import re
from typing import Iterable, List

from .models import Diagnostic

# javac / gcc style: Foo.java:12: error: ';' expected
_COMPILER_LINE = re.compile(
    r"^(?P<file>[^\s:][^:\n]*?\.\w+):(?P<line>\d+):(?:\d+:)?\s*(?P<severity>error|warning|note):\s*(?P<message>.+)$",
    re.MULTILINE,
)
# Python style: File "/tmp/x/foo.py", line 3
_PY_FRAME = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)')


def normalize_diagnostics(text: str, roots: Iterable[str] = ()) -> str:
    """Rewrite path/line references into a workspace-relative ``file:line`` form.

    Pure string transform: absolute job directories (host workspace or the
    container mount point) are stripped, Python frame references are
    collapsed into ``file:line``.
    """
    if not text:
        return ""
    out = text
    for root in sorted({r.rstrip("/") for r in roots if r}, key=len, reverse=True):
        out = out.replace(root + "/", "")
    return _PY_FRAME.sub(lambda m: f"{m.group('file')}:{m.group('line')}", out)


def parse_diagnostics(text: str) -> List[Diagnostic]:
    return [
        Diagnostic(
            file=m.group("file"),
            line=int(m.group("line")),
            severity=m.group("severity"),
            message=m.group("message").strip(),
        )
        for m in _COMPILER_LINE.finditer(text or "")
    ]
