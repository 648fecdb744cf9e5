from __future__ import annotations
import uuid


def new_job_id() -> str:
    return uuid.uuid4().hex


def format_cmd(template: list[str], **values) -> list[str]:
    """Expand a command template.

    ``{name}`` placeholders are substituted; a token that is exactly a
    placeholder bound to a list (``{sources}``) expands into several argv items.
    """
    out: list[str] = []
    for token in template:
        if token.startswith("{") and token.endswith("}") and isinstance(values.get(token[1:-1]), (list, tuple)):
            out.extend(str(v) for v in values[token[1:-1]])
        else:
            out.append(token.format(**values))
    return out
