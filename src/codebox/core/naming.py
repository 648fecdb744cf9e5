"""Entry-name detection for submitted source units.

A unit submitted without a name is named after the first type declaration
found in its text. Matchers are tried in priority order and the first hit
wins; when nothing matches the configured fallback (``Main``) is used.
Comments and string/char literals are blanked before matching so that
``// this class does X`` or ``"class Foo"`` cannot name a file.
"""
from __future__ import annotations
import re
from typing import NamedTuple, Optional, Pattern, Tuple

DEFAULT_NAME = "Main"

_MODIFIERS = r"(?:(?:abstract|final|static|sealed|non-sealed|strictfp)\s+)*"


class DeclarationMatcher(NamedTuple):
    kind: str
    pattern: Pattern[str]


DECLARATION_MATCHERS: Tuple[DeclarationMatcher, ...] = (
    DeclarationMatcher("public_type", re.compile(rf"\bpublic\s+{_MODIFIERS}(?:class|record)\s+([A-Za-z_$][\w$]*)")),
    DeclarationMatcher("type", re.compile(r"\b(?:class|record)\s+([A-Za-z_$][\w$]*)")),
    DeclarationMatcher("enum", re.compile(r"\benum\s+([A-Za-z_$][\w$]*)")),
    DeclarationMatcher("interface", re.compile(r"(?:@|\b)interface\s+([A-Za-z_$][\w$]*)")),
)

_NOISE = re.compile(
    r"""
      '(?:\\.|[^'\\\n])'          # char literal
    | "(?:\\.|[^"\\\n])*"         # string literal
    | //[^\n]*                    # line comment
    | /\*.*?\*/                   # block comment
    """,
    re.VERBOSE | re.DOTALL,
)


def strip_noise(source: str) -> str:
    """Blank out comments and literals, keeping line structure."""
    return _NOISE.sub(lambda m: re.sub(r"[^\n]", " ", m.group(0)), source)


def find_declaration(source: str) -> Optional[Tuple[str, str]]:
    """Return ``(matcher kind, name)`` for the highest-priority declaration, or None."""
    text = strip_noise(source)
    for matcher in DECLARATION_MATCHERS:
        m = matcher.pattern.search(text)
        if m:
            return matcher.kind, m.group(1)
    return None


def derive_unit_name(source: str, default: str = DEFAULT_NAME) -> str:
    found = find_declaration(source)
    return found[1] if found else default
