# expr.py
# Tiny `${{ ... }}` template renderer shared by concurrency group keys and
# step commands. Only names, quoted literals and `||` fallbacks are supported.
from __future__ import annotations

import re
from typing import Any, List, Mapping

from .errors import ConfigError

PLACEHOLDER = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")

# Hosted-runner spellings map onto the bare names used in contexts:
#   github.event.pull_request.number -> pull_request.number
#   github.workflow                  -> workflow
_PREFIXES = ("github.event.", "github.")


def normalize_name(name: str) -> str:
    name = name.strip()
    for prefix in _PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


def _is_literal(term: str) -> bool:
    return len(term) >= 2 and term[0] == term[-1] and term[0] in ("'", '"')


def names_in(template: str) -> List[str]:
    """Return every (normalized) name referenced by the template's placeholders."""
    out: List[str] = []
    for m in PLACEHOLDER.finditer(template):
        for term in m.group(1).split("||"):
            term = term.strip()
            if term and not _is_literal(term):
                out.append(normalize_name(term))
    return out


def evaluate(expr: str, context: Mapping[str, Any], *, strict: bool = True) -> str:
    """
    Evaluate `a || b || 'c'`: the first term that resolves to a non-empty
    value wins. Unknown names raise ConfigError when strict, else count as empty.
    """
    for term in expr.split("||"):
        term = term.strip()
        if not term:
            continue
        if _is_literal(term):
            value: Any = term[1:-1]
        else:
            name = normalize_name(term)
            if name not in context:
                if strict:
                    raise ConfigError(f"Unknown name {term!r} in expression '{expr}'")
                continue
            value = context[name]
        if value is not None and str(value) != "":
            return str(value)
    return ""


def render(template: str, context: Mapping[str, Any], *, strict: bool = True) -> str:
    return PLACEHOLDER.sub(lambda m: evaluate(m.group(1), context, strict=strict), template)
