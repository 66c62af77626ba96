"""Placeholder rendering for catalog URLs and VM specs.

Templates use ``{{ key }}`` placeholders resolved against a flat string
context. There is no logic, filters or escaping: anything else in the
template is copied through verbatim.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Tuple

from qemulab.exceptions import TemplateError

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def create_context(pairs: Iterable[Tuple[str, Any]]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in pairs}


def render(context: Dict[str, str], template: Any, what: str = "") -> Any:
    """Substitute every placeholder of ``template`` from ``context``."""
    if not isinstance(template, str):
        return template
    where = f" ({what})" if what else ""

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            raise TemplateError(f"Unknown template variable '{key}' in '{template}'{where}")
        return context[key]

    leftover = PLACEHOLDER_RE.sub("", template)
    if "{{" in leftover or "}}" in leftover:
        raise TemplateError(f"Malformed placeholder in '{template}'{where}")
    return PLACEHOLDER_RE.sub(_substitute, template)
