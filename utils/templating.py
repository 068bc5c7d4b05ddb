"""
{{variable}} placeholder rendering for message, input and choice prompts.

An unbound placeholder renders as the empty string. It is reported through
the log and a TemplateRenderWarning, never raised.
"""
from __future__ import annotations

import re
import warnings

import structlog

from core.errors import TemplateRenderWarning

logger = structlog.get_logger()

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


def placeholders(template: str) -> list[str]:
    """Variable names referenced by a template, in order of appearance."""
    if not template:
        return []
    return [m.group(1).strip() for m in PLACEHOLDER.finditer(template)]


def render(template: str, context: dict[str, str], **log_context) -> str:
    """Replace {{variable}} placeholders with values from context."""
    if not template:
        return ""

    unbound: list[str] = []

    def replacer(match):
        key = match.group(1).strip()
        val = context.get(key)
        if val is None:
            unbound.append(key)
            return ""
        return str(val)

    rendered = PLACEHOLDER.sub(replacer, template)

    if unbound:
        logger.warning("template_unbound_variable", variables=unbound, **log_context)
        warnings.warn(
            f"Unbound template variables rendered empty: {', '.join(unbound)}",
            TemplateRenderWarning,
            stacklevel=2,
        )
    return rendered
