"""Prompt loading and rendering from YAML/Jinja2 templates.

Prompts live as YAML files under ``explore_bridge/templates/``::

    name: explore
    version: "1.0"
    messages:
      - role: system
        content: |
          {% for col in schema %}- {{ col.name }} ({{ col.type }})
          {% endfor %}

Usage::

    from explore_bridge.prompts import render_prompt

    messages = render_prompt("explore.yaml", schema=cols, row_count=120, ...)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateNotFound

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "templates"


class _InlineLoader(BaseLoader):
    """Jinja2 loader for inline strings (no filesystem template inheritance)."""

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# StrictUndefined so a missing variable fails loud instead of rendering blank.
_env = Environment(loader=_InlineLoader(), undefined=StrictUndefined)
_env.filters["thousands"] = lambda n: f"{int(n):,}"


def _resolve(template: str | Path) -> Path:
    path = Path(template)
    if path.is_absolute():
        return path
    bundled = PROMPTS_DIR / path
    if bundled.exists():
        return bundled
    return Path.cwd() / path


def render_prompt(template: str | Path, **context: Any) -> list[dict[str, str]]:
    """Load a YAML prompt template and render its Jinja2 placeholders.

    Args:
        template: Bundled template name (``"explore.yaml"``) or a path.
        **context: Variables substituted into the templates.

    Returns:
        Chat messages: [{"role": ..., "content": ...}]

    Raises:
        FileNotFoundError: template does not exist.
        jinja2.UndefinedError: a template variable is missing from context.
        ValueError: YAML structure is invalid.
    """
    path = _resolve(template)
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")

    messages_raw = raw.get("messages")
    if not isinstance(messages_raw, list) or not messages_raw:
        raise ValueError(f"Prompt YAML needs a non-empty 'messages' list: {path}")

    messages: list[dict[str, str]] = []
    for i, msg in enumerate(messages_raw):
        if not isinstance(msg, dict) or "role" not in msg or "content" not in msg:
            raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")
        rendered = _env.from_string(str(msg["content"])).render(**context).strip()
        messages.append({"role": str(msg["role"]), "content": rendered})

    logger.debug(
        "Rendered prompt %s (%d messages, %d chars)",
        path.name, len(messages), sum(len(m["content"]) for m in messages),
    )
    return messages
