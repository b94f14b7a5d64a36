"""
Prompt Loading Utilities
========================

Builds the prompts sent to agents for feature implementation and plan
generation.

Fallback chain for templates:
1. Project-specific: {project_dir}/.automaker/prompts/{name}.md
2. Built-in template in this module

Templates use str.format placeholders: {title}, {description},
{category}, {feature_id}, {plan}, {verification}.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from automode.database import get_data_dir

_logger = logging.getLogger(__name__)

IMPLEMENT_TEMPLATE = """\
Implement the following feature in this repository.

Feature: {title}
Category: {category}
ID: {feature_id}

Description:
{description}
{plan}
{verification}

When you are done, reply with a short summary of what you changed.
"""

PLANNING_TEMPLATE = """\
Write an implementation plan for the following feature. Do not modify any
files; read the codebase as needed.

Feature: {title}
Category: {category}
ID: {feature_id}

Description:
{description}

Respond with the plan in markdown: the files to change, the changes to
make in each, and how the result will be verified.
"""

SYSTEM_PROMPT = """\
You are an autonomous software engineer working inside a git working tree.
Work only inside the current directory. Make focused changes that implement
the requested feature, keep the existing code style, and leave the tree in
a buildable state.
"""

BUILTIN_TEMPLATES = {
    "implement": IMPLEMENT_TEMPLATE,
    "planning": PLANNING_TEMPLATE,
    "system": SYSTEM_PROMPT,
}


def get_project_prompts_dir(project_dir: Path) -> Path:
    return get_data_dir(Path(project_dir)) / "prompts"


def load_prompt(name: str, project_dir: Path | None = None) -> str:
    """
    Load a prompt template, preferring a project-specific override.

    Raises:
        KeyError: If no template with this name exists
    """
    if project_dir is not None:
        override = get_project_prompts_dir(project_dir) / f"{name}.md"
        if override.exists():
            try:
                return override.read_text(encoding="utf-8")
            except OSError as e:
                _logger.warning("Could not read %s: %s", override, e)

    return BUILTIN_TEMPLATES[name]


def _render(template: str, values: dict[str, Any]) -> str:
    try:
        return template.format(**values)
    except (KeyError, IndexError, ValueError) as e:
        # Broken override; fall back to the raw template text
        _logger.warning("Prompt template could not be rendered (%s); sending it verbatim", e)
        return template


def _feature_values(feature: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": feature.get("title") or feature.get("description", "")[:80],
        "description": feature.get("description", ""),
        "category": feature.get("category") or "Uncategorized",
        "feature_id": feature.get("id", ""),
    }


def build_feature_prompt(
    feature: dict[str, Any],
    project_dir: Path | None = None,
    plan: str | None = None,
) -> str:
    """Prompt for implementing a feature, with its approved plan if any."""
    values = _feature_values(feature)
    values["plan"] = f"\nApproved implementation plan:\n{plan}\n" if plan else ""
    if feature.get("skip_tests"):
        values["verification"] = (
            "\nThis feature has no automated tests; a human will review the result."
        )
    else:
        values["verification"] = (
            "\nVerify the change with the project's tests before finishing."
        )
    return _render(load_prompt("implement", project_dir), values)


def build_planning_prompt(feature: dict[str, Any], project_dir: Path | None = None) -> str:
    """Prompt for generating a feature's implementation plan."""
    return _render(load_prompt("planning", project_dir), _feature_values(feature))


def get_system_prompt(project_dir: Path | None = None) -> str:
    return load_prompt("system", project_dir)
