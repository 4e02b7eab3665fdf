"""Role-specific agent instructions: built-in defaults plus agents.toml overrides."""

from __future__ import annotations

import tomllib
from pathlib import Path
from string import Template
from typing import Any

SUPPORTED_ROLES = ("any", "pm", "dev", "qa", "research", "security")

_ROLE_DESCRIPTIONS: dict[str, str] = {
    "any": "Instructions for agents without a specific role.",
    "pm": "Role instructions for product/project management agents.",
    "dev": "Role instructions for developer agents.",
    "qa": "Role instructions for QA agents.",
    "research": "Role instructions for research agents.",
    "security": "Role instructions for security review agents.",
}

DEFAULT_ROLE_INSTRUCTIONS: dict[str, str] = {
    "any": (
        "1. Complete the task as described\n"
        "2. If you need clarification, raise a signal of kind \"question\"\n"
        "3. When done, post a completion comment with a short summary\n"
        "4. For code changes, open a PR and include the link in your completion comment\n"
        "5. Do NOT merge PRs; leave them open for review"
    ),
    "pm": (
        "1. Break the request into concrete, independently shippable tasks\n"
        "2. Record dependencies between tasks explicitly\n"
        "3. Raise a \"question\" signal when scope or priority is unclear"
    ),
    "dev": (
        "1. Complete the task as described, keeping the change focused\n"
        "2. Add or update tests for the behavior you change\n"
        "3. Raise a \"blocker\" signal if you cannot proceed\n"
        "4. Open a PR and include the link in your completion comment; do NOT merge it"
    ),
    "qa": (
        "1. Verify the change against the task description\n"
        "2. Exercise edge cases and report reproducible failures as comments\n"
        "3. Complete the task with a pass/fail summary"
    ),
    "research": (
        "1. Investigate the question and cite the sources you relied on\n"
        "2. Summarize findings and recommendations in the completion comment\n"
        "3. Do not change code unless the task asks for it"
    ),
    "security": (
        "1. Review the affected code for vulnerabilities and unsafe defaults\n"
        "2. Raise an \"alert\" signal with severity high or critical for serious findings\n"
        "3. Summarize findings with severity in the completion comment"
    ),
}

_SECTION_TEMPLATE = Template(
    '''# ${description}
[${role}]
instructions = """
${instructions}
"""
'''
)


def _normalize_role(role: str | None) -> str | None:
    """Normalize and validate an agent role name."""
    if role is None:
        return None
    normalized = role.strip().lower()
    if normalized not in SUPPORTED_ROLES:
        return None
    return normalized


def _global_agents_toml() -> Path:
    """Return the global agents.toml path."""
    return Path.home() / ".config" / "clutch" / "agents.toml"


def _project_agents_toml(project_dir: str | None) -> Path | None:
    """Return the project-level agents.toml path."""
    if not project_dir:
        return None
    return Path(project_dir) / ".clutch" / "agents.toml"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (FileNotFoundError, OSError, tomllib.TOMLDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def _extract_role_text(document: dict[str, Any], role: str) -> str:
    """Return the role instruction text from one TOML document."""
    raw = document.get(role)
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict):
        instructions = raw.get("instructions", "")
        return instructions.strip() if isinstance(instructions, str) else ""
    return ""


def load_role_instructions(project_dir: str | None, role: str | None) -> str:
    """Built-in text for *role*, extended by global then project agents.toml.

    Unknown or missing roles fall back to ``any``.
    """
    normalized = _normalize_role(role) or "any"
    chunks = [DEFAULT_ROLE_INSTRUCTIONS[normalized]]
    for path in (_global_agents_toml(), _project_agents_toml(project_dir)):
        if path is None:
            continue
        role_text = _extract_role_text(_read_toml_file(path), normalized)
        if role_text:
            chunks.append(role_text)
    return "\n\n".join(chunks)


def build_agents_toml_scaffold(role: str | None = None) -> str:
    """Return an agents.toml scaffold with one section per role (or just *role*)."""
    normalized_role = _normalize_role(role)
    if role is not None and normalized_role is None:
        return ""
    roles = (normalized_role,) if normalized_role else SUPPORTED_ROLES
    sections = [
        _SECTION_TEMPLATE.substitute(
            role=selected_role,
            description=_ROLE_DESCRIPTIONS[selected_role],
            instructions=f"Add {selected_role} instructions here.",
        )
        for selected_role in roles
    ]
    return "\n".join(section.strip() for section in sections)
