"""Template interpolation for agent files.

Tokens look like ``{{NAME}}``. A token without a value is left verbatim so
a later pass (or a human) can still see what was expected.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from reef.models.manifest import Manifest

TOKEN_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def has_tokens(text: str) -> bool:
    return TOKEN_PATTERN.search(text) is not None


def interpolate(template: str, variables: Mapping[str, str]) -> str:
    """Replace known ``{{NAME}}`` tokens; unknown tokens stay as written."""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        return match.group(0)

    return TOKEN_PATTERN.sub(_sub, template)


def build_tools_list(tools: list[str] | None, skills: Mapping[str, str] | None) -> str:
    """Render an agent's tools as a markdown list, with skill versions where known."""
    if not tools:
        return ""

    lines = []
    for tool in tools:
        version = (skills or {}).get(tool)
        lines.append(f"- **{tool}** ({version})" if version else f"- **{tool}**")
    return "\n".join(lines)


def generate_agents_md(manifest: Manifest, slug: str, namespace: str) -> str:
    """Describe the agents ``slug`` may message. Empty when it has no edges."""
    targets = manifest.agent_to_agent.get(slug) or []
    if not targets:
        return ""

    lines = [
        "# Available Agents",
        "",
        "You can communicate with the following agents:",
        "",
    ]
    for target in targets:
        agent = manifest.agents.get(target)
        if agent is None:
            continue
        description = agent.description or target
        lines.append(f"- **{target}** (`{namespace}-{target}`) - {description}")

    lines.append("")
    lines.append("Send a message by addressing the agent by name.")
    lines.append("")
    return "\n".join(lines)
