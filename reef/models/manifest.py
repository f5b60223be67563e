"""Formation manifest — the desired state of a formation.

Manifests reach this package already validated; the loader only parses
them into typed records. Both ``reef.json`` and ``reef.yaml`` are accepted.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

MANIFEST_FILENAMES = ("reef.json", "reef.yaml", "reef.yml")


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be read or parsed."""


@dataclass
class AgentDefinition:
    """One agent as declared in the manifest."""

    source: str
    description: str = ""
    role: str = ""
    model: str | None = None
    tools: dict[str, Any] | None = None
    sandbox: dict[str, Any] | None = None

    @property
    def tool_names(self) -> list[str]:
        return list((self.tools or {}).get("allow") or [])


@dataclass
class BindingSpec:
    """Routes a channel match to an agent slug. Match values may hold tokens."""

    match: dict[str, Any]
    agent: str


@dataclass
class CronSpec:
    schedule: str
    agent: str
    prompt: str
    timezone: str | None = None


@dataclass
class VariableSpec:
    type: str = "string"
    description: str = ""
    default: str | int | float | bool | None = None
    required: bool = False
    sensitive: bool = False


@dataclass
class Manifest:
    """A parsed formation manifest."""

    name: str
    version: str
    namespace: str
    description: str = ""
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    bindings: list[BindingSpec] = field(default_factory=list)
    cron: list[CronSpec] = field(default_factory=list)
    agent_to_agent: dict[str, list[str]] = field(default_factory=dict)
    variables: dict[str, VariableSpec] = field(default_factory=dict)
    skills: dict[str, str] = field(default_factory=dict)

    @property
    def has_edges(self) -> bool:
        return any(targets for targets in self.agent_to_agent.values())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        agents = {
            slug: AgentDefinition(
                source=agent.get("source", ""),
                description=agent.get("description", ""),
                role=agent.get("role", ""),
                model=agent.get("model"),
                tools=agent.get("tools"),
                sandbox=agent.get("sandbox"),
            )
            for slug, agent in (data.get("agents") or {}).items()
        }

        bindings = []
        for b in data.get("bindings") or []:
            # Older manifests bind a bare channel string
            match = b.get("match")
            if match is None:
                match = {"channel": b.get("channel", "")}
            bindings.append(BindingSpec(match=dict(match), agent=b.get("agent", "")))

        cron = [
            CronSpec(
                schedule=c["schedule"],
                agent=c["agent"],
                prompt=c.get("prompt", ""),
                timezone=c.get("timezone"),
            )
            for c in data.get("cron") or []
        ]

        variables = {
            name: VariableSpec(
                type=v.get("type", "string"),
                description=v.get("description", ""),
                default=v.get("default"),
                required=bool(v.get("required", False)),
                sensitive=bool(v.get("sensitive", False)),
            )
            for name, v in (data.get("variables") or {}).items()
        }

        dependencies = data.get("dependencies") or {}

        return cls(
            name=data["name"],
            version=str(data["version"]),
            namespace=data["namespace"],
            description=data.get("description", ""),
            agents=agents,
            bindings=bindings,
            cron=cron,
            agent_to_agent={
                k: list(v) for k, v in (data.get("agentToAgent") or {}).items()
            },
            variables=variables,
            skills=dict(dependencies.get("skills") or {}),
        )


def find_manifest(formation_dir: str | Path) -> Path:
    """Return the manifest file inside a formation directory."""
    base = Path(formation_dir)
    for filename in MANIFEST_FILENAMES:
        candidate = base / filename
        if candidate.is_file():
            return candidate
    raise ManifestLoadError(f"Cannot read reef.json: {base / MANIFEST_FILENAMES[0]}")


def load_manifest(formation_dir: str | Path) -> Manifest:
    """Load and parse the manifest of a formation directory."""
    path = find_manifest(formation_dir)

    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestLoadError(f"Invalid manifest {path}: {e}") from e
    except OSError as e:
        raise ManifestLoadError(f"Cannot read manifest {path}: {e}") from e

    if not isinstance(data, dict):
        raise ManifestLoadError(f"Invalid manifest {path}: expected a mapping")

    try:
        return Manifest.from_dict(data)
    except KeyError as e:
        raise ManifestLoadError(f"Manifest {path} is missing field {e}") from e
