"""Structural patches over the orchestrator's runtime configuration.

The runtime owns this document; reef only touches ``agents.list``,
``bindings`` and ``tools.agentToAgent``. Everything else must survive a
read-modify-write cycle untouched. Patch functions mutate the mapping they
are given and return it, and applying one twice has no further effect.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from reef.config.paths import resolve_config_path, resolve_state_dir, resolve_workspace_path
from reef.models.state import BindingRecord

logger = logging.getLogger(__name__)

_ENV_REF_RE = re.compile(r"\$\{[^}]+\}")

Config = dict[str, Any]


@dataclass
class RuntimeConfig:
    """A runtime config document together with where it came from."""

    config: Config
    path: Path
    raw: str = ""


@dataclass
class AgentEntry:
    """An ``agents.list`` entry to add to the runtime config."""

    id: str
    name: str = ""
    workspace: str = ""
    model: str | dict[str, Any] | None = None
    skills: list[str] | None = None
    identity: dict[str, Any] | None = None
    sandbox: dict[str, Any] | None = None
    tools: dict[str, Any] | None = None


# ── Document I/O ─────────────────────────────────────────────────────


def read_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> RuntimeConfig:
    """Read the runtime config; a missing file yields an empty skeleton."""
    config_path = Path(path) if path else resolve_config_path(env)

    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return RuntimeConfig(config={"agents": {"list": []}, "bindings": []}, path=config_path)

    if "$include" in raw or _ENV_REF_RE.search(raw):
        logger.warning(
            "Config %s uses $include or ${VAR}; patching the raw document, "
            "which may differ from the effective runtime config.",
            config_path,
        )

    return RuntimeConfig(config=json.loads(raw), path=config_path, raw=raw)


def write_config(path: str | Path, config: Config) -> None:
    """Replace the config file, keeping the previous version as ``.bak``."""
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = config_path.with_name(config_path.name + ".tmp")
    bak_path = config_path.with_name(config_path.name + ".bak")

    with open(tmp_path, "w", encoding="utf-8") as f:
        f.write(json.dumps(config, indent=2) + "\n")

    if config_path.exists():
        os.replace(config_path, bak_path)
    os.replace(tmp_path, config_path)


# ── Agents ───────────────────────────────────────────────────────────


def _ensure_agents_list(config: Config) -> list[dict[str, Any]]:
    agents = config.setdefault("agents", {})
    if not isinstance(agents.get("list"), list):
        agents["list"] = []
    return agents["list"]


def _normalize_id(agent_id: Any) -> str:
    return str(agent_id).strip().lower()


def add_agent_entry(
    config: Config,
    agent: AgentEntry,
    env: Mapping[str, str] | None = None,
) -> Config:
    agents = _ensure_agents_list(config)
    normalized = _normalize_id(agent.id)

    if any(_normalize_id(a.get("id")) == normalized for a in agents):
        return config

    # The runtime expects its default agent once any agent is listed
    if not agents and normalized != "main":
        agents.insert(0, {
            "id": "main",
            "default": True,
            "workspace": str(resolve_state_dir(env) / "workspace"),
        })

    entry: dict[str, Any] = {"id": agent.id}
    if agent.name:
        entry["name"] = agent.name
    entry["workspace"] = agent.workspace or str(resolve_workspace_path(agent.id, env))
    if agent.model:
        entry["model"] = agent.model
    if agent.skills:
        entry["skills"] = agent.skills
    if agent.identity:
        entry["identity"] = agent.identity
    if agent.sandbox:
        entry["sandbox"] = agent.sandbox
    if agent.tools:
        entry["tools"] = agent.tools

    agents.append(entry)
    return config


def remove_agent_entry(config: Config, agent_id: str) -> Config:
    agents = config.get("agents")
    if not isinstance(agents, dict) or not isinstance(agents.get("list"), list):
        return config
    agents["list"] = [a for a in agents["list"] if a.get("id") != agent_id]
    return config


# ── Bindings ─────────────────────────────────────────────────────────


def _binding_dict(binding: BindingRecord | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(binding, BindingRecord):
        return binding.to_config()
    return dict(binding)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def bindings_equal(
    a: BindingRecord | Mapping[str, Any],
    b: BindingRecord | Mapping[str, Any],
) -> bool:
    """Structural equality of two bindings after pruning their match objects."""
    left, right = _binding_dict(a), _binding_dict(b)
    return (
        left.get("agentId") == right.get("agentId")
        and canonical_json(prune_match_object(left.get("match") or {}))
        == canonical_json(prune_match_object(right.get("match") or {}))
    )


def add_binding(config: Config, binding: BindingRecord | Mapping[str, Any]) -> Config:
    if not isinstance(config.get("bindings"), list):
        config["bindings"] = []
    if any(bindings_equal(b, binding) for b in config["bindings"]):
        return config
    config["bindings"].append(_binding_dict(binding))
    return config


def remove_binding(config: Config, binding: BindingRecord | Mapping[str, Any]) -> Config:
    if not isinstance(config.get("bindings"), list):
        return config
    config["bindings"] = [b for b in config["bindings"] if not bindings_equal(b, binding)]
    return config


# ── Agent-to-agent ───────────────────────────────────────────────────


def _ensure_a2a(config: Config) -> dict[str, Any]:
    tools = config.setdefault("tools", {})
    a2a = tools.setdefault("agentToAgent", {})
    if not isinstance(a2a.get("allow"), list):
        a2a["allow"] = []
    return a2a


def set_agent_to_agent(config: Config, namespace: str) -> Config:
    a2a = _ensure_a2a(config)
    a2a["enabled"] = True
    pattern = f"{namespace}-*"
    if pattern not in a2a["allow"]:
        a2a["allow"].append(pattern)
    return config


def recompute_agent_to_agent(
    config: Config,
    namespace: str,
    topology: Mapping[str, list[str]] | None,
) -> Config:
    """Derive this namespace's allow entry from the full topology.

    Entries belonging to other namespaces are kept verbatim. A2A is only
    disabled when the resulting allow list is empty. The list is sorted.
    """
    a2a = _ensure_a2a(config)
    pattern = f"{namespace}-*"
    others = [p for p in a2a["allow"] if p != pattern]

    has_edges = bool(topology) and any(targets for targets in topology.values())

    if has_edges:
        a2a["enabled"] = True
        a2a["allow"] = sorted(others + [pattern])
    else:
        a2a["allow"] = sorted(others)
        if not a2a["allow"]:
            a2a["enabled"] = False

    return config


# ── Match objects ────────────────────────────────────────────────────


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def prune_match_object(match: Mapping[str, Any]) -> dict[str, Any]:
    """Drop empty fields from a binding match, recursively.

    Removes None and empty strings, empty-string array items, arrays left
    empty, and nested objects left without keys.
    """
    result: dict[str, Any] = {}
    for key, value in match.items():
        if _is_blank(value):
            continue
        if isinstance(value, Mapping):
            pruned = prune_match_object(value)
            if pruned:
                result[key] = pruned
        elif isinstance(value, (list, tuple)):
            kept = [v for v in value if not _is_blank(v)]
            if kept:
                result[key] = kept
        else:
            result[key] = value
    return result

