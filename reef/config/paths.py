"""Filesystem and endpoint locations of the orchestrator runtime.

Every resolver takes an optional ``env`` mapping (defaults to ``os.environ``)
so callers and tests control resolution explicitly.
"""

from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

STATE_DIR_NAME = ".openclaw"
CONFIG_FILENAMES = ("openclaw.json",)
REEF_STATE_SUBDIR = ".reef"
DEFAULT_GATEWAY_PORT = 18789

AGENT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def _env(env: Mapping[str, str] | None) -> Mapping[str, str]:
    return os.environ if env is None else env


def resolve_home_dir(env: Mapping[str, str] | None = None) -> Path:
    e = _env(env)
    raw = e.get("OPENCLAW_HOME") or e.get("HOME") or e.get("USERPROFILE")
    if raw:
        return Path(raw).expanduser()
    return Path.home()


def resolve_state_dir(env: Mapping[str, str] | None = None) -> Path:
    """The orchestrator's state directory (config, workspaces, reef records)."""
    explicit = _env(env).get("OPENCLAW_STATE_DIR")
    if explicit:
        return Path(explicit)
    return resolve_home_dir(env) / STATE_DIR_NAME


def resolve_config_path(env: Mapping[str, str] | None = None) -> Path:
    explicit = _env(env).get("OPENCLAW_CONFIG_PATH")
    if explicit:
        return Path(explicit)

    state_dir = resolve_state_dir(env)
    for filename in CONFIG_FILENAMES:
        candidate = state_dir / filename
        if candidate.exists():
            return candidate
    return state_dir / CONFIG_FILENAMES[0]


def resolve_workspace_path(agent_id: str, env: Mapping[str, str] | None = None) -> Path:
    return resolve_state_dir(env) / f"workspace-{agent_id}"


def resolve_reef_state_dir(env: Mapping[str, str] | None = None) -> Path:
    """Where formation state records are kept."""
    return resolve_state_dir(env) / REEF_STATE_SUBDIR


def resolve_gateway_url(
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Derive the local gateway URL from the runtime config and environment."""
    gateway = (config or {}).get("gateway") or {}
    tls = gateway.get("tls") or {}
    bind = gateway.get("bind") or "loopback"

    port = gateway.get("port")
    if port is None:
        env_port = _env(env).get("OPENCLAW_GATEWAY_PORT", "")
        port = int(env_port) if env_port.isdigit() else DEFAULT_GATEWAY_PORT

    scheme = "wss" if tls.get("enabled") else "ws"
    host = "127.0.0.1"
    if bind == "lan":
        host = _lan_address() or host
    return f"{scheme}://{host}:{port}"


def _lan_address() -> str | None:
    try:
        address = socket.gethostbyname(socket.gethostname())
    except OSError:
        return None
    return None if address.startswith("127.") else address


@dataclass
class AgentIdCheck:
    valid: bool
    normalized: str
    error: str = ""


@dataclass
class AgentIdValidation:
    valid: bool
    ids: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


def validate_agent_id(agent_id: str) -> AgentIdCheck:
    normalized = agent_id.lower()

    if "." in normalized:
        return AgentIdCheck(
            False, normalized,
            f'Agent ID "{agent_id}" contains dots; the runtime collapses dots to dashes. Use dashes instead.',
        )
    if len(normalized) > 64:
        return AgentIdCheck(
            False, normalized, f'Agent ID "{agent_id}" exceeds 64 characters ({len(normalized)}).'
        )
    if not AGENT_ID_RE.match(normalized):
        return AgentIdCheck(
            False, normalized, f'Agent ID "{agent_id}" does not match [a-z0-9][a-z0-9_-]{{0,63}}.'
        )
    return AgentIdCheck(True, normalized)


def validate_agent_ids(slugs: list[str], namespace: str) -> AgentIdValidation:
    """Map each slug to ``{namespace}-{slug}``, rejecting invalid or colliding ids."""
    result = AgentIdValidation(valid=True)
    seen: dict[str, str] = {}

    for slug in slugs:
        check = validate_agent_id(f"{namespace}-{slug}")
        if not check.valid:
            result.errors.append(check.error)
            continue

        existing = seen.get(check.normalized)
        if existing:
            result.errors.append(
                f'Slugs "{existing}" and "{slug}" produce the same normalized ID "{check.normalized}".'
            )
            continue

        seen[check.normalized] = slug
        result.ids[slug] = check.normalized

    result.valid = not result.errors
    return result
