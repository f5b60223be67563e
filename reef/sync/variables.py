"""Variable resolution for manifests, without prompting.

Precedence, highest first: explicit overrides, the formation's ``.env``
file, the process environment, the value recorded in state, the declared
default. Required variables left unresolved are reported as missing.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values

from reef.models.manifest import VariableSpec

SENSITIVE_PREFIX = "$"


@dataclass
class VariableResolution:
    resolved: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)


def is_env_placeholder(value: str) -> bool:
    """State stores sensitive values as ``$NAME``, resolved from the environment at use time."""
    return value.startswith(SENSITIVE_PREFIX)


def parse_overrides(pairs: list[str] | tuple[str, ...] | None) -> dict[str, str]:
    """``["A=1", "B=x=y"]`` -> ``{"A": "1", "B": "x=y"}``. Entries without ``=`` are ignored."""
    overrides = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if sep:
            overrides[key] = value
    return overrides


def resolve_variables(
    variables: Mapping[str, VariableSpec],
    formation_dir: str | Path,
    overrides: Mapping[str, str] | None = None,
    env_file: str | Path | None = None,
    use_env_file: bool = True,
    env: Mapping[str, str] | None = None,
    state_values: Mapping[str, str] | None = None,
    skip: set[str] | None = None,
) -> VariableResolution:
    e = os.environ if env is None else env
    overrides = overrides or {}
    state_values = state_values or {}
    skip = skip or set()

    file_values: dict[str, str] = {}
    if use_env_file:
        path = Path(env_file) if env_file else Path(formation_dir) / ".env"
        if path.is_file():
            file_values = {k: v for k, v in dotenv_values(path).items() if v is not None}

    result = VariableResolution()
    for name, spec in variables.items():
        if name in skip:
            continue
        if name in overrides:
            result.resolved[name] = overrides[name]
        elif name in file_values:
            result.resolved[name] = file_values[name]
        elif name in e:
            result.resolved[name] = e[name]
        elif name in state_values:
            result.resolved[name] = state_values[name]
        elif spec.default is not None:
            result.resolved[name] = _stringify(spec.default)
        elif spec.required:
            result.missing.append(name)

    return result


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
