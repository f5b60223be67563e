"""Formation diff — gather the planner's inputs for a candidate formation tree.

Loads the manifest, resolves the namespace and agent ids, finds the
installed state record, resolves variables without prompting, and hashes
the files the candidate would deploy. The resulting plan is pure data; no
part of the live world is touched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from reef.config.paths import validate_agent_ids
from reef.models.manifest import Manifest, load_manifest
from reef.models.state import FormationState, file_hash_key
from reef.sync.planner import MigrationPlan, compute_migration_plan
from reef.sync.state_store import StateStore
from reef.sync.variables import is_env_placeholder, resolve_variables
from reef.utils.file_scanner import list_files
from reef.utils.hashing import compute_file_hash, is_binary
from reef.utils.templates import build_tools_list, generate_agents_md, has_tokens, interpolate

logger = logging.getLogger(__name__)


class DiffValidationError(Exception):
    """The candidate formation cannot be diffed against what is installed."""


@dataclass
class DiffResult:
    plan: MigrationPlan
    manifest: Manifest
    state: FormationState
    namespace: str
    id_map: dict[str, str] = field(default_factory=dict)
    new_file_hashes: dict[str, str] = field(default_factory=dict)
    resolved_vars: dict[str, str] = field(default_factory=dict)


def compute_formation_diff(
    formation_path: str | Path,
    store: StateStore,
    namespace: str | None = None,
    overrides: Mapping[str, str] | None = None,
    use_env_file: bool = True,
    env: Mapping[str, str] | None = None,
) -> DiffResult:
    formation_path = Path(formation_path)
    manifest = load_manifest(formation_path)
    namespace = namespace or manifest.namespace

    validation = validate_agent_ids(list(manifest.agents), namespace)
    if not validation.valid:
        raise DiffValidationError(f"Agent ID validation failed: {'; '.join(validation.errors)}")

    state = _installed_state(store, namespace, manifest.name)

    integrity = state.integrity_errors()
    if integrity:
        raise DiffValidationError(f"State record is inconsistent: {'; '.join(integrity)}")

    # Sensitive values live in state only as $NAME placeholders; they are
    # already deployed, so the resolver must not ask for them again.
    deployed_sensitive = set()
    state_values = {}
    for name in manifest.variables:
        value = state.variables.get(name)
        if value is None:
            continue
        if is_env_placeholder(value):
            deployed_sensitive.add(name)
        else:
            state_values[name] = value

    resolution = resolve_variables(
        manifest.variables,
        formation_path,
        overrides=overrides,
        use_env_file=use_env_file,
        env=env,
        state_values=state_values,
        skip=deployed_sensitive,
    )
    if resolution.missing:
        raise DiffValidationError(
            f"Missing required variables: {', '.join(resolution.missing)}. "
            "Use --set KEY=VALUE or set them in .env / environment."
        )

    resolved_vars = dict(resolution.resolved)
    resolved_vars["namespace"] = namespace

    new_file_hashes = _hash_candidate_tree(
        formation_path, manifest, namespace, validation.ids, state, resolved_vars, deployed_sensitive
    )

    plan = compute_migration_plan(
        state, manifest, namespace, validation.ids, new_file_hashes, resolved_vars
    )
    return DiffResult(
        plan=plan,
        manifest=manifest,
        state=state,
        namespace=namespace,
        id_map=validation.ids,
        new_file_hashes=new_file_hashes,
        resolved_vars=resolved_vars,
    )


def _installed_state(store: StateStore, namespace: str, name: str) -> FormationState:
    state = store.load(namespace, name)
    if state is not None:
        return state

    by_name = [s for s in store.list_all() if s.name == name]
    if len(by_name) == 1 and by_name[0].namespace != namespace:
        other = by_name[0].namespace
        raise DiffValidationError(
            f'Formation installed under namespace "{other}" but resolved namespace is '
            f'"{namespace}". Use --namespace {other} to diff.'
        )
    raise DiffValidationError(f'Formation "{namespace}/{name}" is not installed.')


def _hash_candidate_tree(
    formation_path: Path,
    manifest: Manifest,
    namespace: str,
    id_map: Mapping[str, str],
    state: FormationState,
    resolved_vars: Mapping[str, str],
    deployed_sensitive: set[str],
) -> dict[str, str]:
    hashes: dict[str, str] = {}

    for slug, definition in manifest.agents.items():
        agent_id = id_map[slug]
        source_dir = formation_path / definition.source
        if not source_dir.is_dir():
            # A new agent may not have its source tree yet
            logger.debug("Source directory %s for agent %s does not exist", source_dir, slug)

        agent_vars = {
            **resolved_vars,
            "tools": build_tools_list(definition.tool_names, manifest.skills),
        }

        for relative_path in list_files(source_dir):
            key = file_hash_key(agent_id, relative_path)
            raw = (source_dir / relative_path).read_bytes()
            if is_binary(raw):
                hashes[key] = compute_file_hash(raw)
                continue

            text = raw.decode("utf-8", errors="replace")
            if has_tokens(text):
                uses_sensitive = any(f"{{{{{name}}}}}" in text for name in deployed_sensitive)
                if uses_sensitive and key in state.file_hashes:
                    # Real value unknown here; assume the deployed render still matches
                    hashes[key] = state.file_hashes[key]
                    continue
                text = interpolate(text, agent_vars)
            hashes[key] = compute_file_hash(text.encode("utf-8"))

        if manifest.agent_to_agent.get(slug):
            agents_md = generate_agents_md(manifest, slug, namespace)
            hashes[file_hash_key(agent_id, "AGENTS.md")] = compute_file_hash(agents_md.encode("utf-8"))

    return hashes
