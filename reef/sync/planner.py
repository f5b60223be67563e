"""Migration planner — what must change to move a formation to a new manifest.

Compares the desired manifest against the last-applied state. Pure: no I/O,
and the same inputs always produce the same plan. The caller supplies the
freshly computed file hashes and resolved variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from reef.config.patcher import bindings_equal, prune_match_object
from reef.models.manifest import CronSpec, Manifest
from reef.models.state import BindingRecord, CronJobState, FormationState, LegacyEdges
from reef.utils.templates import has_tokens, interpolate


class ChangeType:
    ADD = "add"
    REMOVE = "remove"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    REAPPLY = "reapply"


@dataclass
class AgentChange:
    slug: str
    agent_id: str
    type: str
    changed_files: list[str] = field(default_factory=list)


@dataclass
class BindingChange:
    binding: BindingRecord
    type: str


@dataclass
class CronChange:
    type: str
    name: str
    agent_slug: str
    old: CronJobState | None = None
    new: CronSpec | None = None


@dataclass
class A2aChange:
    type: str
    source: str
    target: str


@dataclass
class VersionChange:
    old: str
    new: str


@dataclass
class MigrationPlan:
    """Every change between the last-applied state and the desired manifest."""

    agents: list[AgentChange] = field(default_factory=list)
    bindings: list[BindingChange] = field(default_factory=list)
    cron: list[CronChange] = field(default_factory=list)
    a2a: list[A2aChange] = field(default_factory=list)
    version_change: VersionChange | None = None

    @property
    def is_empty(self) -> bool:
        return (
            all(a.type == ChangeType.UNCHANGED for a in self.agents)
            and not self.bindings
            and not self.cron
            and not self.a2a
            and self.version_change is None
        )

    def agent(self, slug: str) -> AgentChange | None:
        for change in self.agents:
            if change.slug == slug:
                return change
        return None


def cron_job_name(namespace: str, agent_slug: str, index: int) -> str:
    return f"reef:{namespace}:{agent_slug}-{index}"


def compute_migration_plan(
    state: FormationState,
    manifest: Manifest,
    namespace: str,
    id_map: Mapping[str, str],
    new_file_hashes: Mapping[str, str],
    resolved_vars: Mapping[str, str] | None = None,
) -> MigrationPlan:
    """Diff ``manifest`` against ``state``.

    Args:
        state: The last-applied state.
        manifest: The desired manifest.
        namespace: Namespace the formation is installed under.
        id_map: Agent slug to agent id.
        new_file_hashes: ``"{agentId}:{relPath}" -> sha256`` for the candidate tree.
        resolved_vars: Variable values used to resolve binding templates.
    """
    return MigrationPlan(
        agents=_plan_agents(state, manifest, id_map, new_file_hashes),
        bindings=_plan_bindings(state, manifest, id_map, resolved_vars or {}),
        cron=_plan_cron(state, manifest, namespace),
        a2a=_plan_a2a(state, manifest),
        version_change=(
            VersionChange(old=state.version, new=manifest.version)
            if state.version != manifest.version
            else None
        ),
    )


def _plan_agents(
    state: FormationState,
    manifest: Manifest,
    id_map: Mapping[str, str],
    new_file_hashes: Mapping[str, str],
) -> list[AgentChange]:
    added, kept, removed = [], [], []

    for slug in manifest.agents:
        agent_id = id_map.get(slug, slug)
        if slug not in state.agents:
            added.append(AgentChange(slug=slug, agent_id=agent_id, type=ChangeType.ADD))
            continue

        changed = _changed_files(state.hashes_for(agent_id), agent_id, new_file_hashes)
        if changed:
            kept.append(AgentChange(slug, agent_id, ChangeType.UPDATE, changed))
        else:
            kept.append(AgentChange(slug, agent_id, ChangeType.UNCHANGED))

    for slug, agent in state.agents.items():
        if slug not in manifest.agents:
            removed.append(AgentChange(slug=slug, agent_id=agent.id, type=ChangeType.REMOVE))

    return added + kept + removed


def _changed_files(
    old_hashes: Mapping[str, str],
    agent_id: str,
    new_file_hashes: Mapping[str, str],
) -> list[str]:
    prefix = f"{agent_id}:"
    new_hashes = {
        key[len(prefix):]: value
        for key, value in new_file_hashes.items()
        if key.startswith(prefix)
    }

    changed = [path for path, digest in new_hashes.items() if old_hashes.get(path) != digest]
    changed.extend(path for path in old_hashes if path not in new_hashes)
    return sorted(changed)


def resolve_match(match: Mapping[str, Any], variables: Mapping[str, str]) -> dict[str, Any]:
    """Interpolate every string in a binding match, then prune it."""

    def _resolve(value: Any) -> Any:
        if isinstance(value, str):
            return interpolate(value, variables)
        if isinstance(value, Mapping):
            return {k: _resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_resolve(v) for v in value]
        return value

    return prune_match_object(_resolve(match))


def _contains_tokens(value: Any) -> bool:
    if isinstance(value, str):
        return has_tokens(value)
    if isinstance(value, Mapping):
        return any(_contains_tokens(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_tokens(v) for v in value)
    return False


def resolve_manifest_bindings(
    manifest: Manifest,
    id_map: Mapping[str, str],
    variables: Mapping[str, str],
) -> list[BindingRecord]:
    """Manifest bindings as they would be written to the runtime config.

    Bindings whose channel is blank or still carries an unresolved token are
    dropped, as are bindings to unknown agents.
    """
    bindings = []
    for spec in manifest.bindings:
        match = resolve_match(spec.match, variables)
        channel = str(match.get("channel", "")).strip()
        if not channel or _contains_tokens(match):
            continue
        agent_id = id_map.get(spec.agent)
        if not agent_id:
            continue
        bindings.append(BindingRecord(agent_id=agent_id, match=match))
    return bindings


def _plan_bindings(
    state: FormationState,
    manifest: Manifest,
    id_map: Mapping[str, str],
    variables: Mapping[str, str],
) -> list[BindingChange]:
    desired = resolve_manifest_bindings(manifest, id_map, variables)
    changes = []

    for binding in desired:
        if not any(bindings_equal(old, binding) for old in state.bindings):
            changes.append(BindingChange(binding=binding, type=ChangeType.ADD))

    for old in state.bindings:
        if not any(bindings_equal(old, binding) for binding in desired):
            changes.append(BindingChange(binding=old, type=ChangeType.REMOVE))

    return changes


def _plan_cron(state: FormationState, manifest: Manifest, namespace: str) -> list[CronChange]:
    old_by_name = {job.name: job for job in state.cron_jobs}
    desired_names = set()
    changes = []

    for index, spec in enumerate(manifest.cron):
        name = cron_job_name(namespace, spec.agent, index)
        desired_names.add(name)
        old = old_by_name.get(name)

        if old is None:
            changes.append(CronChange(ChangeType.ADD, name, spec.agent, new=spec))
            continue

        # Older records may not retain schedule or prompt; absent means "unknown"
        schedule_changed = bool(old.schedule) and old.schedule != spec.schedule
        prompt_changed = bool(old.prompt) and old.prompt != spec.prompt
        timezone_changed = (old.timezone or None) != (spec.timezone or None)

        if schedule_changed or prompt_changed or timezone_changed:
            changes.append(CronChange(ChangeType.UPDATE, name, spec.agent, old=old, new=spec))

    for job in state.cron_jobs:
        if job.name not in desired_names:
            changes.append(CronChange(ChangeType.REMOVE, job.name, job.agent_slug, old=job))

    return changes


def _plan_a2a(state: FormationState, manifest: Manifest) -> list[A2aChange]:
    desired = manifest.agent_to_agent

    if isinstance(state.edges, LegacyEdges):
        # Prior topology unknown: resend every declared edge
        return [
            A2aChange(ChangeType.REAPPLY, source, target)
            for source, targets in desired.items()
            for target in targets
        ]

    applied = state.edges.edges
    changes = [
        A2aChange(ChangeType.ADD, source, target)
        for source, targets in desired.items()
        for target in targets
        if target not in applied.get(source, [])
    ]
    changes.extend(
        A2aChange(ChangeType.REMOVE, source, target)
        for source, targets in applied.items()
        for target in targets
        if target not in desired.get(source, [])
    )
    return changes
