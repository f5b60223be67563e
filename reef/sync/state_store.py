"""State store — durable records of what was last applied, per formation.

One JSON document per ``(namespace, name)``. The record is created by the
first successful apply, rewritten by every update or repair that changes
something, and deleted on uninstall.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from reef.models.state import (
    AgentState,
    AgentToAgentState,
    BindingRecord,
    CronJobState,
    FormationState,
    LegacyEdges,
    TrackedEdges,
)

logger = logging.getLogger(__name__)


class FormationNotFoundError(Exception):
    """No state record matches the identifier; the formation is not installed."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f'Formation "{identifier}" not found.')


class AmbiguousFormationError(Exception):
    """A bare name matched formations in more than one namespace."""

    def __init__(self, name: str, matches: list[FormationState]):
        self.matches = matches
        super().__init__(f'Multiple formations named "{name}" found.')


class StateStore:
    """Stores and retrieves formation state records in one directory."""

    SUFFIX = ".state.json"

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)

    def path_for(self, namespace: str, name: str) -> Path:
        return self.state_dir / f"{namespace}--{name}{self.SUFFIX}"

    def load(self, namespace: str, name: str) -> FormationState | None:
        path = self.path_for(namespace, name)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return state_from_dict(json.load(f))

    def save(self, state: FormationState) -> Path:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(state.namespace, state.name)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(state_to_dict(state), indent=2) + "\n")
        os.replace(tmp_path, path)
        return path

    def delete(self, namespace: str, name: str) -> None:
        self.path_for(namespace, name).unlink(missing_ok=True)

    def list_all(self) -> list[FormationState]:
        """Every readable record; corrupt files are skipped."""
        if not self.state_dir.is_dir():
            return []

        states = []
        for path in sorted(self.state_dir.glob(f"*{self.SUFFIX}")):
            try:
                with open(path, encoding="utf-8") as f:
                    states.append(state_from_dict(json.load(f)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable state record %s: %s", path, e)
        return states

    def resolve(self, identifier: str) -> FormationState:
        """Find a formation by ``namespace/name`` or by a name unique across namespaces."""
        namespace, sep, name = identifier.partition("/")
        if sep:
            state = self.load(namespace, name)
            if state is None:
                raise FormationNotFoundError(identifier)
            return state

        matches = [s for s in self.list_all() if s.name == identifier]
        if not matches:
            raise FormationNotFoundError(identifier)
        if len(matches) > 1:
            raise AmbiguousFormationError(identifier, matches)
        return matches[0]


def state_to_dict(state: FormationState) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": state.name,
        "version": state.version,
        "namespace": state.namespace,
        "installedAt": state.installed_at,
        "agents": {slug: _agent_to_dict(agent) for slug, agent in state.agents.items()},
        "bindings": [b.to_config() for b in state.bindings],
        "cronJobs": [_job_to_dict(job) for job in state.cron_jobs],
        "variables": dict(state.variables),
        "fileHashes": dict(state.file_hashes),
    }
    if state.updated_at:
        data["updatedAt"] = state.updated_at
    if state.source_path:
        data["sourcePath"] = state.source_path
    if state.agent_to_agent is not None:
        data["agentToAgent"] = {
            "wasEnabled": state.agent_to_agent.was_enabled,
            "allowAdded": state.agent_to_agent.allow_added,
        }
    if isinstance(state.edges, TrackedEdges):
        data["agentToAgentEdges"] = {k: list(v) for k, v in state.edges.edges.items()}
    return data


def state_from_dict(data: dict[str, Any]) -> FormationState:
    a2a = data.get("agentToAgent")

    # Records written before edges were tracked carry no edge map at all
    if "agentToAgentEdges" in data:
        edges = TrackedEdges({k: list(v) for k, v in (data["agentToAgentEdges"] or {}).items()})
    else:
        edges = LegacyEdges()

    return FormationState(
        namespace=data["namespace"],
        name=data["name"],
        version=str(data["version"]),
        installed_at=data.get("installedAt", ""),
        updated_at=data.get("updatedAt", ""),
        agents={
            slug: _agent_from_dict(slug, agent)
            for slug, agent in (data.get("agents") or {}).items()
        },
        bindings=[
            BindingRecord(agent_id=b["agentId"], match=dict(b.get("match") or {}))
            for b in data.get("bindings") or []
        ],
        cron_jobs=[_job_from_dict(job) for job in data.get("cronJobs") or []],
        variables=dict(data.get("variables") or {}),
        file_hashes=dict(data.get("fileHashes") or {}),
        agent_to_agent=(
            AgentToAgentState(
                was_enabled=bool(a2a.get("wasEnabled")),
                allow_added=bool(a2a.get("allowAdded")),
            )
            if a2a is not None
            else None
        ),
        edges=edges,
        source_path=data.get("sourcePath", ""),
    )


def _agent_to_dict(agent: AgentState) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": agent.id,
        "slug": agent.slug,
        "workspace": agent.workspace,
        "files": list(agent.files),
    }
    if agent.model is not None:
        data["model"] = agent.model
    if agent.config_tools is not None:
        data["configTools"] = agent.config_tools
    if agent.config_sandbox is not None:
        data["configSandbox"] = agent.config_sandbox
    if agent.config_identity is not None:
        data["configIdentity"] = agent.config_identity
    if agent.config_skills is not None:
        data["configSkills"] = agent.config_skills
    return data


def _agent_from_dict(slug: str, data: dict[str, Any]) -> AgentState:
    return AgentState(
        id=data["id"],
        slug=data.get("slug", slug),
        workspace=data["workspace"],
        files=list(data.get("files") or []),
        model=data.get("model"),
        config_tools=data.get("configTools"),
        config_sandbox=data.get("configSandbox"),
        config_identity=data.get("configIdentity"),
        config_skills=data.get("configSkills"),
    )


def _job_to_dict(job: CronJobState) -> dict[str, Any]:
    data = {"id": job.id, "name": job.name, "agentSlug": job.agent_slug}
    if job.schedule is not None:
        data["schedule"] = job.schedule
    if job.timezone is not None:
        data["timezone"] = job.timezone
    if job.prompt is not None:
        data["prompt"] = job.prompt
    return data


def _job_from_dict(data: dict[str, Any]) -> CronJobState:
    return CronJobState(
        id=data["id"],
        name=data.get("name", ""),
        agent_slug=data.get("agentSlug", ""),
        schedule=data.get("schedule"),
        timezone=data.get("timezone"),
        prompt=data.get("prompt"),
    )
