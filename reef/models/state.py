"""Last-applied state — the durable record of a formation's previous apply.

This record is the only anchor reconciliation has: without it no plan,
drift check or repair can run. Serialization lives in
``reef.sync.state_store``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class AgentState:
    """What was deployed for one agent, including a config snapshot for repair."""

    id: str
    slug: str
    workspace: str
    files: list[str] = field(default_factory=list)
    model: str | dict[str, Any] | None = None
    config_tools: dict[str, Any] | None = None
    config_sandbox: dict[str, Any] | None = None
    config_identity: dict[str, Any] | None = None
    config_skills: list[str] | None = None


@dataclass
class BindingRecord:
    """A binding as written to the runtime config."""

    agent_id: str
    match: dict[str, Any]

    @property
    def channel(self) -> str:
        return str(self.match.get("channel", ""))

    def to_config(self) -> dict[str, Any]:
        return {"agentId": self.agent_id, "match": self.match}


@dataclass
class CronJobState:
    id: str
    name: str
    agent_slug: str
    schedule: str | None = None
    timezone: str | None = None
    prompt: str | None = None

    @property
    def recreatable(self) -> bool:
        """True when enough was recorded to recreate the job without the manifest."""
        return bool(self.schedule and self.prompt)


@dataclass
class AgentToAgentState:
    was_enabled: bool = False
    allow_added: bool = False


@dataclass(frozen=True)
class LegacyEdges:
    """Record written before edges were tracked: the prior topology is unknown."""


@dataclass(frozen=True)
class TrackedEdges:
    """Record carrying the exact agent-to-agent topology that was applied."""

    edges: dict[str, list[str]] = field(default_factory=dict)


EdgeHistory = Union[LegacyEdges, TrackedEdges]


@dataclass
class FormationState:
    """The last successfully applied state of a formation."""

    namespace: str
    name: str
    version: str
    installed_at: str = ""
    updated_at: str = ""
    agents: dict[str, AgentState] = field(default_factory=dict)
    bindings: list[BindingRecord] = field(default_factory=list)
    cron_jobs: list[CronJobState] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)
    file_hashes: dict[str, str] = field(default_factory=dict)
    agent_to_agent: AgentToAgentState | None = None
    edges: EdgeHistory = field(default_factory=LegacyEdges)
    source_path: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def allow_pattern(self) -> str:
        return f"{self.namespace}-*"

    def agent_by_id(self, agent_id: str) -> AgentState | None:
        for agent in self.agents.values():
            if agent.id == agent_id:
                return agent
        return None

    def agent_by_slug(self, slug: str) -> AgentState | None:
        return self.agents.get(slug)

    def job_by_id(self, job_id: str) -> CronJobState | None:
        for job in self.cron_jobs:
            if job.id == job_id:
                return job
        return None

    def hashes_for(self, agent_id: str) -> dict[str, str]:
        """Return ``relative path -> hash`` for every file tracked for an agent."""
        prefix = f"{agent_id}:"
        return {
            key[len(prefix):]: value
            for key, value in self.file_hashes.items()
            if key.startswith(prefix)
        }

    def integrity_errors(self) -> list[str]:
        """List references to agents the record does not contain."""
        errors = []
        agent_ids = {a.id for a in self.agents.values()}

        for key in self.file_hashes:
            agent_id, sep, _ = key.partition(":")
            if not sep:
                errors.append(f"File hash key '{key}' has no agent id")
            elif agent_id not in agent_ids:
                errors.append(f"File hash key '{key}' references unknown agent '{agent_id}'")

        for binding in self.bindings:
            if binding.agent_id not in agent_ids:
                errors.append(
                    f"Binding on '{binding.channel}' references unknown agent '{binding.agent_id}'"
                )

        return errors


def file_hash_key(agent_id: str, relative_path: str) -> str:
    return f"{agent_id}:{relative_path}"
