"""Drift detection — divergence between the last-applied state and the live world.

Drift is checked against three observations:
1. The runtime config (agents, bindings, agent-to-agent allow pattern)
2. The agent workspaces on disk (tracked file hashes)
3. The scheduler's live cron jobs

Each diff is pure given its observation. An unreachable scheduler is
never evidence of drift: cron checks are then skipped, not failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Union

from reef.config.patcher import bindings_equal
from reef.gateway.client import GatewayClient, GatewayError
from reef.gateway.models import UNREACHABLE, CronJob, LiveJobs, Unreachable
from reef.models.state import BindingRecord, FormationState
from reef.utils.hashing import hash_file

logger = logging.getLogger(__name__)

LiveObservation = Union[LiveJobs, Unreachable, list, None]


class DiscrepancyKind:
    AGENT = "agent"
    BINDING = "binding"
    CRON = "cron"
    A2A = "a2a"
    FILE = "file"


class DiscrepancyType:
    MISSING = "missing"
    CHANGED = "changed"


@dataclass
class Discrepancy:
    """One drifted resource and how it can be repaired.

    ``fixable`` means the state record alone is enough to repair it;
    ``needs_source`` means the formation's source tree is required.
    """

    kind: str
    type: str
    description: str
    fixable: bool
    needs_source: bool
    agent_id: str | None = None
    binding: BindingRecord | None = None
    job_id: str | None = None
    relative_path: str | None = None
    workspace_missing: bool = False

    @property
    def fix_hint(self) -> str:
        if self.fixable:
            return "auto (from state)"
        if self.needs_source:
            return "--source required"
        return "manual"


def diff_state_vs_config(state: FormationState, config: Mapping[str, Any]) -> list[Discrepancy]:
    discrepancies = []
    listed_ids = {a.get("id") for a in ((config.get("agents") or {}).get("list") or [])}

    for agent in state.agents.values():
        if agent.id not in listed_ids:
            discrepancies.append(Discrepancy(
                kind=DiscrepancyKind.AGENT,
                type=DiscrepancyType.MISSING,
                description=f"{agent.slug} ({agent.id}) not in config",
                fixable=True,
                needs_source=False,
                agent_id=agent.id,
            ))

    config_bindings = config.get("bindings") or []
    for binding in state.bindings:
        if not any(bindings_equal(b, binding) for b in config_bindings):
            discrepancies.append(Discrepancy(
                kind=DiscrepancyKind.BINDING,
                type=DiscrepancyType.MISSING,
                description=f"{binding.channel} -> {binding.agent_id} not in config",
                fixable=True,
                needs_source=False,
                agent_id=binding.agent_id,
                binding=binding,
            ))

    if state.agent_to_agent is not None and state.agent_to_agent.allow_added:
        a2a = (config.get("tools") or {}).get("agentToAgent") or {}
        if state.allow_pattern not in (a2a.get("allow") or []):
            discrepancies.append(Discrepancy(
                kind=DiscrepancyKind.A2A,
                type=DiscrepancyType.MISSING,
                description=f'Agent-to-agent allow pattern "{state.allow_pattern}" not in config',
                fixable=True,
                needs_source=False,
            ))

    return discrepancies


def diff_state_vs_filesystem(state: FormationState) -> list[Discrepancy]:
    discrepancies = []

    for agent in state.agents.values():
        workspace = Path(agent.workspace)
        if not workspace.is_dir():
            discrepancies.append(Discrepancy(
                kind=DiscrepancyKind.FILE,
                type=DiscrepancyType.MISSING,
                description=f"Workspace {agent.workspace} missing",
                fixable=False,
                needs_source=True,
                agent_id=agent.id,
                workspace_missing=True,
            ))
            continue

        for relative_path, expected in sorted(state.hashes_for(agent.id).items()):
            path = workspace / relative_path
            if not path.is_file():
                discrepancies.append(Discrepancy(
                    kind=DiscrepancyKind.FILE,
                    type=DiscrepancyType.MISSING,
                    description=f"File {relative_path} missing from {agent.slug} workspace",
                    fixable=False,
                    needs_source=True,
                    agent_id=agent.id,
                    relative_path=relative_path,
                ))
            elif hash_file(path) != expected:
                discrepancies.append(Discrepancy(
                    kind=DiscrepancyKind.FILE,
                    type=DiscrepancyType.CHANGED,
                    description=f"File {relative_path} changed in {agent.slug} workspace",
                    fixable=False,
                    needs_source=True,
                    agent_id=agent.id,
                    relative_path=relative_path,
                ))

    return discrepancies


def diff_state_vs_cron(state: FormationState, live: LiveObservation) -> list[Discrepancy]:
    """Jobs recorded in state but absent from the scheduler.

    ``live`` is ``LiveJobs`` (or a plain job list) when the scheduler
    answered; ``UNREACHABLE`` or None yields no discrepancies.
    """
    if live is None or isinstance(live, Unreachable):
        return []

    if not isinstance(live, LiveJobs):
        live = LiveJobs([CronJob.from_dict(j) if isinstance(j, dict) else j for j in live])
    live_ids = live.ids

    discrepancies = []
    for job in state.cron_jobs:
        if job.id in live_ids:
            continue
        discrepancies.append(Discrepancy(
            kind=DiscrepancyKind.CRON,
            type=DiscrepancyType.MISSING,
            description=f"Cron job {job.name} ({job.id}) not found on Gateway",
            fixable=job.recreatable,
            needs_source=not job.recreatable,
            job_id=job.id,
        ))
    return discrepancies


def collect_discrepancies(
    state: FormationState,
    config: Mapping[str, Any],
    live: LiveObservation,
) -> list[Discrepancy]:
    """All discrepancies, config first, then files, then cron. No deduplication."""
    return [
        *diff_state_vs_config(state, config),
        *diff_state_vs_filesystem(state),
        *diff_state_vs_cron(state, live),
    ]


async def fetch_live_jobs(gateway_factory: Callable[[], GatewayClient]) -> LiveJobs | Unreachable:
    """Ask the scheduler for its jobs; any gateway failure means UNREACHABLE."""
    client = gateway_factory()
    try:
        await client.connect()
        jobs = await client.cron_list(include_disabled=True)
    except GatewayError as e:
        logger.warning("Gateway not reachable, cannot verify cron jobs: %s", e)
        return UNREACHABLE
    finally:
        await client.close()
    return LiveJobs(jobs)


@dataclass
class DriftReport:
    """Drift found for one formation."""

    state: FormationState
    discrepancies: list[Discrepancy] = field(default_factory=list)
    scheduler_reachable: bool | None = None

    @property
    def has_drift(self) -> bool:
        return len(self.discrepancies) > 0

    @property
    def fixable_count(self) -> int:
        return sum(1 for d in self.discrepancies if d.fixable)

    def summary(self) -> str:
        name = f"{self.state.qualified_name} v{self.state.version}"
        if not self.has_drift:
            return f"{name}: no drift detected"
        kinds = ", ".join(sorted({d.kind for d in self.discrepancies}))
        return f"{name}: DRIFT [{kinds}]"


class DriftDetector:
    """Gathers live observations for a formation and diffs them against its state."""

    def __init__(
        self,
        config: Mapping[str, Any],
        gateway_factory: Callable[[], GatewayClient] | None = None,
    ):
        self.config = config
        self.gateway_factory = gateway_factory

    async def observe_cron(self, state: FormationState) -> LiveJobs | Unreachable:
        if not state.cron_jobs:
            return LiveJobs()
        if self.gateway_factory is None:
            return UNREACHABLE
        return await fetch_live_jobs(self.gateway_factory)

    async def check(self, state: FormationState) -> DriftReport:
        live = await self.observe_cron(state)
        return DriftReport(
            state=state,
            discrepancies=collect_discrepancies(state, self.config, live),
            scheduler_reachable=not isinstance(live, Unreachable),
        )
