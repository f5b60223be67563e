"""Repair engine — apply corrective writes for detected discrepancies.

Discrepancies are handled one at a time, in order. There is no rollback:
a failure is logged, counted, and the pass moves on, so an interrupted
repair leaves a resumable subset applied. The runtime config and the state
record are written once, at the end, and only if something changed.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping

from reef.config.patcher import (
    AgentEntry,
    RuntimeConfig,
    add_agent_entry,
    add_binding,
    recompute_agent_to_agent,
    set_agent_to_agent,
    write_config,
)
from reef.gateway.client import GatewayClient, GatewayError
from reef.gateway.models import build_cron_add_params
from reef.models.manifest import Manifest, ManifestLoadError, load_manifest
from reef.models.state import AgentState, BindingRecord, FormationState, TrackedEdges, file_hash_key
from reef.sync.drift import Discrepancy, DiscrepancyKind, DiscrepancyType
from reef.sync.state_store import StateStore
from reef.sync.variables import is_env_placeholder
from reef.utils.file_scanner import list_files
from reef.utils.hashing import compute_file_hash, is_binary
from reef.utils.templates import generate_agents_md, has_tokens, interpolate

logger = logging.getLogger(__name__)

AGENTS_MD = "AGENTS.md"


class RepairError(Exception):
    """A single discrepancy could not be repaired."""


@dataclass
class RepairOutcome:
    fully_repaired: int = 0
    partially_repaired: int = 0
    needs_source: int = 0
    failed: int = 0
    failures: list[str] = field(default_factory=list)
    config_written: bool = False
    state_written: bool = False

    def summary(self) -> str:
        parts = []
        if self.fully_repaired:
            parts.append(f"{self.fully_repaired} fully repaired")
        if self.partially_repaired:
            parts.append(f"{self.partially_repaired} partially repaired")
        if self.needs_source:
            parts.append(f"{self.needs_source} require --source")
        if self.failed:
            parts.append(f"{self.failed} failed")
        return ". ".join(parts) + "." if parts else "Nothing to repair."


@dataclass
class _RepairPass:
    """Mutable bookkeeping for one run of the engine."""

    config: dict
    state: FormationState
    source: Path | None
    outcome: RepairOutcome = field(default_factory=RepairOutcome)
    config_dirty: bool = False
    state_dirty: bool = False
    gateway: GatewayClient | None = None
    gateway_error: Exception | None = None
    manifest: Manifest | None = None


def build_safe_variables(
    state_vars: Mapping[str, str],
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Variables usable for re-interpolation during repair.

    ``$NAME`` placeholders are resolved from the environment; one whose
    variable is unset is omitted so its ``{{TOKEN}}`` stays in the output.
    """
    e = os.environ if env is None else env
    safe = {}
    for name, value in state_vars.items():
        if is_env_placeholder(value):
            resolved = e.get(value[1:])
            if resolved is not None:
                safe[name] = resolved
        else:
            safe[name] = value
    return safe


class RepairEngine:
    """Repairs a formation's drift using the state record and, optionally, its source tree.

    Parameters
    ----------
    store : StateStore
        Where the repaired state record is saved.
    runtime_config : RuntimeConfig
        The runtime config as read before the repair.
    gateway_factory : callable, optional
        Builds an unconnected GatewayClient; required to recreate cron jobs.
    env : mapping, optional
        Environment used to resolve sensitive variables and default paths.
    """

    def __init__(
        self,
        store: StateStore,
        runtime_config: RuntimeConfig,
        gateway_factory: Callable[[], GatewayClient] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.store = store
        self.runtime_config = runtime_config
        self.gateway_factory = gateway_factory
        self.env = env

    async def repair(
        self,
        discrepancies: list[Discrepancy],
        state: FormationState,
        source: str | Path | None = None,
    ) -> RepairOutcome:
        run = _RepairPass(
            config=copy.deepcopy(self.runtime_config.config),
            state=state,
            source=Path(source) if source else None,
        )

        try:
            for discrepancy in discrepancies:
                await self._repair_one(run, discrepancy)
        finally:
            if run.gateway is not None:
                await run.gateway.close()

        if run.config_dirty:
            write_config(self.runtime_config.path, run.config)
            self.runtime_config.config = run.config
            run.outcome.config_written = True

        if run.state_dirty:
            state.updated_at = datetime.now(timezone.utc).isoformat()
            self.store.save(state)
            run.outcome.state_written = True

        return run.outcome

    # -- dispatch ------------------------------------------------------------

    async def _repair_one(self, run: _RepairPass, d: Discrepancy) -> None:
        missing = d.type == DiscrepancyType.MISSING

        try:
            if d.kind == DiscrepancyKind.AGENT and missing and d.fixable:
                self._restore_agent(run, d)
            elif d.kind == DiscrepancyKind.BINDING and missing and d.fixable:
                self._restore_binding(run, d)
            elif d.kind == DiscrepancyKind.A2A and missing and d.fixable:
                self._restore_a2a(run)
            elif d.kind == DiscrepancyKind.CRON and missing and d.fixable:
                await self._restore_cron(run, d)
            elif d.kind == DiscrepancyKind.FILE and d.needs_source:
                self._repair_files(run, d)
                return
            elif not d.fixable:
                run.outcome.needs_source += 1
                return
            else:
                raise RepairError(f"No repair action for {d.kind} {d.type}")
        except RepairError as e:
            logger.warning("Could not repair %s: %s", d.description, e)
            run.outcome.failed += 1
            run.outcome.failures.append(f"{d.description}: {e}")
            return

        run.outcome.fully_repaired += 1

    # -- config --------------------------------------------------------------

    def _agent_for(self, run: _RepairPass, agent_id: str | None) -> AgentState:
        agent = run.state.agent_by_id(agent_id) if agent_id else None
        if agent is None:
            raise RepairError(f"agent {agent_id!r} is not in the state record")
        return agent

    def _restore_agent(self, run: _RepairPass, d: Discrepancy) -> None:
        agent = self._agent_for(run, d.agent_id)
        add_agent_entry(
            run.config,
            AgentEntry(
                id=agent.id,
                name=agent.slug,
                workspace=agent.workspace,
                model=agent.model if isinstance(agent.model, str) else None,
                tools=agent.config_tools,
                sandbox=agent.config_sandbox,
                identity=agent.config_identity,
                skills=agent.config_skills,
            ),
            env=self.env,
        )
        run.config_dirty = True

    def _restore_binding(self, run: _RepairPass, d: Discrepancy) -> None:
        binding = d.binding or self._find_binding(run.state, d)
        add_binding(run.config, binding)
        run.config_dirty = True

    @staticmethod
    def _find_binding(state: FormationState, d: Discrepancy) -> BindingRecord:
        for binding in state.bindings:
            if binding.agent_id == d.agent_id:
                return binding
        raise RepairError(f"no recorded binding for agent {d.agent_id!r}")

    def _restore_a2a(self, run: _RepairPass) -> None:
        edges = run.state.edges
        if isinstance(edges, TrackedEdges) and any(edges.edges.values()):
            recompute_agent_to_agent(run.config, run.state.namespace, edges.edges)
        else:
            set_agent_to_agent(run.config, run.state.namespace)
        run.config_dirty = True

    # -- cron ----------------------------------------------------------------

    async def _connected_gateway(self, run: _RepairPass) -> GatewayClient:
        if run.gateway is not None:
            return run.gateway
        if run.gateway_error is not None:
            raise RepairError(f"gateway unavailable: {run.gateway_error}")
        if self.gateway_factory is None:
            raise RepairError("no gateway configured")

        client = self.gateway_factory()
        try:
            await client.connect()
        except GatewayError as e:
            await client.close()
            run.gateway_error = e
            raise RepairError(f"gateway unavailable: {e}") from e
        run.gateway = client
        return client

    async def _restore_cron(self, run: _RepairPass, d: Discrepancy) -> None:
        job = run.state.job_by_id(d.job_id) if d.job_id else None
        if job is None or not job.recreatable:
            raise RepairError("cron job has no recorded schedule and prompt")

        agent = run.state.agent_by_slug(job.agent_slug)
        if agent is None:
            raise RepairError(f"cron job targets unknown agent {job.agent_slug!r}")

        gateway = await self._connected_gateway(run)
        params = build_cron_add_params(job.name, agent.id, job.schedule, job.prompt, job.timezone)
        try:
            result = await gateway.cron_add(params)
        except GatewayError as e:
            raise RepairError(f"cron.add failed: {e}") from e

        # The scheduler issues a new id; the old one is gone for good
        job.id = str(result["id"])
        run.state_dirty = True

    # -- files ---------------------------------------------------------------

    def _repair_files(self, run: _RepairPass, d: Discrepancy) -> None:
        try:
            agent = self._agent_for(run, d.agent_id)
        except RepairError as e:
            logger.warning("Could not repair %s: %s", d.description, e)
            run.outcome.failed += 1
            run.outcome.failures.append(f"{d.description}: {e}")
            return

        if run.source is None:
            if d.workspace_missing:
                # An empty workspace lets a later --source run fill it in
                Path(agent.workspace).mkdir(parents=True, exist_ok=True)
                run.outcome.partially_repaired += 1
            else:
                run.outcome.needs_source += 1
            return

        try:
            self._redeploy(run, agent, d)
        except (RepairError, ManifestLoadError, OSError, ValueError) as e:
            logger.warning("Could not redeploy %s: %s", d.description, e)
            run.outcome.failed += 1
            run.outcome.failures.append(f"{d.description}: {e}")
            return

        run.state_dirty = True
        run.outcome.fully_repaired += 1

    def _source_manifest(self, run: _RepairPass) -> Manifest:
        if run.manifest is None:
            run.manifest = load_manifest(run.source)
        return run.manifest

    def _redeploy(self, run: _RepairPass, agent: AgentState, d: Discrepancy) -> None:
        manifest = self._source_manifest(run)
        definition = manifest.agents.get(agent.slug)
        if definition is None:
            raise RepairError(f"agent {agent.slug!r} is not in the source manifest")

        source_dir = run.source / definition.source
        workspace = Path(agent.workspace)
        workspace.mkdir(parents=True, exist_ok=True)
        variables = build_safe_variables(run.state.variables, self.env)

        if d.workspace_missing:
            paths = list_files(source_dir)
            if manifest.agent_to_agent.get(agent.slug) and AGENTS_MD not in paths:
                paths.append(AGENTS_MD)
        elif d.relative_path:
            paths = [d.relative_path]
        else:
            raise RepairError("discrepancy names no file")

        for relative_path in paths:
            src = source_dir / relative_path
            if src.is_file():
                data = _render(src.read_bytes(), variables)
            elif relative_path == AGENTS_MD:
                data = generate_agents_md(manifest, agent.slug, run.state.namespace).encode("utf-8")
            else:
                raise RepairError(f"{relative_path} is not in the source tree")

            dest = workspace / relative_path
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
            run.state.file_hashes[file_hash_key(agent.id, relative_path)] = compute_file_hash(data)


def _render(raw: bytes, variables: Mapping[str, str]) -> bytes:
    """Binary content verbatim; text with its tokens interpolated."""
    if is_binary(raw):
        return raw
    text = raw.decode("utf-8", errors="replace")
    if has_tokens(text):
        text = interpolate(text, variables)
    return text.encode("utf-8")
