"""Tests for the formation state store."""

import json
import tempfile
from pathlib import Path

import pytest

from reef.models.state import (
    AgentState,
    AgentToAgentState,
    BindingRecord,
    CronJobState,
    FormationState,
    LegacyEdges,
    TrackedEdges,
)
from reef.sync.state_store import (
    AmbiguousFormationError,
    FormationNotFoundError,
    StateStore,
    state_from_dict,
    state_to_dict,
)


def _state(namespace="acme", name="support", **kwargs) -> FormationState:
    return FormationState(
        namespace=namespace,
        name=name,
        version="1.2.0",
        installed_at="2026-01-01T00:00:00+00:00",
        agents={
            "triage": AgentState(
                id=f"{namespace}-triage", slug="triage", workspace="/ws/triage",
                files=["SOUL.md"], model="gpt-x", config_tools={"allow": ["web"]},
            )
        },
        bindings=[BindingRecord(agent_id=f"{namespace}-triage", match={"channel": "slack"})],
        cron_jobs=[CronJobState(id="j1", name="reef:acme:triage-0", agent_slug="triage",
                                schedule="0 9 * * *", prompt="Morning")],
        variables={"TOKEN": "$TOKEN", "TEAM": "blue"},
        file_hashes={f"{namespace}-triage:SOUL.md": "abc"},
        **kwargs,
    )


def test_save_and_load():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        path = store.save(_state(agent_to_agent=AgentToAgentState(was_enabled=False, allow_added=True)))

        assert path.name == "acme--support.state.json"
        assert path.read_text().endswith("\n")

        loaded = store.load("acme", "support")
        assert loaded.agents["triage"].config_tools == {"allow": ["web"]}
        assert loaded.cron_jobs[0].recreatable
        assert loaded.agent_to_agent.allow_added
        assert loaded.bindings[0].channel == "slack"

def test_failed_save_keeps_previous_record():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        path = store.save(_state())
        before = path.read_text()

        with pytest.raises(TypeError):
            store.save(_state(source_path=object()))

        assert path.read_text() == before
        assert store.load("acme", "support").version == "1.2.0"


def test_save_leaves_no_temp_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        store.save(_state())
        store.save(_state())
        assert [p.name for p in Path(tmpdir).iterdir()] == ["acme--support.state.json"]



def test_load_missing_returns_none():
    with tempfile.TemporaryDirectory() as tmpdir:
        assert StateStore(tmpdir).load("acme", "nope") is None


def test_on_disk_keys_are_camel_case():
    data = state_to_dict(_state(edges=TrackedEdges({"lead": ["worker"]})))
    assert data["installedAt"] == "2026-01-01T00:00:00+00:00"
    assert data["cronJobs"][0]["agentSlug"] == "triage"
    assert data["fileHashes"] == {"acme-triage:SOUL.md": "abc"}
    assert data["agents"]["triage"]["configTools"] == {"allow": ["web"]}
    assert data["agentToAgentEdges"] == {"lead": ["worker"]}


def test_absent_edges_load_as_legacy():
    data = state_to_dict(_state())
    assert "agentToAgentEdges" not in data
    assert isinstance(state_from_dict(data).edges, LegacyEdges)


def test_empty_edges_load_as_tracked():
    data = state_to_dict(_state())
    data["agentToAgentEdges"] = {}
    edges = state_from_dict(data).edges
    assert isinstance(edges, TrackedEdges)
    assert edges.edges == {}


def test_delete():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        store.save(_state())
        store.delete("acme", "support")
        store.delete("acme", "support")
        assert store.load("acme", "support") is None


def test_list_all_skips_corrupt_records():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        store.save(_state())
        (Path(tmpdir) / "bad--bad.state.json").write_text("{not json")
        (Path(tmpdir) / "partial--x.state.json").write_text(json.dumps({"name": "x"}))

        states = store.list_all()
        assert [s.qualified_name for s in states] == ["acme/support"]


def test_resolve_by_qualified_and_bare_name():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        store.save(_state())
        assert store.resolve("acme/support").namespace == "acme"
        assert store.resolve("support").namespace == "acme"

        with pytest.raises(FormationNotFoundError):
            store.resolve("acme/other")
        with pytest.raises(FormationNotFoundError):
            store.resolve("other")


def test_resolve_ambiguous_bare_name():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        store.save(_state("acme"))
        store.save(_state("beta"))

        with pytest.raises(AmbiguousFormationError) as excinfo:
            store.resolve("support")
        assert {s.namespace for s in excinfo.value.matches} == {"acme", "beta"}


def test_integrity_errors():
    state = _state()
    assert state.integrity_errors() == []

    state.file_hashes["ghost:SOUL.md"] = "x"
    state.bindings.append(BindingRecord(agent_id="ghost", match={"channel": "discord"}))
    errors = state.integrity_errors()
    assert len(errors) == 2
    assert any("ghost:SOUL.md" in e for e in errors)
