"""Tests for gathering planner inputs from a candidate formation tree."""

import json
import tempfile
from pathlib import Path

import pytest

from reef.models.manifest import ManifestLoadError
from reef.models.state import AgentState, FormationState, TrackedEdges
from reef.sync.formation_diff import DiffValidationError, compute_formation_diff
from reef.sync.planner import ChangeType
from reef.sync.state_store import StateStore
from reef.utils.hashing import compute_file_hash

SECRET_HASH = "hash-of-deployed-secret-render"


def _formation(root: Path, **overrides) -> Path:
    manifest = {
        "name": "support",
        "version": "1.0.0",
        "namespace": "acme",
        "agents": {"triage": {"source": "agents/triage", "description": "Sorts requests"}},
        "variables": {
            "TEAM": {"default": "blue"},
            "API_KEY": {"required": True, "sensitive": True},
        },
    }
    manifest.update(overrides)
    root.mkdir(parents=True, exist_ok=True)
    (root / "reef.json").write_text(json.dumps(manifest))

    source = root / "agents" / "triage"
    source.mkdir(parents=True, exist_ok=True)
    (source / "SOUL.md").write_text("Team {{TEAM}} in {{namespace}}")
    (source / "secrets.md").write_text("key={{API_KEY}}")
    return root


def _installed(store: StateStore, namespace="acme", **kwargs) -> FormationState:
    state = FormationState(
        namespace=namespace,
        name="support",
        version="1.0.0",
        agents={"triage": AgentState(id=f"{namespace}-triage", slug="triage", workspace="/ws")},
        variables={"TEAM": "blue", "API_KEY": "$API_KEY"},
        file_hashes={
            f"{namespace}-triage:SOUL.md": compute_file_hash(f"Team blue in {namespace}".encode()),
            f"{namespace}-triage:secrets.md": SECRET_HASH,
        },
        edges=TrackedEdges(),
        **kwargs,
    )
    store.save(state)
    return state


def test_unchanged_formation_gives_empty_plan():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        _installed(store)
        root = _formation(Path(tmpdir) / "formation")

        result = compute_formation_diff(root, store, env={})

        assert result.plan.is_empty
        assert result.namespace == "acme"
        assert result.id_map == {"triage": "acme-triage"}
        assert result.resolved_vars["namespace"] == "acme"
        assert "API_KEY" not in result.resolved_vars
        assert result.new_file_hashes["acme-triage:secrets.md"] == SECRET_HASH


def test_variable_override_changes_rendered_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        _installed(store)
        root = _formation(Path(tmpdir) / "formation")

        result = compute_formation_diff(root, store, overrides={"TEAM": "red"}, env={})

        change = result.plan.agent("triage")
        assert change.type == ChangeType.UPDATE
        assert change.changed_files == ["SOUL.md"]


def test_env_file_is_read_unless_disabled():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        _installed(store)
        root = _formation(Path(tmpdir) / "formation")
        (root / ".env").write_text("TEAM=green\n")

        assert not compute_formation_diff(root, store, env={}).plan.is_empty
        assert compute_formation_diff(root, store, use_env_file=False, env={}).plan.is_empty


def test_non_utf8_text_file_is_decoded_lossily():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        _installed(store)
        root = _formation(Path(tmpdir) / "formation")
        (root / "agents" / "triage" / "notes.md").write_bytes(b"caf\xe9 menu")

        result = compute_formation_diff(root, store, env={})

        expected = compute_file_hash("caf\ufffd menu".encode("utf-8"))
        assert result.new_file_hashes["acme-triage:notes.md"] == expected
        assert result.plan.agent("triage").type == ChangeType.UNCHANGED


def test_agents_md_hashed_when_agent_has_edges():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        _installed(store)
        root = _formation(
            Path(tmpdir) / "formation",
            agents={
                "triage": {"source": "agents/triage"},
                "qa": {"source": "agents/qa", "description": "Checks answers"},
            },
            agentToAgent={"triage": ["qa"]},
        )

        result = compute_formation_diff(root, store, env={})

        assert "acme-triage:AGENTS.md" in result.new_file_hashes
        assert "acme-qa:AGENTS.md" not in result.new_file_hashes
        assert result.plan.agent("qa").type == ChangeType.ADD
        assert result.plan.agent("triage").changed_files == ["AGENTS.md"]
        assert [(c.source, c.target, c.type) for c in result.plan.a2a] == [("triage", "qa", ChangeType.ADD)]


def test_not_installed():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        root = _formation(Path(tmpdir) / "formation")

        with pytest.raises(DiffValidationError, match="is not installed"):
            compute_formation_diff(root, store, env={})


def test_installed_under_other_namespace():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        _installed(store, namespace="beta")
        root = _formation(Path(tmpdir) / "formation")

        with pytest.raises(DiffValidationError, match="--namespace beta"):
            compute_formation_diff(root, store, env={})

        assert compute_formation_diff(root, store, namespace="beta", env={}).plan.is_empty


def test_missing_required_variable():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        state = _installed(store)
        state.variables.pop("API_KEY")
        store.save(state)
        root = _formation(Path(tmpdir) / "formation")

        with pytest.raises(DiffValidationError, match="Missing required variables: API_KEY"):
            compute_formation_diff(root, store, env={})


def test_invalid_agent_id():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(Path(tmpdir) / "state")
        root = _formation(Path(tmpdir) / "formation", agents={"tri.age": {"source": "agents/triage"}})

        with pytest.raises(DiffValidationError, match="Agent ID validation failed"):
            compute_formation_diff(root, store, env={})


def test_missing_manifest():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(ManifestLoadError):
            compute_formation_diff(tmpdir, StateStore(tmpdir), env={})
