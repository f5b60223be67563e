"""Tests for runtime config patching."""

import json
import tempfile
from pathlib import Path

from reef.config.patcher import (
    AgentEntry,
    add_agent_entry,
    add_binding,
    bindings_equal,
    prune_match_object,
    read_config,
    recompute_agent_to_agent,
    remove_agent_entry,
    remove_binding,
    set_agent_to_agent,
    write_config,
)
from reef.models.state import BindingRecord


# --- Document I/O Tests ---


def test_read_missing_config_gives_skeleton():
    with tempfile.TemporaryDirectory() as tmpdir:
        runtime = read_config(Path(tmpdir) / "openclaw.json")
        assert runtime.config == {"agents": {"list": []}, "bindings": []}


def test_write_config_keeps_backup_and_unknown_keys():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "openclaw.json"
        path.write_text(json.dumps({"agents": {"list": []}, "custom": {"keep": 1}}))

        runtime = read_config(path)
        add_binding(runtime.config, {"agentId": "acme-a", "match": {"channel": "slack"}})
        write_config(path, runtime.config)

        written = json.loads(path.read_text())
        assert written["custom"] == {"keep": 1}
        assert written["bindings"][0]["agentId"] == "acme-a"
        assert path.read_text().endswith("\n")
        assert json.loads((Path(tmpdir) / "openclaw.json.bak").read_text())["custom"] == {"keep": 1}
        assert not (Path(tmpdir) / "openclaw.json.tmp").exists()


def test_read_config_with_env_refs_still_loads(caplog):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "openclaw.json"
        path.write_text(json.dumps({"gateway": {"auth": {"token": "${TOKEN}"}}}))

        runtime = read_config(path)
        assert runtime.config["gateway"]["auth"]["token"] == "${TOKEN}"
        assert "$include or ${VAR}" in caplog.text


# --- Agent Tests ---


def test_add_agent_seeds_main_and_is_idempotent():
    env = {"OPENCLAW_STATE_DIR": "/state"}
    config = {"agents": {"list": []}}
    entry = AgentEntry(id="acme-triage", name="triage", workspace="/ws", model="gpt-x")

    add_agent_entry(config, entry, env=env)
    add_agent_entry(config, AgentEntry(id=" ACME-Triage "), env=env)

    ids = [a["id"] for a in config["agents"]["list"]]
    assert ids == ["main", "acme-triage"]
    assert config["agents"]["list"][0]["default"] is True
    assert config["agents"]["list"][1] == {
        "id": "acme-triage", "name": "triage", "workspace": "/ws", "model": "gpt-x",
    }


def test_add_agent_defaults_workspace():
    config = {}
    add_agent_entry(config, AgentEntry(id="main"), env={"OPENCLAW_STATE_DIR": "/state"})
    assert config["agents"]["list"] == [{"id": "main", "workspace": "/state/workspace-main"}]


def test_remove_agent():
    config = {"agents": {"list": [{"id": "acme-a"}, {"id": "acme-b"}]}}
    remove_agent_entry(config, "acme-b")
    assert [a["id"] for a in config["agents"]["list"]] == ["acme-a"]


# --- Binding Tests ---


def test_bindings_equal_ignores_key_order_and_blanks():
    a = {"agentId": "x", "match": {"channel": "slack", "peer": {"kind": "channel", "id": "C1"}}}
    b = BindingRecord(agent_id="x", match={"peer": {"id": "C1", "kind": "channel"}, "channel": "slack", "accountId": ""})
    assert bindings_equal(a, b)
    assert not bindings_equal(a, {"agentId": "y", "match": a["match"]})


def test_add_binding_idempotent_and_remove():
    config = {}
    binding = BindingRecord(agent_id="x", match={"channel": "slack"})
    add_binding(config, binding)
    add_binding(config, {"agentId": "x", "match": {"channel": "slack", "guildId": None}})
    assert len(config["bindings"]) == 1

    remove_binding(config, binding)
    assert config["bindings"] == []


# --- Match Pruning Tests ---


def test_prune_match_object_drops_empty_values():
    match = {
        "channel": "slack",
        "accountId": "",
        "guildId": None,
        "roles": ["", "admin", None],
        "teams": [""],
        "peer": {"id": "", "kind": None},
    }
    assert prune_match_object(match) == {"channel": "slack", "roles": ["admin"]}


def test_prune_match_object_is_idempotent():
    match = {"channel": "slack", "peer": {"kind": "dm", "id": "U1", "extra": {"x": ""}}, "roles": ["a", ""]}
    once = prune_match_object(match)
    assert prune_match_object(once) == once


# --- Agent-to-agent Tests ---


def test_set_agent_to_agent_enables_and_adds_pattern_once():
    config = {}
    set_agent_to_agent(config, "acme")
    set_agent_to_agent(config, "acme")
    assert config["tools"]["agentToAgent"] == {"enabled": True, "allow": ["acme-*"]}


def test_recompute_keeps_other_namespaces():
    config = {"tools": {"agentToAgent": {"enabled": True, "allow": ["zeta-*", "acme-*", "beta-*"]}}}
    recompute_agent_to_agent(config, "acme", {})

    a2a = config["tools"]["agentToAgent"]
    assert a2a["allow"] == ["beta-*", "zeta-*"]
    assert a2a["enabled"] is True


def test_recompute_disables_only_when_allow_empty():
    config = {"tools": {"agentToAgent": {"enabled": True, "allow": ["acme-*"]}}}
    recompute_agent_to_agent(config, "acme", {"lead": []})
    assert config["tools"]["agentToAgent"] == {"enabled": False, "allow": []}


def test_recompute_with_edges_adds_sorted_pattern():
    config = {"tools": {"agentToAgent": {"enabled": False, "allow": ["zeta-*"]}}}
    recompute_agent_to_agent(config, "acme", {"lead": ["worker"]})
    assert config["tools"]["agentToAgent"] == {"enabled": True, "allow": ["acme-*", "zeta-*"]}

