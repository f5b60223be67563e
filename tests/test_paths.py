"""Tests for runtime path and endpoint resolution."""

import tempfile
from pathlib import Path

from reef.config.paths import (
    resolve_config_path,
    resolve_gateway_url,
    resolve_reef_state_dir,
    resolve_state_dir,
    resolve_workspace_path,
    validate_agent_id,
    validate_agent_ids,
)


def test_state_dir_resolution():
    assert resolve_state_dir({"OPENCLAW_STATE_DIR": "/srv/claw"}) == Path("/srv/claw")
    assert resolve_state_dir({"OPENCLAW_HOME": "/home/ops"}) == Path("/home/ops/.openclaw")
    assert resolve_state_dir({"HOME": "/home/me"}) == Path("/home/me/.openclaw")


def test_derived_paths():
    env = {"OPENCLAW_STATE_DIR": "/srv/claw"}
    assert resolve_workspace_path("acme-triage", env) == Path("/srv/claw/workspace-acme-triage")
    assert resolve_reef_state_dir(env) == Path("/srv/claw/.reef")


def test_config_path_resolution():
    assert resolve_config_path({"OPENCLAW_CONFIG_PATH": "/etc/claw.json"}) == Path("/etc/claw.json")
    with tempfile.TemporaryDirectory() as tmpdir:
        assert resolve_config_path({"OPENCLAW_STATE_DIR": tmpdir}) == Path(tmpdir) / "openclaw.json"


def test_gateway_url():
    assert resolve_gateway_url({}, {}) == "ws://127.0.0.1:18789"
    assert resolve_gateway_url({}, {"OPENCLAW_GATEWAY_PORT": "19001"}) == "ws://127.0.0.1:19001"
    config = {"gateway": {"port": 20000, "tls": {"enabled": True}}}
    assert resolve_gateway_url(config, {"OPENCLAW_GATEWAY_PORT": "19001"}) == "wss://127.0.0.1:20000"


def test_validate_agent_id():
    assert validate_agent_id("Acme-Triage").valid
    assert validate_agent_id("Acme-Triage").normalized == "acme-triage"
    assert "dots" in validate_agent_id("acme.triage").error
    assert "exceeds 64" in validate_agent_id("a" * 65).error
    assert not validate_agent_id("-acme").valid


def test_validate_agent_ids_detects_collisions():
    result = validate_agent_ids(["triage", "Triage", "qa"], "acme")
    assert not result.valid
    assert result.ids == {"triage": "acme-triage", "qa": "acme-qa"}
    assert "same normalized ID" in result.errors[0]
