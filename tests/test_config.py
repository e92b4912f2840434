from __future__ import annotations

from pathlib import Path

import pytest

from agentprep.config import ConfigError, load_config, parse_config, resolve_api_token


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_full_file(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "agentprep.toml",
        """
[api]
base_url = "https://forge.example/api/v1/"
token_env = "FORGE_TOKEN"
timeout_seconds = 5
page_size = 25
run_url = "https://ci.example/runs/1"

[trigger]
phrase = " /bot "
phrase_case_sensitive = false
labels = ["claude", "ai", "claude"]
assignee = "@Claude-Bot"

[auth]
policy = "write_access"
allowed_non_write_users = [" Alice ", "BOB"]

[agent]
use_commit_signing = true
allowed_tools = ["Read", "mcp__github_ci__get_logs"]
disallowed_tools = ["WebFetch"]
prompt = "Summarize"
append_system_prompt = "Be brief."

[modes]
issue_comment = "Agent"
""",
    )

    cfg = load_config(cfg_path)

    assert cfg.api.base_url == "https://forge.example/api/v1"
    assert cfg.api.token_env == "FORGE_TOKEN"
    assert cfg.api.override_token_env == "OVERRIDE_API_TOKEN"
    assert cfg.api.timeout_seconds == 5.0
    assert cfg.api.page_size == 25
    assert cfg.api.run_url == "https://ci.example/runs/1"
    assert cfg.trigger.phrase == "/bot"
    assert cfg.trigger.phrase_case_sensitive is False
    assert cfg.trigger.labels == frozenset({"claude", "ai"})
    assert cfg.trigger.assignee == "Claude-Bot"
    assert cfg.auth.allowed_non_write_users == frozenset({"alice", "bob"})
    assert cfg.auth.allows_without_write("ALICE") is True
    assert cfg.auth.allows_without_write("carol") is False
    assert cfg.agent.use_commit_signing is True
    assert cfg.agent.allowed_tools == ("Read", "mcp__github_ci__get_logs")
    assert cfg.agent.disallowed_tools == ("WebFetch",)
    assert cfg.agent.prompt == "Summarize"
    assert cfg.mode_for_event("issue_comment") == "agent"
    assert cfg.mode_for_event("issues") is None


def test_parse_config_applies_defaults() -> None:
    cfg = parse_config({"api": {"base_url": "https://forge.example"}})
    assert cfg.api.token_env == "API_TOKEN"
    assert cfg.api.page_size == 50
    assert cfg.api.run_url is None
    assert cfg.trigger.phrase == "@claude"
    assert cfg.trigger.phrase_case_sensitive is True
    assert cfg.trigger.assignee is None
    assert cfg.auth.policy == "write_access"
    assert cfg.agent.use_commit_signing is False
    assert cfg.agent.fingerprint_timeout_seconds == 10.0
    assert cfg.mode_overrides == ()


def test_load_config_missing_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.toml")
    with pytest.raises(ConfigError, match="not valid TOML"):
        load_config(_write(tmp_path / "bad.toml", "[api\nbase_url = 1"))


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({}, r"\[api\] is required"),
        ({"api": {}}, "base_url is required"),
        ({"api": {"base_url": "u", "page_size": 0}}, "page_size must be between"),
        ({"api": {"base_url": "u", "page_size": 101}}, "page_size must be between"),
        ({"api": {"base_url": "u", "page_size": True}}, "page_size must be an integer"),
        ({"api": {"base_url": "u", "timeout_seconds": 0}}, "timeout_seconds must be > 0"),
        ({"api": {"base_url": "u"}, "trigger": {"phrase": "  "}}, "trigger.phrase"),
        ({"api": {"base_url": "u"}, "trigger": {"labels": "claude"}}, "labels must be a list"),
        ({"api": {"base_url": "u"}, "trigger": {"labels": [""]}}, "non-empty strings"),
        ({"api": {"base_url": "u"}, "trigger": {"assignee": "@"}}, "non-empty login"),
        ({"api": {"base_url": "u"}, "auth": {"policy": "anyone"}}, "policy must be one of"),
        ({"api": {"base_url": "u"}, "agent": {"use_commit_signing": "yes"}}, "must be a boolean"),
        ({"api": {"base_url": "u"}, "agent": []}, r"\[agent\] must be a TOML table"),
        ({"api": {"base_url": "u"}, "modes": {"push": "tag"}}, "Unknown event 'push'"),
        ({"api": {"base_url": "u"}, "modes": {"issues": "review"}}, "modes.issues must be"),
    ],
)
def test_parse_config_rejects_invalid_values(data: dict[str, object], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(data)


def test_resolve_api_token_prefers_override() -> None:
    cfg = parse_config({"api": {"base_url": "u"}})

    assert resolve_api_token(cfg, {"API_TOKEN": "a", "OVERRIDE_API_TOKEN": " o "}) == ("o", True)
    assert resolve_api_token(cfg, {"API_TOKEN": "a", "OVERRIDE_API_TOKEN": ""}) == ("a", False)
    with pytest.raises(ConfigError, match="API_TOKEN environment variable is required"):
        resolve_api_token(cfg, {"API_TOKEN": "  "})
