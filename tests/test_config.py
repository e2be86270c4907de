"""Tests for Config getters and fallbacks."""

from pathlib import Path

import yaml

from foreman.config import Config


def _config(tmp_path, settings, env=None):
    config_dir = tmp_path / "cfg"
    config_dir.mkdir()
    (config_dir / "settings.yaml").write_text(yaml.safe_dump(settings))
    if env:
        (config_dir / ".env").write_text(env)
    return Config(config_dir)


def test_defaults(config):
    assert config.provider_type == "cli"
    assert config.provider_cli_path == "claude"
    assert config.agent_max_iterations == 5
    assert config.git_main_branch == "main"
    assert config.git_review_branch == "review"
    assert config.git_branch_convention == "task/{task_id}-{slug}"
    assert config.git_protected_branches == ["main", "master"]
    assert config.autonomous_strategy == "dependency"
    assert config.autonomous_max_tasks is None
    assert config.autonomous_merge_to_review is True
    assert config.state_dir(Path("/repo")) == Path("/repo/.foreman")


def test_values_from_settings(tmp_path):
    config = _config(tmp_path, {
        "provider": {"type": "http", "model": "gpt-test", "timeout_seconds": 60},
        "agent": {"max_iterations": 8},
        "git": {"main_branch": "trunk", "protected_branches": ["trunk"]},
        "autonomous": {"strategy": "priority", "max_tasks": 3, "stop_on_blocking": True},
        "state_dir_name": ".state",
        "log_dir": str(tmp_path / "logs"),
    })
    assert config.provider_type == "http"
    assert config.provider_model == "gpt-test"
    assert config.provider_timeout == 60
    assert config.agent_max_iterations == 8
    assert config.git_main_branch == "trunk"
    assert config.git_protected_branches == ["trunk"]
    assert config.autonomous_strategy == "priority"
    assert config.autonomous_max_tasks == 3
    assert config.autonomous_stop_on_blocking is True
    assert config.state_dir(tmp_path) == tmp_path / ".state"
    assert config.log_dir == tmp_path / "logs"


def test_invalid_values_fall_back(tmp_path):
    config = _config(tmp_path, {
        "provider": {"type": "carrier-pigeon"},
        "agent": {"max_iterations": 0},
        "autonomous": {"strategy": "random"},
        "git": {"protected_branches": "main"},
        "logging": "verbose",
    })
    config.validate()
    assert config.provider_type == "cli"
    assert config.agent_max_iterations == 5
    assert config.autonomous_strategy == "dependency"
    assert config.git_protected_branches == ["main", "master"]
    assert config.logging_level == "INFO"


def test_api_key_from_named_env_var(tmp_path, monkeypatch):
    monkeypatch.delenv("MY_PROVIDER_KEY", raising=False)
    config = _config(
        tmp_path,
        {"provider": {"api_key_env": "MY_PROVIDER_KEY"}},
        env="MY_PROVIDER_KEY=from-dotenv\n",
    )
    assert config.provider_api_key == "from-dotenv"
    monkeypatch.delenv("MY_PROVIDER_KEY", raising=False)


def test_api_key_fallback(config, monkeypatch):
    monkeypatch.setenv("FOREMAN_API_KEY", "fallback-key")
    assert config.provider_api_key == "fallback-key"


def test_config_dir_from_env(tmp_path, monkeypatch):
    config_dir = tmp_path / "envcfg"
    config_dir.mkdir()
    (config_dir / "settings.yaml").write_text("git:\n  review_branch: staging\n")
    monkeypatch.setenv("FOREMAN_CONFIG_DIR", str(config_dir))
    assert Config().git_review_branch == "staging"
