"""Configuration management for foreman.

Loads YAML settings (settings.yaml) and environment variables (.env)
into a typed Config object. Property getters provide safe access with
sensible defaults for every subsystem: logging, execution provider,
agent loop, git branch orchestration, and the autonomous runner.

Per-project policy is not part of this file; it lives in the project's
state directory (see ``foreman.policy.loader``).

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
from pathlib import Path
from typing import List, Optional

import structlog
import yaml
from dotenv import load_dotenv

logger = structlog.get_logger("foreman.runner")

VALID_PROVIDER_TYPES = ("cli", "http")
VALID_STRATEGIES = ("fifo", "priority", "dependency")


class Config:
    """Central configuration manager for foreman.

    Loads settings.yaml and .env from the config directory. Provides
    typed property accessors for every configurable subsystem.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``$FOREMAN_CONFIG_DIR`` or ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            env_dir = os.environ.get("FOREMAN_CONFIG_DIR")
            config_dir = Path(env_dir) if env_dir else Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        if not isinstance(section, dict):
            logger.error("config_section_invalid_type", section=name, type=type(section).__name__)
            return {}
        return section

    def validate(self):
        """Validate critical settings at startup.

        Logs errors for out-of-range values but does not raise --
        the property getters fall back to defaults.
        """
        provider_type = self._section("provider").get("type")
        if provider_type is not None and provider_type not in VALID_PROVIDER_TYPES:
            logger.error(
                "config_invalid_value",
                key="provider.type",
                value=provider_type,
                valid=",".join(VALID_PROVIDER_TYPES),
            )

        mi = self._section("agent").get("max_iterations")
        if mi is not None and (not isinstance(mi, int) or mi < 1 or mi > 50):
            logger.error("config_invalid_value", key="agent.max_iterations", value=mi, valid="1-50")

        strategy = self._section("autonomous").get("strategy")
        if strategy is not None and strategy not in VALID_STRATEGIES:
            logger.error(
                "config_invalid_value",
                key="autonomous.strategy",
                value=strategy,
                valid=",".join(VALID_STRATEGIES),
            )

        convention = self._section("git").get("branch_convention")
        if convention is not None and "{task_id}" not in str(convention):
            logger.error(
                "config_invalid_value",
                key="git.branch_convention",
                value=convention,
                valid="must contain {task_id}",
            )

    # ---- Logging ----

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path.home() / ".foreman" / "logs"

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> dict:
        """Per-subsystem log level overrides. E.g. {"git": "DEBUG"}."""
        return self._section("logging").get("subsystem_levels", {})

    @property
    def logging_max_file_size_mb(self) -> int:
        """Max size per log file in MB before rotation (default 10)."""
        return self._section("logging").get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        """Number of rotated log files to keep (default 5)."""
        return self._section("logging").get("backup_count", 5)

    # ---- Project state ----

    @property
    def state_dir_name(self) -> str:
        """Name of the project-local state directory (default .foreman)."""
        return self.settings.get("state_dir_name", ".foreman")

    def state_dir(self, project_root: Path) -> Path:
        """Project-local state directory for a given project root."""
        return Path(project_root) / self.state_dir_name

    # ---- Execution provider ----

    @property
    def provider_type(self) -> str:
        """Execution provider backend: "cli" (default) or "http"."""
        value = self._section("provider").get("type", "cli")
        if value not in VALID_PROVIDER_TYPES:
            return "cli"
        return value

    @property
    def provider_cli_path(self) -> str:
        """Path to the coding CLI binary (default "claude")."""
        return self._section("provider").get("cli_path", "claude")

    @property
    def provider_model(self) -> str:
        """Model name passed to the provider."""
        return self._section("provider").get("model", "sonnet")

    @property
    def provider_timeout(self) -> int:
        """Provider call timeout in seconds (default 30 minutes)."""
        return self._section("provider").get("timeout_seconds", 1800)

    @property
    def provider_api_url(self) -> str:
        """Chat completions URL for the http provider."""
        return self._section("provider").get(
            "api_url", "https://api.openai.com/v1/chat/completions"
        )

    @property
    def provider_api_key(self) -> str:
        """Return the API key for the http provider.

        Priority:
        1. Explicit api_key_env setting -> read that env var
        2. Fallback: FOREMAN_API_KEY env var
        """
        api_key_env = self._section("provider").get("api_key_env")
        if api_key_env:
            key = os.environ.get(api_key_env, "")
            if not key:
                logger.warning("config_api_key_env_empty", env_var=api_key_env)
            return key
        return os.environ.get("FOREMAN_API_KEY", "")

    @property
    def provider_max_tokens(self) -> int:
        """Max tokens per http provider response (default 4096)."""
        return self._section("provider").get("max_tokens", 4096)

    # ---- Agent loop ----

    @property
    def agent_max_iterations(self) -> int:
        """Tool iterations per execution loop (default 5)."""
        value = self._section("agent").get("max_iterations", 5)
        if not isinstance(value, int) or value < 1:
            return 5
        return value

    @property
    def agent_command_timeout(self) -> int:
        """Timeout in seconds for agent-issued shell commands (default 120)."""
        return self._section("agent").get("command_timeout_seconds", 120)

    # ---- Git ----

    @property
    def git_main_branch(self) -> str:
        """Name of the main branch (default "main")."""
        return self._section("git").get("main_branch", "main")

    @property
    def git_review_branch(self) -> str:
        """Name of the review integration branch (default "review")."""
        return self._section("git").get("review_branch", "review")

    @property
    def git_branch_convention(self) -> str:
        """Branch name template with {task_id} and {slug} placeholders."""
        return self._section("git").get("branch_convention", "task/{task_id}-{slug}")

    @property
    def git_protected_branches(self) -> List[str]:
        """Branches that may never be deleted or force-pushed."""
        value = self._section("git").get("protected_branches", ["main", "master"])
        if not isinstance(value, list):
            logger.error("protected_branches_invalid_type", type=type(value).__name__)
            return ["main", "master"]
        return value

    @property
    def git_command_timeout(self) -> int:
        """Timeout in seconds for local git commands (default 30)."""
        return self._section("git").get("command_timeout_seconds", 30)

    @property
    def git_network_timeout(self) -> int:
        """Timeout in seconds for push/pull/fetch (default 60)."""
        return self._section("git").get("network_timeout_seconds", 60)

    # ---- Autonomous runner ----

    @property
    def autonomous_strategy(self) -> str:
        """Default task ordering strategy (default "dependency")."""
        value = self._section("autonomous").get("strategy", "dependency")
        if value not in VALID_STRATEGIES:
            return "dependency"
        return value

    @property
    def autonomous_max_tasks(self) -> Optional[int]:
        """Max tasks per run (default unlimited)."""
        return self._section("autonomous").get("max_tasks")

    @property
    def autonomous_max_failures(self) -> Optional[int]:
        """Stop the run after this many failures (default unlimited)."""
        return self._section("autonomous").get("max_failures")

    @property
    def autonomous_stop_on_blocking(self) -> bool:
        """Stop the run when a task raises a block signal (default False)."""
        return self._section("autonomous").get("stop_on_blocking", False)

    @property
    def autonomous_merge_to_review(self) -> bool:
        """Merge successful task branches into the review branch (default True)."""
        return self._section("autonomous").get("merge_to_review", True)


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global Config singleton."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Drop the cached Config (for testing)."""
    global _config
    _config = None
