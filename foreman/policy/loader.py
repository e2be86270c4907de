"""Loading and saving a project's policy document.

The policy lives in ``<project>/<state_dir>/policy.yaml``. A project
without one runs under ``default_policy()``.
"""

from pathlib import Path
from typing import Optional

import structlog
import yaml
from pydantic import ValidationError

from ..config import Config, get_config
from ..exceptions import ConfigurationError
from .models import Policy, PolicyLimits

logger = structlog.get_logger("foreman.policy")

POLICY_FILENAME = "policy.yaml"


def default_policy() -> Policy:
    """Conservative defaults for a JavaScript/TypeScript project."""
    return Policy(
        allowed_paths=[
            "src/**",
            "tests/**",
            "test/**",
            "docs/**",
            "package.json",
            "tsconfig.json",
            "README.md",
        ],
        blocked_paths=[
            ".env",
            ".env.*",
            "node_modules/**",
            ".git/**",
            "release/**",
            "dist/**",
        ],
        blocked_patterns=[
            "*.pem",
            "*.key",
            "*.cert",
            "*secret*",
            "*password*",
            "*credential*",
            "*token*",
            "id_rsa*",
        ],
        allowed_commands=["npm", "npx", "node", "git", "tsc", "vite", "echo", "cat", "ls"],
        blocked_commands=[
            "rm -rf /",
            "format",
            "sudo",
            "curl | bash",
            "wget | bash",
            "del /f /s /q",
        ],
        confirm_commands=["git push", "git reset --hard", "npm publish"],
        limits=PolicyLimits(),
    )


def policy_path(project_root: Path, config: Optional[Config] = None) -> Path:
    config = config or get_config()
    return config.state_dir(project_root) / POLICY_FILENAME


def load_policy(project_root: Path, config: Optional[Config] = None) -> Policy:
    """Load the project's policy, falling back to the defaults.

    Raises:
        ConfigurationError: If the document exists but is not valid YAML
            or does not validate against the Policy schema.
    """
    path = policy_path(project_root, config)
    if not path.exists():
        logger.info("policy_default_used", project=str(project_root))
        return default_policy()

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        policy = Policy.model_validate(data)
    except (yaml.YAMLError, ValidationError) as e:
        logger.error("policy_invalid", path=str(path), error=str(e)[:500])
        raise ConfigurationError(
            f"Invalid policy document: {path}", setting_name="policy", error=str(e)[:200]
        ) from e

    logger.info(
        "policy_loaded",
        path=str(path),
        allowed_paths=len(policy.allowed_paths),
        blocked_paths=len(policy.blocked_paths),
        allowed_commands=len(policy.allowed_commands),
    )
    return policy


def save_policy(project_root: Path, policy: Policy, config: Optional[Config] = None) -> Path:
    """Write a policy document; only valid between runs."""
    path = policy_path(project_root, config)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(policy.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
    return path
