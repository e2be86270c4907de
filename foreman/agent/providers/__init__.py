"""Execution providers, selected by ``provider.type`` through a registry."""

from typing import Callable, Dict, Optional

import structlog

from ...config import Config, get_config
from ...exceptions import ConfigurationError
from .base import ExecutionProvider, render_prompt
from .cli import CLIProvider
from .http import HTTPProvider

logger = structlog.get_logger("foreman.agent")

ProviderFactory = Callable[[Config], ExecutionProvider]


def _cli_from_config(config: Config) -> ExecutionProvider:
    return CLIProvider(
        cli_path=config.provider_cli_path,
        model=config.provider_model,
        timeout=config.provider_timeout,
    )


def _http_from_config(config: Config) -> ExecutionProvider:
    try:
        return HTTPProvider(
            api_url=config.provider_api_url,
            api_key=config.provider_api_key,
            model=config.provider_model,
            max_tokens=config.provider_max_tokens,
            timeout=config.provider_timeout,
        )
    except ValueError as e:
        raise ConfigurationError(str(e), setting_name="provider.api_url") from e


_REGISTRY: Dict[str, ProviderFactory] = {
    "cli": _cli_from_config,
    "http": _http_from_config,
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Add or replace a provider factory."""
    _REGISTRY[name] = factory


def create_provider(config: Optional[Config] = None, provider_type: Optional[str] = None) -> ExecutionProvider:
    """Build the provider named by ``provider_type`` (default ``provider.type``)."""
    config = config or get_config()
    name = provider_type or config.provider_type
    factory = _REGISTRY.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown provider type '{name}' (known: {', '.join(sorted(_REGISTRY))})",
            setting_name="provider.type",
        )
    provider = factory(config)
    logger.info("provider_created", provider=name)
    return provider


__all__ = [
    "CLIProvider",
    "ExecutionProvider",
    "HTTPProvider",
    "create_provider",
    "register_provider",
    "render_prompt",
]
