"""Logging configuration for foreman.

structlog events are rendered by stdlib handlers: a human-readable
console and JSON lines in the log files, one file per subsystem plus a
combined file.

    root                  → console (ConsoleRenderer)
      └─ foreman          → foreman.log (JSON lines, every subsystem)
           ├─ foreman.runner  → runner.log
           ├─ foreman.agent   → agent.log
           ├─ foreman.git     → git.log
           ├─ foreman.policy  → policy.log
           └─ foreman.store   → store.log

While a task runs, ``bind_run_context`` attaches its run and task IDs
to every event logged from any subsystem.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

import structlog

from .security import redact_secrets

SUBSYSTEMS = ("runner", "agent", "git", "policy", "store")

LOGGER_PREFIX = "foreman"

# Before the config is loaded
DEFAULT_LOG_DIR = Path.home() / ".foreman" / "logs"


class _LogSettings(NamedTuple):
    log_dir: Path
    level: int
    subsystem_levels: Dict[str, str]
    max_bytes: int
    backup_count: int
    cache_loggers: bool


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return redact_secrets(value)
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items()}
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor that redacts API keys, tokens and key material at any depth."""
    for key, value in event_dict.items():
        event_dict[key] = _scrub(value)
    return event_dict


def bind_run_context(run_id: str, task_id: Optional[str] = None) -> None:
    """Tag every subsequent event in this context with the run (and task)."""
    structlog.contextvars.bind_contextvars(run_id=run_id)
    if task_id is not None:
        structlog.contextvars.bind_contextvars(task_id=task_id)


def clear_task_context() -> None:
    structlog.contextvars.unbind_contextvars("task_id")


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "task_id")


def _settings(config) -> _LogSettings:
    if config is None:
        return _LogSettings(DEFAULT_LOG_DIR, logging.INFO, {}, 10 * 1024 * 1024, 5, False)
    return _LogSettings(
        log_dir=config.log_dir,
        level=getattr(logging, config.logging_level.upper(), logging.INFO),
        subsystem_levels=config.logging_subsystem_levels,
        max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
        backup_count=config.logging_backup_count,
        cache_loggers=True,
    )


def _file_handler(path: Path, level: int, settings: _LogSettings, formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config=None) -> None:
    """Configure structlog and the stdlib handler tree.

    Called twice by ``main``: first with no config (defaults, logger
    caching off, so loggers created at import time pick up the second
    configuration), then with the loaded Config (caching on).

    A log directory that cannot be created degrades to console-only
    logging instead of failing the run.
    """
    settings = _settings(config)

    # Applied to records from non-structlog loggers (asyncio, aiohttp)
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        sanitize_secrets,
    ]
    console_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ],
    )
    file_formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(default=str),
        ],
    )

    files_ok = True
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        files_ok = False
        print(
            f"WARNING: Cannot create log directory {settings.log_dir}: {exc}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Handlers filter by level
    root_logger.handlers.clear()
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(settings.level)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    combined = logging.getLogger(LOGGER_PREFIX)
    combined.setLevel(logging.DEBUG)
    combined.handlers.clear()
    combined.propagate = True
    if files_ok:
        combined.addHandler(_file_handler(
            settings.log_dir / "foreman.log", settings.level, settings, file_formatter,
        ))

    for subsystem in SUBSYSTEMS:
        level_name = settings.subsystem_levels.get(subsystem, "").upper()
        level = getattr(logging, level_name, settings.level) if level_name else settings.level
        sub_logger = logging.getLogger(f"{LOGGER_PREFIX}.{subsystem}")
        sub_logger.setLevel(level)
        sub_logger.handlers.clear()
        sub_logger.propagate = True
        if files_ok:
            sub_logger.addHandler(_file_handler(
                settings.log_dir / f"{subsystem}.log", level, settings, file_formatter,
            ))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=settings.cache_loggers,
    )
