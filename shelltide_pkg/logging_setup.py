"""Logging configuration and utilities.

File-based logging through loguru. Path and level come from the environment
first, then from config.yaml:
  - SHELLTIDE_LOG: Path to log file (default: ~/.shelltide/shelltide.log)
  - SHELLTIDE_DEBUG: Enable DEBUG level (else INFO)
"""

from __future__ import annotations

import functools
import os
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from loguru import logger as _log

from .constants import LOG_FILENAME, get_home_dir

if TYPE_CHECKING:
    from .config import ShelltideConfig


# ========== Helper functions ==========
def env_truthy(name: str, default: bool = False) -> bool:
    """Check if an environment variable is set to a truthy value.

    Args:
        name: Environment variable name to check
        default: Value to return if variable is not set

    Returns:
        True if variable is set to '1', 'true', 'yes', 'y', or 'on'
        (case-insensitive), otherwise the default value
    """
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def resolve_log_path(config: Optional["ShelltideConfig"] = None) -> Path:
    """Pick the log file path from env, config, or the default location."""
    env_path = os.environ.get("SHELLTIDE_LOG")
    if env_path:
        return Path(env_path).expanduser()
    if config is not None and config.log_path:
        return Path(config.log_path).expanduser()
    return get_home_dir() / LOG_FILENAME


def init_logger(config: Optional["ShelltideConfig"] = None) -> None:
    """Initialize file logging.

    Replaces every loguru sink with a single rotating file sink
    (1 MB rotation, 3 files retained).

    Args:
        config: Loaded configuration; supplies log_path and debug_logging
            when the environment does not.
    """
    log_path = resolve_log_path(config)
    debug = env_truthy("SHELLTIDE_DEBUG", bool(config and config.debug_logging))
    level = "DEBUG" if debug else "INFO"

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _log.remove()
        _log.add(
            str(log_path),
            level=level,
            rotation="1 MB",
            retention=3,
            enqueue=False,
            backtrace=False,
            diagnose=False,
        )
        _log.info("Logger initialized at {} with level {}", log_path, level)
    except OSError as e:
        # Unwritable log location: keep loguru's default stderr sink
        _log.warning("Could not open log file {}: {}", log_path, e)


# ========== Logging convenience functions ==========
def log_info(msg: str) -> None:
    """Log an info-level message."""
    _log.opt(depth=1).info(msg)


def log_debug(msg: str) -> None:
    """Log a debug-level message."""
    _log.opt(depth=1).debug(msg)


def log_warning(msg: str) -> None:
    """Log a warning-level message."""
    _log.opt(depth=1).warning(msg)


def log_error(msg: str) -> None:
    """Log an error-level message."""
    _log.opt(depth=1).error(msg)


# ========== Global exception hook ==========
_orig_excepthook = sys.excepthook


def ex_hook(exc_type: type, exc: BaseException, tb: Any) -> Any:
    """Log unhandled exceptions, then defer to the original hook.

    Args:
        exc_type: The exception type
        exc: The exception instance
        tb: The traceback object

    Returns:
        Result of the original exception hook
    """
    _log.opt(exception=(exc_type, exc, tb)).error("Unhandled exception")
    return _orig_excepthook(exc_type, exc, tb)


sys.excepthook = ex_hook


# ========== Performance timing decorator ==========
F = TypeVar("F", bound=Callable[..., Any])


def log_timing(fn: F) -> F:
    """Decorator to log function execution time.

    Measures and logs the execution time of the wrapped function in
    milliseconds at DEBUG level.

    Args:
        fn: The function to wrap

    Returns:
        Wrapped function that logs execution time
    """

    @functools.wraps(fn)
    def _wrap(*args: Any, **kwargs: Any) -> Any:
        start_time = time.perf_counter()
        try:
            return fn(*args, **kwargs)
        finally:
            elapsed_ms = (time.perf_counter() - start_time) * 1000.0
            log_debug(f"{fn.__name__} took {elapsed_ms:.1f} ms")

    return _wrap  # type: ignore[return-value]
