"""ANSI color codes and console output helpers.

Color configuration is driven by the no_color setting in config.yaml and the
NO_COLOR / TERM=dumb conventions.
"""

import os
from typing import Optional, TYPE_CHECKING

from rich.console import Console

if TYPE_CHECKING:
    from .config import ShelltideConfig


# ========== Color configuration ==========
class C:
    """ANSI color code constants (initialized by initialize_colors).

    All codes are empty strings until initialize_colors enables them.
    """

    RESET: str = ""
    BOLD: str = ""
    BLUE: str = ""
    GREEN: str = ""
    YELLOW: str = ""
    RED: str = ""
    CYAN: str = ""


_no_color: bool = False


def _colors_disabled(config: Optional["ShelltideConfig"]) -> bool:
    if os.environ.get("NO_COLOR") or os.environ.get("TERM") == "dumb":
        return True
    return bool(config and config.no_color)


def initialize_colors(config: Optional["ShelltideConfig"] = None) -> None:
    """Enable or disable ANSI colors from configuration.

    Args:
        config: Loaded configuration, or None for environment-only detection.
    """
    global _no_color, _console_cache

    _no_color = _colors_disabled(config)
    _console_cache = None

    if _no_color:
        for name in ("RESET", "BOLD", "BLUE", "GREEN", "YELLOW", "RED", "CYAN"):
            setattr(C, name, "")
        return

    C.RESET = "\u001b[0m"
    C.BOLD = "\u001b[1m"
    C.BLUE = "\u001b[34m"
    C.GREEN = "\u001b[32m"
    C.YELLOW = "\u001b[33m"
    C.RED = "\u001b[31m"
    C.CYAN = "\u001b[36m"


# ========== Rich Console configuration ==========
_console_cache: Optional[Console] = None


def get_console() -> Console:
    """Get the shared Rich Console, honoring the no_color setting."""
    global _console_cache

    if _console_cache is None:
        _console_cache = Console(no_color=_no_color, highlight=False)

    return _console_cache


def style_if_enabled(style_name: str) -> str:
    """Return style name or empty string based on the no_color setting.

    Example:
        >>> table.add_column("Name", style=style_if_enabled("cyan"))
    """
    if _no_color:
        return ""
    return style_name


def header(msg: str) -> None:
    """Print a bold blue header message with newline prefix."""
    print(f"{C.BOLD}{C.BLUE}\n{msg}{C.RESET}")


def ok(msg: str) -> None:
    """Print a success message in green with checkmark prefix."""
    print(f"{C.GREEN}✓ {msg}{C.RESET}")


def warn(msg: str) -> None:
    """Print a warning message in yellow with warning icon prefix."""
    print(f"{C.YELLOW}⚠ {msg}{C.RESET}")


def err(msg: str) -> None:
    """Print an error message in red with error icon prefix."""
    print(f"{C.RED}✗ {msg}{C.RESET}")


def info(msg: str) -> None:
    """Print an informational message without color."""
    print(msg)


def fmt_action(text: str) -> str:
    """Format text as an action with cyan color and >> prefix."""
    return f"{C.CYAN}>> {text}{C.RESET}"
