"""Version lookup for the shelltide package.

Resolution order:
1. importlib.metadata (installed package)
2. pyproject.toml next to the package (source checkout)
3. "unknown"
"""

from pathlib import Path
from typing import Optional


def _get_version_from_metadata() -> Optional[str]:
    """Return the installed distribution version, or None if not installed."""
    try:
        from importlib.metadata import version
        return version("shelltide")
    except Exception:
        return None


def _get_version_from_pyproject() -> Optional[str]:
    """Read the version from the repository pyproject.toml.

    Returns:
        Version string if pyproject.toml exists and is parseable, None otherwise
    """
    try:
        import tomllib

        repo_root = Path(__file__).resolve().parent.parent
        pyproject_path = repo_root / "pyproject.toml"

        if not pyproject_path.exists():
            return None

        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
            return data.get("project", {}).get("version")
    except Exception:
        return None


def get_version() -> str:
    """Get the shelltide version from the best available source.

    Returns:
        Version string (e.g., "0.4.0" or "unknown")
    """
    version = _get_version_from_metadata()
    if version:
        return version

    version = _get_version_from_pyproject()
    if version:
        return version

    return "unknown"


__version__ = get_version()
