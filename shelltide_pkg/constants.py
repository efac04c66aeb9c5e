"""Centralized application constants.

Paths, platform API defaults, rollout polling parameters, and the exit codes
returned by the CLI.
"""

import os
from pathlib import Path


# ========== Application paths ==========
def get_home_dir() -> Path:
    """Return the shelltide home directory.

    Honors SHELLTIDE_HOME, otherwise ~/.shelltide.
    """
    override = os.environ.get("SHELLTIDE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".shelltide"


CONFIG_FILENAME: str = "config.yaml"
"""Name of the YAML configuration file inside the home directory."""

DATABASE_FILENAME: str = "shelltide.db"
"""Name of the SQLite migration journal inside the home directory."""

LOCK_FILENAME: str = "shelltide.lock"
"""Name of the SQLite file used purely as an exclusive lock."""

LOG_FILENAME: str = "shelltide.log"
"""Default log file name inside the home directory."""


# ========== Migration targets ==========
LATEST: str = "LATEST"
"""Sentinel for "most recent done change" in --to arguments."""

MARKER_SEPARATOR: str = "#"
"""Separator between source label and issue number in a revision marker."""


# ========== Platform API defaults ==========
DEFAULT_SQL_DIALECT: str = "MYSQL"
"""Engine sent with every sheet when the config does not name one."""

HTTP_TIMEOUT: int = 30
"""Default timeout in seconds for a single HTTP request."""

CHANGELOG_PAGE_SIZE: int = 1000
"""Page size used when listing changelogs of a database."""

ISSUE_TITLE: str = "auto-generated issue by shelltide"
"""Title given to issues created while applying a change."""


# ========== Rollout polling ==========
ROLLOUT_POLL_INTERVAL: float = 2.0
"""Seconds between two rollout status polls."""

ROLLOUT_NOT_STARTED_TIMEOUT: float = 60.0
"""Seconds a rollout may sit entirely in NOT_STARTED before it is considered stuck."""

ROLLOUT_TIMEOUT: float = 1800.0
"""Upper bound in seconds on waiting for a rollout to reach a terminal state."""

POLL_MAX_RETRIES: int = 5
"""Attempts for one rollout status GET before giving up."""

POLL_RETRY_DELAY: float = 1.0
"""Seconds between two attempts of a failed rollout status GET."""


# ========== Local store ==========
LOCK_TIMEOUT: float = 10.0
"""Seconds to wait for the exclusive store lock before raising ConfigBusy."""

HISTORY_LIMIT: int = 20
"""Default number of runs shown by the history command."""


# ========== Exit codes ==========
EXIT_OK: int = 0
EXIT_PLANNING_FAILURE: int = 1
EXIT_PARTIAL_FAILURE: int = 2
EXIT_CONFIG_FAILURE: int = 3
