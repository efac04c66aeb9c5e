"""Exception hierarchy for shelltide.

Every error carries the CLI exit code it maps to, so command handlers can
print the message and exit without a lookup table.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

from .constants import (
    EXIT_CONFIG_FAILURE,
    EXIT_PARTIAL_FAILURE,
    EXIT_PLANNING_FAILURE,
)

if TYPE_CHECKING:
    from .models import ExecutionProgress, RevisionMarker, ValidationResult


class ShelltideError(Exception):
    """Base class for all shelltide errors."""

    exit_code: int = EXIT_PLANNING_FAILURE


# ========== Configuration ==========

class ConfigError(ShelltideError):
    """Configuration is missing, malformed, or refers to unknown aliases."""

    exit_code = EXIT_CONFIG_FAILURE


class EnvironmentNotFound(ConfigError):
    """An environment alias is not present in the configuration."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Environment '{name}' not found in configuration.")


class ConfigBusy(ConfigError):
    """Another invocation holds the exclusive store lock."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Local store is locked by another shelltide process "
            f"(waited {timeout:g}s). Retry once it has finished."
        )


# ========== Planning ==========

class PlanningError(ShelltideError):
    """A migration was rejected before any side effect."""


class InvalidTarget(PlanningError):
    """The --to argument is neither an issue number nor LATEST."""

    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Invalid version '{raw}'. Must be an integer or 'LATEST'.")


class EmptyCatalog(PlanningError):
    """LATEST was requested but the source has no done change."""

    def __init__(self, source_label: str):
        self.source_label = source_label
        super().__init__(f"No done changes found for source '{source_label}'.")


class UnknownTarget(PlanningError):
    """An explicit target does not reference a done change."""

    def __init__(self, target_id: int, source_label: str):
        self.target_id = target_id
        self.source_label = source_label
        super().__init__(
            f"Issue #{target_id} is not a done change of source '{source_label}'."
        )


class ValidationFailure(PlanningError):
    """One or more pending changes failed pre-execution SQL checks."""

    def __init__(self, failures: Sequence["ValidationResult"]):
        self.failures = list(failures)
        ids = ", ".join(f"#{f.change_id}" for f in self.failures)
        super().__init__(
            f"Validation failed for {len(self.failures)} change(s): {ids}. Nothing was applied."
        )

    @property
    def failing_ids(self) -> list[int]:
        return [f.change_id for f in self.failures]


# ========== Execution ==========

class ExecutionFailure(ShelltideError):
    """Applying a change failed; the checkpointed prefix stands."""

    exit_code = EXIT_PARTIAL_FAILURE

    def __init__(
        self,
        change_id: int,
        diagnostic: str,
        progress: Optional["ExecutionProgress"] = None,
    ):
        self.change_id = change_id
        self.diagnostic = diagnostic
        self.progress = progress
        checkpoint = progress.checkpoint_id if progress is not None else None
        where = f"marker left at #{checkpoint}" if checkpoint is not None else "marker unchanged"
        super().__init__(f"Failed to apply change #{change_id}: {diagnostic} ({where})")


class CheckpointFailure(ExecutionFailure):
    """The target marker could not be written.

    When ``progress.applied_unrecorded`` is set, that change already ran on
    the target and only its marker is missing: re-running before recording
    the marker would apply it a second time.
    """

    def __init__(
        self,
        marker: "RevisionMarker",
        diagnostic: str,
        progress: Optional["ExecutionProgress"] = None,
    ):
        self.marker = marker
        self.change_id = marker.issue_id
        self.diagnostic = diagnostic
        self.progress = progress
        checkpoint = progress.checkpoint_id if progress is not None else None
        where = f"marker left at #{checkpoint}" if checkpoint is not None else "marker unchanged"
        if self.unrecorded_id is not None:
            message = (
                f"Change #{self.unrecorded_id} was applied but marker {marker} could not be "
                f"written: {diagnostic} ({where})"
            )
        else:
            message = f"Marker {marker} could not be written: {diagnostic} ({where})"
        ShelltideError.__init__(self, message)

    @property
    def unrecorded_id(self) -> Optional[int]:
        if self.progress is None or self.progress.applied_unrecorded is None:
            return None
        return self.progress.applied_unrecorded.id


class MarkerRegressionError(ShelltideError):
    """A checkpoint would have moved a revision marker backward."""

    exit_code = EXIT_PARTIAL_FAILURE

    def __init__(self, database: str, current_id: int, attempted_id: int):
        self.database = database
        self.current_id = current_id
        self.attempted_id = attempted_id
        super().__init__(
            f"Refusing to move marker of {database} backward from #{current_id} to #{attempted_id}."
        )


# ========== Platform ==========

class PlatformAPIError(ShelltideError):
    """Transport, authentication, or protocol failure talking to the platform."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class DatabaseNotFound(PlatformAPIError):
    """The platform reports that a database does not exist."""

    def __init__(self, instance: str, database: str):
        self.instance = instance
        self.database = database
        super().__init__(f"Database '{database}' not found on instance '{instance}'.", 404)
