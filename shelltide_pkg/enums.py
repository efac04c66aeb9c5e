"""Enums shared by the migration engine and the CLI."""

from enum import Enum


class ChangeStatus(str, Enum):
    """Lifecycle status of a change in the catalog."""
    PENDING = "pending"
    DONE = "done"
    CANCELLED = "cancelled"


class RunState(str, Enum):
    """States of one Sequential Executor invocation."""
    IDLE = "idle"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.PARTIALLY_FAILED, RunState.ABORTED)


class StatusKind(str, Enum):
    """Classification of one database in the status table."""
    NOT_EXIST = "NOT_EXIST"
    NO_VERSION = "NO_VERSION"
    UP_TO_DATE = "UP_TO_DATE"
    BEHIND = "BEHIND"


class StepOutcome(str, Enum):
    """Result of one Execution Gateway call as recorded in the journal."""
    APPLIED = "applied"
    FAILED = "failed"
    UNKNOWN = "unknown"


class TaskStatus(str, Enum):
    """Status of a single rollout task on the platform."""
    NOT_STARTED = "NOT_STARTED"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.CANCELED, TaskStatus.SKIPPED)

    @property
    def is_success(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.SKIPPED)
