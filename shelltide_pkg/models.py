"""Data model for the migration engine.

Dataclasses for database references, revision markers, changes, plans,
execution progress, and status rows. Everything here is plain data; the
engine modules (diff, planner, executor, status) operate on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from .constants import LATEST, MARKER_SEPARATOR
from .enums import ChangeStatus, RunState, StatusKind
from .errors import InvalidTarget


# ========== Database identity ==========

@dataclass(frozen=True, order=True)
class DatabaseRef:
    """A database addressed by environment alias and database name."""

    environment: str
    database: str

    @classmethod
    def parse(cls, text: str) -> DatabaseRef:
        """Parse the ``<env>/<database>`` form.

        Raises:
            ValueError: If the text does not contain exactly one '/' with
                non-empty parts on both sides.
        """
        parts = text.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid value '{text}'. Use '<env>/<database>'")
        return cls(environment=parts[0], database=parts[1])

    def __str__(self) -> str:
        return f"{self.environment}/{self.database}"


@dataclass(frozen=True)
class ResolvedDatabase:
    """Platform coordinates of a DatabaseRef."""

    project: str
    instance: str
    database: str


# ========== Revision markers ==========

@dataclass(frozen=True)
class RevisionMarker:
    """Last fully-applied change of a database, encoded as ``label#number``."""

    source_label: str
    issue_id: int
    sheet: Optional[str] = None

    @classmethod
    def decode(cls, version: str, sheet: Optional[str] = None) -> RevisionMarker:
        """Decode a ``label#number`` version string.

        Raises:
            ValueError: If the string is not exactly two '#'-separated parts
                with a non-negative integer second part.
        """
        parts = version.split(MARKER_SEPARATOR)
        if len(parts) != 2:
            raise ValueError(f"Invalid revision version: {version}")
        try:
            number = int(parts[1])
        except ValueError:
            raise ValueError(f"Invalid issue number: {version}") from None
        if number < 0:
            raise ValueError(f"Invalid issue number: {version}")
        return cls(source_label=parts[0], issue_id=number, sheet=sheet)

    def encode(self) -> str:
        return f"{self.source_label}{MARKER_SEPARATOR}{self.issue_id}"

    def __str__(self) -> str:
        return self.encode()


# ========== Changes ==========

@dataclass
class Change:
    """One numbered unit of schema modification from the catalog.

    Attributes:
        id: Issue number; strictly increasing, never reused
        status: Catalog status; only DONE changes are planned
        payload_ref: Handle(s) used to fetch the SQL text
        created_at: Catalog timestamp
        applied_at: Set only after successful execution on a target
    """

    id: int
    status: ChangeStatus = ChangeStatus.DONE
    payload_ref: tuple[str, ...] = ()
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None

    @property
    def is_done(self) -> bool:
        return self.status == ChangeStatus.DONE


TargetSpec = Union[int, str]
"""An explicit issue number or the LATEST sentinel."""


def parse_target(raw: Union[int, str]) -> TargetSpec:
    """Normalize a --to argument into an int or LATEST.

    Raises:
        InvalidTarget: If the value is neither a positive integer nor LATEST.
    """
    if isinstance(raw, int):
        if raw < 0:
            raise InvalidTarget(str(raw))
        return raw
    text = raw.strip()
    if text.upper() == LATEST:
        return LATEST
    try:
        value = int(text)
    except ValueError:
        raise InvalidTarget(raw) from None
    if value < 0:
        raise InvalidTarget(raw)
    return value


@dataclass
class DiffResult:
    """Outcome of the Revision Diff Engine."""

    current_id: Optional[int]
    target_id: int
    pending: list[Change] = field(default_factory=list)

    @property
    def already_satisfied(self) -> bool:
        return self.current_id is not None and self.target_id <= self.current_id


# ========== Validation and execution ==========

@dataclass
class ValidationResult:
    """Per-item result from the Validation Gateway."""

    change_id: int
    passed: bool
    diagnostic: str = ""


@dataclass
class ExecutionOutcome:
    """Result of one Execution Gateway call.

    ``unknown`` is set when the call may or may not have taken effect
    (e.g. the rollout never reached a terminal state).
    """

    success: bool
    applied_at: Optional[datetime] = None
    diagnostic: str = ""
    unknown: bool = False
    sheet: Optional[str] = None

    @classmethod
    def ok(cls, applied_at: Optional[datetime] = None, sheet: Optional[str] = None) -> ExecutionOutcome:
        return cls(success=True, applied_at=applied_at or datetime.now(), sheet=sheet)

    @classmethod
    def failed(cls, diagnostic: str, *, unknown: bool = False) -> ExecutionOutcome:
        return cls(success=False, diagnostic=diagnostic, unknown=unknown)


@dataclass
class PlannedChange:
    """A plan entry: the change plus the SQL text fetched for it."""

    change: Change
    payload: str

    @property
    def id(self) -> int:
        return self.change.id


@dataclass
class Plan:
    """Validated, ascending batch of changes for one invocation."""

    source: DatabaseRef
    target: DatabaseRef
    source_label: str
    requested_target: TargetSpec
    target_id: int
    entries: list[PlannedChange] = field(default_factory=list)

    @property
    def ids(self) -> list[int]:
        return [entry.id for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


@dataclass
class ExecutionProgress:
    """Subsequence of the plan applied so far in one executor run.

    ``applied_unrecorded`` holds a change that ran on the target but whose
    marker write failed.
    """

    applied: list[Change] = field(default_factory=list)
    checkpoint_id: Optional[int] = None
    applied_unrecorded: Optional[Change] = None

    def record(self, change: Change) -> None:
        self.applied.append(change)
        self.checkpoint_id = change.id

    @property
    def applied_ids(self) -> list[int]:
        return [c.id for c in self.applied]


@dataclass
class MigrationRequest:
    """Everything the executor needs to run one migration."""

    source: DatabaseRef
    source_label: str
    target: DatabaseRef
    requested_target: TargetSpec = LATEST


@dataclass
class MigrationResult:
    """Terminal report of a successful executor run."""

    state: RunState
    request: MigrationRequest
    current_id: Optional[int]
    target_id: Optional[int]
    applied: list[int] = field(default_factory=list)
    final_marker: Optional[RevisionMarker] = None
    already_satisfied: bool = False

    @property
    def advanced_without_execution(self) -> bool:
        return not self.applied and self.final_marker is not None


# ========== Status ==========

@dataclass(frozen=True)
class StatusRow:
    """One line of the status table."""

    ref: DatabaseRef
    kind: StatusKind
    current_id: Optional[int]
    reference_id: int
    schema: str = ""

    @property
    def display(self) -> str:
        if self.kind == StatusKind.BEHIND:
            return f"#{self.current_id}"
        return self.kind.value.replace("_", " ")


@dataclass
class StatusReport:
    """Rows plus the reference they were classified against."""

    reference_env: str
    reference_id: int
    rows: list[StatusRow] = field(default_factory=list)
