"""Pytest configuration and shared fixtures for shelltide tests."""

import re
import sqlite3
from pathlib import Path
from typing import Generator, Iterable, Optional, Sequence

import pytest

from shelltide_pkg.config import Environment, ShelltideConfig
from shelltide_pkg.enums import ChangeStatus
from shelltide_pkg.errors import DatabaseNotFound, PlatformAPIError
from shelltide_pkg.gateways import (
    ChangeCatalog,
    DatabaseDirectory,
    ExecutionGateway,
    RevisionStore,
    ValidationGateway,
)
from shelltide_pkg.models import (
    Change,
    DatabaseRef,
    ExecutionOutcome,
    RevisionMarker,
    ValidationResult,
)


SOURCE_LABEL = "proj-dev"
"""Project of the 'dev' environment used as the default source in tests."""

_PAYLOAD_RE = re.compile(r"-- change (\d+)")


def payload_for(change_id: int) -> str:
    return f"-- change {change_id}\nALTER TABLE t ADD COLUMN c{change_id} INT;"


def change_id_of(payload: str) -> int:
    match = _PAYLOAD_RE.search(payload)
    assert match, f"unexpected payload: {payload!r}"
    return int(match.group(1))


def sheet_for(change_id: int) -> str:
    return f"projects/proj-prod/sheets/{change_id}"


# ========== In-memory capability fakes ==========

class FakeRevisionStore(RevisionStore):
    """Markers in a dict; records every write in order."""

    def __init__(
        self,
        markers: Optional[dict[DatabaseRef, RevisionMarker]] = None,
        missing: Iterable[DatabaseRef] = (),
        fail_writes_for: Iterable[int] = (),
    ):
        self.markers = dict(markers or {})
        self.missing = set(missing)
        self.fail_writes_for = set(fail_writes_for)
        self.writes: list[tuple[DatabaseRef, RevisionMarker]] = []
        self.reads = 0

    def get(self, ref: DatabaseRef) -> Optional[RevisionMarker]:
        self.reads += 1
        if ref in self.missing:
            raise DatabaseNotFound("inst", ref.database)
        return self.markers.get(ref)

    def set(self, ref: DatabaseRef, marker: RevisionMarker) -> None:
        if marker.issue_id in self.fail_writes_for:
            raise PlatformAPIError("revision write failed", 500)
        self.writes.append((ref, marker))
        self.markers[ref] = marker

    @property
    def written_ids(self) -> list[int]:
        return [m.issue_id for _, m in self.writes]


class FakeCatalog(ChangeCatalog):
    """Fixed change list; ``done_ids`` defaults to the done changes' ids."""

    def __init__(self, changes: Iterable = (), done_ids: Optional[Iterable[int]] = None):
        self.changes = [c if isinstance(c, Change) else Change(id=c) for c in changes]
        if done_ids is None:
            done_ids = [c.id for c in self.changes if c.is_done]
        self.done_ids = set(done_ids)
        self.fetched: list[int] = []
        self.list_calls = 0

    def list_done(self, source_label: str) -> list[Change]:
        return [Change(id=i, status=ChangeStatus.DONE) for i in sorted(self.done_ids)]

    def list_changes(self, source: DatabaseRef, target_database: str) -> list[Change]:
        self.list_calls += 1
        return list(self.changes)

    def fetch_payload(self, change: Change) -> str:
        self.fetched.append(change.id)
        return payload_for(change.id)


class FakeValidator(ValidationGateway):
    """Passes everything except the ids in ``failing`` (id -> diagnostic)."""

    def __init__(self, failing: Optional[dict[int, str]] = None):
        self.failing = dict(failing or {})
        self.calls: list[list[int]] = []

    def check(self, target: DatabaseRef, items: Sequence[tuple[int, str]]) -> list[ValidationResult]:
        self.calls.append([change_id for change_id, _ in items])
        return [
            ValidationResult(change_id, change_id not in self.failing, self.failing.get(change_id, ""))
            for change_id, _ in items
        ]


class FakeExecutionGateway(ExecutionGateway):
    """Records apply calls in order; fails or reports unknown for chosen ids.

    Successful applies report the sheet ``sheet_for(change_id)``.
    """

    def __init__(
        self,
        failing: Iterable[int] = (),
        unknown: Iterable[int] = (),
        raising: Iterable[int] = (),
    ):
        self.failing = set(failing)
        self.unknown = set(unknown)
        self.raising = set(raising)
        self.applied: list[int] = []
        self.targets: list[DatabaseRef] = []

    def apply(self, payload: str, target: DatabaseRef) -> ExecutionOutcome:
        change_id = change_id_of(payload)
        self.applied.append(change_id)
        self.targets.append(target)
        if change_id in self.raising:
            raise PlatformAPIError("connection reset")
        if change_id in self.unknown:
            return ExecutionOutcome.failed("rollout did not finish", unknown=True)
        if change_id in self.failing:
            return ExecutionOutcome.failed(f"syntax error in change {change_id}")
        return ExecutionOutcome.ok(sheet=sheet_for(change_id))


class FakeDirectory(DatabaseDirectory):
    def __init__(self, databases: Optional[dict[str, list[str]]] = None):
        self.databases = dict(databases or {})

    def list_databases(self, environment: str) -> list[str]:
        return sorted(self.databases.get(environment, []))


# ========== Fixtures ==========

@pytest.fixture(autouse=True)
def shelltide_home(tmp_path, monkeypatch) -> Path:
    """Point SHELLTIDE_HOME at a temp dir and clear overriding env vars."""
    home = tmp_path / "shelltide-home"
    home.mkdir()
    monkeypatch.setenv("SHELLTIDE_HOME", str(home))
    for name in ("SHELLTIDE_URL", "SHELLTIDE_ACCESS_TOKEN", "SHELLTIDE_LOG", "SHELLTIDE_DEBUG", "NO_COLOR"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def temp_db() -> Generator[sqlite3.Connection, None, None]:
    """In-memory SQLite database with the journal schema.

    Yields:
        sqlite3.Connection: Connection with schema initialized
    """
    from shelltide_pkg.database import SCHEMA_SQL

    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA_SQL)
    conn.commit()

    yield conn

    conn.close()


@pytest.fixture
def config() -> ShelltideConfig:
    """Three environments with 'dev' as the default source."""
    return ShelltideConfig(
        default_source_env="dev",
        environments={
            "dev": Environment(project=SOURCE_LABEL, instance="inst-dev"),
            "staging": Environment(project="proj-staging", instance="inst-staging"),
            "prod": Environment(project="proj-prod", instance="inst-prod"),
        },
        platform_url="https://platform.example.com",
        access_token="token-123",
    )


@pytest.fixture
def source_ref() -> DatabaseRef:
    return DatabaseRef("dev", "app")


@pytest.fixture
def target_ref() -> DatabaseRef:
    return DatabaseRef("prod", "app")


def marker(issue_id: int, label: str = SOURCE_LABEL) -> RevisionMarker:
    return RevisionMarker(source_label=label, issue_id=issue_id)
