"""Capability interfaces consumed by the migration engine.

The engine never talks to the platform or the config file directly. It is
handed objects implementing these abstract base classes:

1. **RevisionStore**: one marker per database (read/write)
2. **ChangeCatalog**: done changes of a source and their SQL payloads
3. **ValidationGateway**: batch static SQL checks
4. **ExecutionGateway**: apply one payload to one database
5. **DatabaseDirectory**: list the databases of an environment (status scope)

platform_client.py implements all of them over the REST API; the test suite
implements them in memory.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from .models import (
    Change,
    DatabaseRef,
    ExecutionOutcome,
    RevisionMarker,
    ValidationResult,
)


class RevisionStore(ABC):
    """Owner of per-database revision markers."""

    @abstractmethod
    def get(self, ref: DatabaseRef) -> Optional[RevisionMarker]:
        """Return the current marker, or None if none was ever written.

        Raises:
            DatabaseNotFound: If the database does not exist on the platform.
            ConfigError: If the reference cannot be resolved.
        """

    @abstractmethod
    def set(self, ref: DatabaseRef, marker: RevisionMarker) -> None:
        """Persist a new marker for the database."""


class ChangeCatalog(ABC):
    """Read access to the changes available from a source."""

    @abstractmethod
    def list_done(self, source_label: str) -> list[Change]:
        """Done changes of a source label, ascending by id."""

    @abstractmethod
    def list_changes(self, source: DatabaseRef, target_database: str) -> list[Change]:
        """Changes recorded on ``source`` that touch ``target_database``, ascending by id."""

    @abstractmethod
    def fetch_payload(self, change: Change) -> str:
        """Return the SQL text of a change."""


class ValidationGateway(ABC):
    """Static pre-execution SQL checking."""

    @abstractmethod
    def check(
        self,
        target: DatabaseRef,
        items: Sequence[tuple[int, str]],
    ) -> list[ValidationResult]:
        """Check every (change_id, sql) item against the target.

        Must return one result per item, in order, without stopping at the
        first failure.
        """


class ExecutionGateway(ABC):
    """Applies a single change to a single database."""

    @abstractmethod
    def apply(self, payload: str, target: DatabaseRef) -> ExecutionOutcome:
        """Apply ``payload`` to ``target`` exactly once or report failure.

        An outcome that cannot be confirmed must be reported as a failure
        with ``unknown=True``; callers never retry it.
        """


class DatabaseDirectory(ABC):
    """Lists databases that exist in an environment."""

    @abstractmethod
    def list_databases(self, environment: str) -> list[str]:
        """Database names of the environment's instance."""
