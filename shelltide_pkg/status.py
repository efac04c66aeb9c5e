"""Cross-environment migration status.

Classifies every database in scope against the reference environment's
latest done change. Nothing is cached: each call re-reads the reference and
every marker.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .config import ShelltideConfig
from .diff import latest_done_id
from .enums import StatusKind
from .errors import ConfigError, DatabaseNotFound
from .gateways import ChangeCatalog, DatabaseDirectory, RevisionStore
from .logging_setup import log_debug, log_info, log_timing
from .models import DatabaseRef, StatusReport, StatusRow


def parse_status_filter(text: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split an ``env`` or ``env/db`` filter.

    Raises:
        ValueError: If the filter has more than one '/' or an empty part.
    """
    if not text:
        return None, None
    if "/" not in text:
        return text, None
    parts = text.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError("Invalid filter format. Use '<env>/<database>' or just '<env>'")
    return parts[0], parts[1]


def classify(
    ref: DatabaseRef,
    revision_store: RevisionStore,
    reference_id: int,
) -> tuple[StatusKind, Optional[int]]:
    """Classify one database against the reference issue number."""
    try:
        marker = revision_store.get(ref)
    except (DatabaseNotFound, ConfigError) as e:
        log_debug(f"{ref} does not exist: {e}")
        return StatusKind.NOT_EXIST, None

    if marker is None:
        return StatusKind.NO_VERSION, None
    if marker.issue_id >= reference_id:
        return StatusKind.UP_TO_DATE, marker.issue_id
    return StatusKind.BEHIND, marker.issue_id


def sort_rows(rows: Iterable[StatusRow]) -> list[StatusRow]:
    """Group rows by database name, then environment alias."""
    return sorted(rows, key=lambda r: (r.ref.database, r.ref.environment))


class StatusAggregator:
    """Builds status reports for the configured environments."""

    def __init__(
        self,
        config: ShelltideConfig,
        revision_store: RevisionStore,
        catalog: ChangeCatalog,
        directory: DatabaseDirectory,
    ):
        self.config = config
        self.revision_store = revision_store
        self.catalog = catalog
        self.directory = directory

    def reference_id(self, reference_env: str) -> int:
        """Latest done issue of the reference environment (0 if none)."""
        label = self.config.get_environment(reference_env).project
        return latest_done_id(self.catalog.list_done(label)) or 0

    def scope(
        self,
        reference_env: str,
        filter_env: Optional[str] = None,
        filter_db: Optional[str] = None,
    ) -> list[DatabaseRef]:
        """Databases to report on.

        Without a filter every configured environment except the reference
        is checked for every database that exists in the reference
        environment.
        """
        if filter_db:
            databases = [filter_db]
        else:
            databases = self.directory.list_databases(reference_env)

        if filter_env:
            environments = [filter_env]
        else:
            environments = [name for name in sorted(self.config.environments) if name != reference_env]

        return [DatabaseRef(env, db) for env in environments for db in databases]

    def _schema(self, ref: DatabaseRef) -> str:
        env = self.config.environments.get(ref.environment)
        instance = env.instance if env else "?"
        return f"{instance}/{ref.database}"

    @log_timing
    def status(
        self,
        refs: Iterable[DatabaseRef],
        reference_env: str,
    ) -> StatusReport:
        """Classify ``refs`` against ``reference_env``'s latest done change."""
        reference_id = self.reference_id(reference_env)
        log_info(f"Status reference: {reference_env} at #{reference_id}")

        rows = []
        for ref in refs:
            kind, current_id = classify(ref, self.revision_store, reference_id)
            rows.append(
                StatusRow(
                    ref=ref,
                    kind=kind,
                    current_id=current_id,
                    reference_id=reference_id,
                    schema=self._schema(ref),
                )
            )

        return StatusReport(reference_env=reference_env, reference_id=reference_id, rows=sort_rows(rows))

    def collect(self, filter_text: Optional[str] = None) -> StatusReport:
        """Resolve the reference environment and filter, then build the report."""
        reference_env = self.config.require_default_source_env()
        filter_env, filter_db = parse_status_filter(filter_text)
        refs = self.scope(reference_env, filter_env, filter_db)
        return self.status(refs, reference_env)
