"""Revision diff engine.

Computes the ordered set of pending changes between a database's current
revision marker and a requested target.
"""

from __future__ import annotations

from typing import Iterable, Optional

from .constants import LATEST
from .errors import EmptyCatalog, UnknownTarget
from .logging_setup import log_debug, log_warning
from .models import Change, DiffResult, RevisionMarker, TargetSpec


def latest_done_id(changes: Iterable[Change]) -> Optional[int]:
    """Highest id among done changes, or None if there is none."""
    ids = [c.id for c in changes if c.is_done]
    return max(ids) if ids else None


def resolve_target(
    requested: TargetSpec,
    done_ids: set[int],
    source_label: str,
) -> int:
    """Turn LATEST or an explicit id into a concrete done issue number.

    Raises:
        EmptyCatalog: LATEST requested but nothing is done.
        UnknownTarget: Explicit id is not a done change.
    """
    if requested == LATEST:
        if not done_ids:
            raise EmptyCatalog(source_label)
        return max(done_ids)

    target_id = int(requested)
    if target_id not in done_ids:
        raise UnknownTarget(target_id, source_label)
    return target_id


def diff(
    current: Optional[RevisionMarker],
    available_changes: Iterable[Change],
    requested_target: TargetSpec,
    *,
    done_changes: Iterable[Change] = (),
    source_label: str = "",
) -> DiffResult:
    """Compute the pending set for one target database.

    Args:
        current: Marker currently stored for the target, or None
        available_changes: Changes of the source that touch the target database
        requested_target: Explicit issue number or LATEST
        done_changes: Project-wide done changes of the source. Together with
            the done entries of ``available_changes`` they define which ids
            LATEST may resolve to and which explicit targets are valid; a
            done issue that never touched this database is still a valid
            target (the marker simply advances past it).
        source_label: Label used in error messages and marker checks

    Returns:
        DiffResult with the pending changes ascending by id. When the target
        is at or below the current marker the pending list is empty and
        ``already_satisfied`` is True.
    """
    available = list(available_changes)
    done_ids = {c.id for c in available if c.is_done}
    done_ids.update(c.id for c in done_changes if c.is_done)

    target_id = resolve_target(requested_target, done_ids, source_label)

    current_id: Optional[int] = None
    if current is not None:
        current_id = current.issue_id
        if source_label and current.source_label != source_label:
            log_warning(
                f"Current marker {current} was written from source '{current.source_label}', "
                f"comparing issue numbers against '{source_label}'"
            )

    if current_id is not None and target_id <= current_id:
        log_debug(f"Target #{target_id} already satisfied by marker #{current_id}")
        return DiffResult(current_id=current_id, target_id=target_id, pending=[])

    pending = sorted(
        (
            c for c in available
            if c.is_done
            and (current_id is None or c.id > current_id)
            and c.id <= target_id
        ),
        key=lambda c: c.id,
    )

    log_debug(
        f"Diff: current={current_id} target={target_id} "
        f"pending={[c.id for c in pending]}"
    )
    return DiffResult(current_id=current_id, target_id=target_id, pending=pending)
