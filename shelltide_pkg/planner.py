"""Migration planner.

Fetches the SQL of every pending change, validates the whole batch in one
pass, and produces a Plan only if every item passes.
"""

from __future__ import annotations

from typing import Sequence

from .errors import ValidationFailure
from .gateways import ChangeCatalog, ValidationGateway
from .logging_setup import log_error, log_info, log_timing
from .models import Change, DatabaseRef, Plan, PlannedChange, TargetSpec, ValidationResult


class MigrationPlanner:
    """Builds validated, ascending plans."""

    def __init__(self, catalog: ChangeCatalog, validator: ValidationGateway):
        self.catalog = catalog
        self.validator = validator

    @log_timing
    def build_plan(
        self,
        pending: Sequence[Change],
        source: DatabaseRef,
        target: DatabaseRef,
        *,
        source_label: str,
        requested_target: TargetSpec,
        target_id: int,
    ) -> Plan:
        """Validate ``pending`` as one batch and return the plan.

        An empty pending set yields an empty plan without calling the
        Validation Gateway.

        Raises:
            ValidationFailure: Listing every failing change id and diagnostic.
        """
        ordered = sorted(pending, key=lambda c: c.id)
        ids = [c.id for c in ordered]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Pending set contains duplicate change ids: {ids}")

        entries = [PlannedChange(change=c, payload=self.catalog.fetch_payload(c)) for c in ordered]

        plan = Plan(
            source=source,
            target=target,
            source_label=source_label,
            requested_target=requested_target,
            target_id=target_id,
            entries=entries,
        )
        if not entries:
            return plan

        log_info(f"Validating {len(entries)} change(s) against {target}: {ids}")
        results = self.validator.check(target, [(e.id, e.payload) for e in entries])
        failures = _collect_failures(entries, results)

        if failures:
            for f in failures:
                log_error(f"Validation failed for #{f.change_id}: {f.diagnostic}")
            raise ValidationFailure(failures)

        log_info(f"Validation passed for {len(entries)} change(s)")
        return plan


def _collect_failures(
    entries: Sequence[PlannedChange],
    results: Sequence[ValidationResult],
) -> list[ValidationResult]:
    """Match results to entries; a missing result counts as a failure."""
    by_id = {r.change_id: r for r in results}
    failures = []
    for entry in entries:
        result = by_id.get(entry.id)
        if result is None:
            failures.append(ValidationResult(entry.id, False, "no validation result returned"))
        elif not result.passed:
            failures.append(result)
    return failures
