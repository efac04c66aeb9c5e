"""Sequential migration executor.

Runs one migration invocation through the state machine

    IDLE -> VALIDATING -> EXECUTING -> COMPLETED | PARTIALLY_FAILED | ABORTED

Changes are applied strictly in ascending id order, one blocking call at a
time. After every successful apply the target's revision marker is written
before the next change starts, so an interrupted or failed run leaves the
marker at the last applied change and a retry resumes right after it.
"""

from __future__ import annotations

from contextlib import nullcontext
from typing import TYPE_CHECKING, Callable, ContextManager, Optional

from .diff import diff
from .enums import RunState, StepOutcome
from .errors import (
    CheckpointFailure,
    ExecutionFailure,
    MarkerRegressionError,
    PlatformAPIError,
    ShelltideError,
)
from .gateways import ChangeCatalog, ExecutionGateway, RevisionStore, ValidationGateway
from .logging_setup import log_error, log_info, log_warning
from .models import (
    ExecutionOutcome,
    ExecutionProgress,
    MigrationRequest,
    MigrationResult,
    Plan,
    PlannedChange,
    RevisionMarker,
)
from .planner import MigrationPlanner

if TYPE_CHECKING:
    from .database import MigrationJournal


LockFactory = Callable[[], ContextManager[None]]


class MigrationExecutor:
    """Drives one migrate invocation against injected capabilities.

    Args:
        revision_store: Marker persistence for the target
        catalog: Source of changes and their SQL
        validator: Batch pre-execution checks
        gateway: Applies one change to one database
        lock: Factory returning the exclusive store lock; held around the
            whole Validating -> Executing -> checkpoint sequence
        journal: Optional MigrationJournal for the audit trail
        on_plan: Optional callback receiving the validated plan before
            execution starts
        on_step: Optional callback ``(planned_change, outcome)`` for progress
            display
    """

    def __init__(
        self,
        revision_store: RevisionStore,
        catalog: ChangeCatalog,
        validator: ValidationGateway,
        gateway: ExecutionGateway,
        *,
        lock: Optional[LockFactory] = None,
        journal: Optional["MigrationJournal"] = None,
        on_plan: Optional[Callable[[Plan], None]] = None,
        on_step: Optional[Callable[[PlannedChange, ExecutionOutcome], None]] = None,
    ):
        self.revision_store = revision_store
        self.catalog = catalog
        self.gateway = gateway
        self.planner = MigrationPlanner(catalog, validator)
        self.lock = lock or nullcontext
        self.journal = journal
        self.on_plan = on_plan
        self.on_step = on_step

        self.state = RunState.IDLE
        self.plan: Optional[Plan] = None
        self.progress: Optional[ExecutionProgress] = None
        self._run_id: Optional[int] = None
        self._marker: Optional[RevisionMarker] = None

    # ========== State handling ==========

    def _transition(self, state: RunState) -> None:
        log_info(f"Migration state: {self.state.value} -> {state.value}")
        self.state = state
        if self.journal is not None and not state.is_terminal:
            self.journal.update_state(self._run_id, state)

    def _finish(
        self,
        state: RunState,
        *,
        failing_change_id: Optional[int] = None,
        diagnostic: str = "",
    ) -> None:
        self._transition(state)
        if self.journal is not None:
            self.journal.finish_run(
                self._run_id,
                state,
                final_marker_id=self._marker.issue_id if self._marker else None,
                failing_change_id=failing_change_id,
                diagnostic=diagnostic,
            )

    # ========== Entry point ==========

    def migrate(self, request: MigrationRequest) -> MigrationResult:
        """Run one migration.

        Returns:
            MigrationResult in state COMPLETED (possibly ``already_satisfied``).

        Raises:
            PlanningError: Aborted before any side effect (UnknownTarget,
                EmptyCatalog, ValidationFailure).
            ExecutionFailure: A change failed; the checkpointed prefix stands.
            PlatformAPIError: A platform call failed while planning.
            ConfigBusy: Another invocation holds the store lock.
        """
        if self.state != RunState.IDLE:
            raise RuntimeError("MigrationExecutor instances run a single migration")

        with self.lock():
            if self.journal is not None:
                self._run_id = self.journal.start_run(request)
            self._transition(RunState.VALIDATING)

            try:
                plan, current_id, already_satisfied = self._prepare(request)
            except ShelltideError as e:
                log_error(f"Migration to {request.target} aborted: {e}")
                self._finish(RunState.ABORTED, diagnostic=str(e))
                raise

            if already_satisfied:
                log_info(f"{request.target} already at #{current_id}; nothing to apply")
                self._finish(RunState.COMPLETED)
                return MigrationResult(
                    state=RunState.COMPLETED,
                    request=request,
                    current_id=current_id,
                    target_id=plan.target_id,
                    final_marker=self._marker,
                    already_satisfied=True,
                )

            if self.on_plan is not None:
                self.on_plan(plan)
            self._transition(RunState.EXECUTING)
            self._execute(plan)

            self._finish(RunState.COMPLETED)
            return MigrationResult(
                state=RunState.COMPLETED,
                request=request,
                current_id=current_id,
                target_id=plan.target_id,
                applied=self.progress.applied_ids if self.progress else [],
                final_marker=self._marker,
            )

    # ========== Validating ==========

    def _prepare(self, request: MigrationRequest) -> tuple[Plan, Optional[int], bool]:
        """Diff and plan. Performs no writes."""
        self._marker = self.revision_store.get(request.target)
        current_id = self._marker.issue_id if self._marker else None
        if self.journal is not None:
            self.journal.update_state(self._run_id, RunState.VALIDATING, start_marker_id=current_id)

        available = self.catalog.list_changes(request.source, request.target.database)
        done = self.catalog.list_done(request.source_label)

        result = diff(
            self._marker,
            available,
            request.requested_target,
            done_changes=done,
            source_label=request.source_label,
        )
        log_info(
            f"Source '{request.source_label}' target #{result.target_id}, "
            f"{request.target} at #{current_id if current_id is not None else '-'}"
        )

        if result.already_satisfied:
            empty = Plan(
                source=request.source,
                target=request.target,
                source_label=request.source_label,
                requested_target=request.requested_target,
                target_id=result.target_id,
            )
            return empty, current_id, True

        plan = self.planner.build_plan(
            result.pending,
            request.source,
            request.target,
            source_label=request.source_label,
            requested_target=request.requested_target,
            target_id=result.target_id,
        )
        self.plan = plan
        return plan, current_id, False

    # ========== Executing ==========

    def _execute(self, plan: Plan) -> None:
        self.progress = ExecutionProgress()

        for entry in plan:
            outcome = self._apply(entry, plan)
            if self.on_step is not None:
                self.on_step(entry, outcome)

            if not outcome.success:
                step = StepOutcome.UNKNOWN if outcome.unknown else StepOutcome.FAILED
                self._journal_step(entry.id, step, diagnostic=outcome.diagnostic)
                self._fail(entry.id, outcome.diagnostic)

            entry.change.applied_at = outcome.applied_at
            self._journal_step(entry.id, StepOutcome.APPLIED, applied_at=outcome.applied_at)
            self._checkpoint(plan, entry.id, outcome.sheet, applied=entry)
            self.progress.record(entry.change)

        # Done issues between the last applied change and the target never
        # touched this database; advance the marker past them.
        if self._marker is None or self._marker.issue_id < plan.target_id:
            if not plan.entries:
                log_info(f"No changes in range; advancing marker of {plan.target} to #{plan.target_id}")
            self._checkpoint(plan, plan.target_id, self._marker.sheet if self._marker else None)

    def _apply(self, entry: PlannedChange, plan: Plan) -> ExecutionOutcome:
        log_info(f"Applying change #{entry.id} to {plan.target}")
        try:
            outcome = self.gateway.apply(entry.payload, plan.target)
        except PlatformAPIError as e:
            outcome = ExecutionOutcome.failed(str(e))
        if outcome.success:
            log_info(f"Applied change #{entry.id}")
        else:
            log_error(f"Change #{entry.id} failed: {outcome.diagnostic}")
        return outcome

    def _checkpoint(
        self,
        plan: Plan,
        issue_id: int,
        sheet: Optional[str],
        *,
        applied: Optional[PlannedChange] = None,
    ) -> None:
        """Write the target marker for ``issue_id``; never moves it backward.

        ``applied`` is the change that just ran, if any; a failed write then
        reports it as applied but unrecorded.
        """
        current = self._marker
        if current is not None and current.source_label == plan.source_label and issue_id < current.issue_id:
            error = MarkerRegressionError(str(plan.target), current.issue_id, issue_id)
            log_error(str(error))
            self._finish(RunState.PARTIALLY_FAILED, failing_change_id=issue_id, diagnostic=str(error))
            raise error

        marker = RevisionMarker(
            source_label=plan.source_label,
            issue_id=issue_id,
            sheet=sheet,
        )
        try:
            self.revision_store.set(plan.target, marker)
        except PlatformAPIError as e:
            log_error(f"Checkpoint write for #{issue_id} on {plan.target} failed: {e}")
            if applied is not None and self.progress is not None:
                self.progress.applied_unrecorded = applied.change
            self._finish(RunState.PARTIALLY_FAILED, failing_change_id=issue_id, diagnostic=str(e))
            raise CheckpointFailure(marker, str(e), self.progress) from e

        self._marker = marker
        log_info(f"Checkpoint: {plan.target} marker -> {marker}")

    def _fail(self, change_id: int, diagnostic: str) -> None:
        abandoned = []
        if self.plan is not None:
            abandoned = [e.id for e in self.plan.entries if e.id > change_id]
        if abandoned:
            log_warning(f"Abandoning changes {abandoned}")
        self._finish(RunState.PARTIALLY_FAILED, failing_change_id=change_id, diagnostic=diagnostic)
        raise ExecutionFailure(change_id, diagnostic, self.progress)

    def _journal_step(self, change_id: int, outcome: StepOutcome, **kwargs) -> None:
        if self.journal is not None:
            self.journal.record_step(self._run_id, change_id, outcome, **kwargs)
