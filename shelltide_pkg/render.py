"""Rich-based table rendering for the shelltide CLI.

Status, plan, validation, environment, configuration, and history tables.
Every renderer prints through the shared console from ansi.get_console().
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Sequence

from rich import box
from rich.table import Table

from .ansi import get_console, info, style_if_enabled
from .enums import RunState, StatusKind

if TYPE_CHECKING:
    from .config import Environment, ShelltideConfig
    from .database import RunRecord
    from .models import Plan, StatusReport, StatusRow, ValidationResult


_STATUS_STYLES = {
    StatusKind.UP_TO_DATE: "green",
    StatusKind.BEHIND: "yellow",
    StatusKind.NO_VERSION: "dim",
    StatusKind.NOT_EXIST: "red",
}

_STATE_STYLES = {
    RunState.COMPLETED.value: "green",
    RunState.PARTIALLY_FAILED.value: "yellow",
    RunState.ABORTED.value: "red",
}


def status_cell(row: "StatusRow") -> str:
    """Colored LATEST CHANGELOG cell for a status row."""
    style = style_if_enabled(_STATUS_STYLES.get(row.kind, ""))
    if not style:
        return row.display
    return f"[{style}]{row.display}[/{style}]"


def render_status_table(report: "StatusReport") -> None:
    """Render the status table followed by the reference footer."""
    console = get_console()

    table = Table(show_header=True, header_style=style_if_enabled("bold cyan"), box=box.SIMPLE)
    table.add_column("SCHEMA", style=style_if_enabled("cyan"), no_wrap=True)
    table.add_column("ENVIRONMENT", no_wrap=True)
    table.add_column("LATEST CHANGELOG", no_wrap=True)

    for row in report.rows:
        table.add_row(row.schema or row.ref.database, row.ref.environment, status_cell(row))

    console.print(table)
    info(f"Reference environment: {report.reference_env} (latest issue: #{report.reference_id})")


def render_plan_table(plan: "Plan") -> None:
    """Render the validated plan about to be executed."""
    table = Table(
        title=f"Plan: {plan.source_label} -> {plan.target} (target #{plan.target_id})",
        show_header=True,
        header_style=style_if_enabled("bold cyan"),
        box=box.SIMPLE,
    )
    table.add_column("#", justify="right", no_wrap=True)
    table.add_column("Issue", style=style_if_enabled("yellow"), justify="right", no_wrap=True)
    table.add_column("Statements", justify="right")
    table.add_column("Changelogs", style=style_if_enabled("dim"), overflow="fold")

    for i, entry in enumerate(plan, 1):
        statements = sum(1 for line in entry.payload.splitlines() if line.strip().endswith(";"))
        table.add_row(
            str(i),
            f"#{entry.id}",
            str(statements or 1),
            ", ".join(name.rsplit("/", 1)[-1] for name in entry.change.payload_ref) or "-",
        )
    get_console().print(table)


def render_validation_failures(failures: Sequence["ValidationResult"]) -> None:
    """Render every failing change id with its diagnostic."""
    table = Table(
        title="Validation failures",
        show_header=True,
        header_style=style_if_enabled("bold red"),
        box=box.SIMPLE,
    )
    table.add_column("Issue", style=style_if_enabled("yellow"), justify="right", no_wrap=True)
    table.add_column("Diagnostic", overflow="fold")
    for failure in failures:
        table.add_row(f"#{failure.change_id}", failure.diagnostic or "(no diagnostic)")
    get_console().print(table)


def render_environment_table(
    environments: dict[str, "Environment"],
    default_source_env: Optional[str] = None,
) -> None:
    """Render the environment alias registry."""
    table = Table(show_header=True, header_style=style_if_enabled("bold cyan"), box=box.SIMPLE)
    table.add_column("NAME", style=style_if_enabled("cyan"), no_wrap=True)
    table.add_column("PROJECT", no_wrap=True)
    table.add_column("INSTANCE", no_wrap=True)
    table.add_column("", style=style_if_enabled("green"))

    for name, env in sorted(environments.items()):
        marker = "source" if name == default_source_env else ""
        table.add_row(name, env.project, env.instance, marker)
    get_console().print(table)


def config_rows(config: "ShelltideConfig") -> list[tuple[str, Any, str, bool]]:
    """(key, display value, description, is_default) for every settable key."""
    from .config import SETTABLE_KEYS, ShelltideConfig
    from .logging_setup import resolve_log_path

    defaults = ShelltideConfig()
    rows = []
    for key, description in SETTABLE_KEYS.items():
        value = config.get_value(key)
        is_default = value == defaults.get_value(key)
        if key == "access_token" and value:
            shown: Any = "********"
        elif key == "log_path" and value is None:
            shown = str(resolve_log_path(config))
        elif value is None:
            shown = "(not set)"
        else:
            shown = value
        rows.append((key, shown, description, is_default))
    rows.sort(key=lambda row: row[0])
    return rows


def render_config_table(config: "ShelltideConfig") -> None:
    table = Table(title="Configuration Values", show_header=True, header_style=style_if_enabled("bold cyan"))
    table.add_column("Setting", style=style_if_enabled("cyan"), no_wrap=True)
    table.add_column("Value", style=style_if_enabled("yellow"))
    table.add_column("Description", style=style_if_enabled("dim white"))
    table.add_column("Status", style=style_if_enabled("green"))

    for key, value, description, is_default in config_rows(config):
        table.add_row(key, str(value), description, "Default" if is_default else "Configured")
    get_console().print(table)


def _short_time(value: Optional[str]) -> str:
    if not value:
        return "-"
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return value


def render_history_table(runs: Sequence["RunRecord"]) -> None:
    """Render recent migrate runs, newest first."""
    table = Table(title="Migration History", show_header=True, header_style=style_if_enabled("bold cyan"))
    table.add_column("Run", justify="right", no_wrap=True)
    table.add_column("Started", style=style_if_enabled("dim"), no_wrap=True)
    table.add_column("Source", no_wrap=True)
    table.add_column("Target", style=style_if_enabled("cyan"), no_wrap=True)
    table.add_column("To", justify="right")
    table.add_column("Marker", justify="right")
    table.add_column("State", no_wrap=True)
    table.add_column("Detail", overflow="fold")

    for run in runs:
        style = style_if_enabled(_STATE_STYLES.get(run.state, ""))
        state = f"[{style}]{run.state}[/{style}]" if style else run.state
        start = f"#{run.start_marker_id}" if run.start_marker_id is not None else "-"
        final = f"#{run.final_marker_id}" if run.final_marker_id is not None else start
        detail = run.diagnostic or ""
        if run.failing_change_id is not None:
            detail = f"#{run.failing_change_id}: {detail}"
        table.add_row(
            str(run.run_id),
            _short_time(run.started_at),
            run.source_label,
            run.target_ref,
            run.requested_target,
            f"{start} -> {final}",
            state,
            detail,
        )
    get_console().print(table)
