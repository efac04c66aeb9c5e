#!/usr/bin/env python3
"""
Shelltide - CLI for promoting schema changes between database environments.

Replays the done changes of a source project onto target databases through a
change-management platform, one change at a time, checkpointing the target's
revision marker after every step.
"""

# --- import path shim (supports both `python shelltide.py` and `python -m shelltide`) ---
import sys
from pathlib import Path

_here = Path(__file__).resolve().parent
if str(_here) not in sys.path:
    sys.path.insert(0, str(_here))

from shelltide_pkg import (
    # version
    __version__,
    # ansi
    header,
    ok,
    warn,
    err,
    info,
    fmt_action,
    get_console,
    # constants
    LATEST,
    LOCK_TIMEOUT,
    HISTORY_LIMIT,
    EXIT_CONFIG_FAILURE,
    EXIT_PLANNING_FAILURE,
    # errors
    ShelltideError,
    ConfigError,
    EnvironmentNotFound,
    ValidationFailure,
    ExecutionFailure,
    CheckpointFailure,
    MarkerRegressionError,
    # models
    DatabaseRef,
    RevisionMarker,
    MigrationRequest,
    MigrationResult,
    PlannedChange,
    ExecutionOutcome,
    Plan,
    parse_target,
    # config
    Environment,
    ShelltideConfig,
    SETTABLE_KEYS,
    load_config,
    save_config,
    get_config_path,
    create_example_config,
    # engine
    MigrationExecutor,
    StatusAggregator,
    parse_status_filter,
    # local store
    exclusive_lock,
    MigrationJournal,
    # platform
    build_gateways,
    # render
    render_status_table,
    render_plan_table,
    render_validation_failures,
    render_environment_table,
    render_config_table,
    render_history_table,
)
from shelltide_pkg.logging_setup import log_error, log_info

# === Standard library imports ===
import contextvars
import shutil
from typing import NoReturn, Optional

# === Third-party imports ===
import click
import typer
from rich.traceback import install as rich_tb_install

# Install pretty tracebacks, but suppress for Typer/Click exit exceptions
rich_tb_install(show_locals=False, suppress=["typer", "click"])

# === Configuration context ===
_config_context: contextvars.ContextVar[Optional[ShelltideConfig]] = contextvars.ContextVar("config", default=None)


def get_current_config() -> ShelltideConfig:
    """Get config from context or load fresh."""
    config = _config_context.get()
    if config is None:
        config = load_config()
    return config


def exit_with(error: ShelltideError) -> NoReturn:
    """Report a shelltide error and exit with its code."""
    err(str(error))
    log_error(f"{type(error).__name__}: {error}")
    raise typer.Exit(error.exit_code)


def store_lock(config: ShelltideConfig):
    """Exclusive lock on the local store using the configured timeout."""
    timeout = config.lock_timeout if config.lock_timeout is not None else LOCK_TIMEOUT
    return exclusive_lock(timeout)


def parse_ref_arg(text: str) -> DatabaseRef:
    try:
        return DatabaseRef.parse(text)
    except ValueError as e:
        err(str(e))
        raise typer.Exit(EXIT_PLANNING_FAILURE)


# === Typer CLI ===
# Main app + sub-apps (env, config)

app = typer.Typer(
    help="shelltide - promote schema changes between database environments",
    add_completion=True,
)

env_app = typer.Typer(
    help="Environment management - register, list and remove environment aliases"
)

config_app = typer.Typer(
    help="Configuration management - view and modify settings"
)

app.add_typer(env_app, name="env")
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"shelltide {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """shelltide CLI - promote schema changes between database environments."""
    from shelltide_pkg import initialize_colors
    from shelltide_pkg.logging_setup import init_logger
    from shelltide_pkg.database import initialize_database

    _config_context.set(None)
    try:
        config = load_config()
    except ConfigError as e:
        init_logger()
        initialize_colors()
        # `config reset` must stay usable with a broken file
        if ctx.invoked_subcommand == "config":
            warn(str(e))
            return
        exit_with(e)

    init_logger(config)
    initialize_colors(config)

    # Initialize journal AFTER logger is ready
    initialize_database()

    _config_context.set(config)


# === Migrate ===

def _print_plan(plan: Plan) -> None:
    render_plan_table(plan)
    info(fmt_action(f"Applying {len(plan)} change(s) to {plan.target}"))


def _print_step(entry: PlannedChange, outcome: ExecutionOutcome) -> None:
    if outcome.success:
        ok(f"Applied change #{entry.id}")
    elif outcome.unknown:
        err(f"Change #{entry.id} outcome unknown: {outcome.diagnostic}")
    else:
        err(f"Change #{entry.id} failed: {outcome.diagnostic}")


def _print_resume_hint(error: ExecutionFailure, target: DatabaseRef) -> None:
    if not isinstance(error, CheckpointFailure):
        info("Fix the failing change, then re-run the same command to resume.")
    elif error.unrecorded_id is not None:
        warn(f"Change #{error.unrecorded_id} is already applied to {target}. Do not re-run before its marker is recorded.")
        info(f"Record it with: shelltide mark {target} {error.marker.issue_id}")
    else:
        info("No change was left unrecorded. Re-run the same command once revision writes succeed.")


def _print_result(result: MigrationResult) -> None:
    target = result.request.target
    if result.already_satisfied:
        ok(f"Target '{target}' is already up-to-date at #{result.current_id}. Nothing to apply.")
        return
    final = result.final_marker.issue_id if result.final_marker else result.target_id
    if result.advanced_without_execution:
        ok(f"No changes to apply. Revision of {target} updated to #{final}.")
        return
    ok(f"Applied {len(result.applied)} change(s) to {target}: {', '.join(f'#{i}' for i in result.applied)}")
    ok(f"Revision of {target} now at #{final}")


@app.command(help="Apply the source environment's done changes to a target database.")
def migrate(
    source_db: str = typer.Argument(..., help="Database in the default source environment"),
    target: str = typer.Argument(..., help="Target database as <env>/<database>"),
    to: str = typer.Option(LATEST, "--to", "-t", help="Issue number to migrate to, or LATEST"),
) -> None:
    """
    Migrate one target database up to an issue of the source project.

    Changes are validated as a batch first; nothing runs if any fails. Each
    applied change moves the target's revision marker, so re-running after a
    failure resumes right after the last applied change.

    Usage:
        shelltide migrate app prod/app            # up to LATEST
        shelltide migrate app staging/app --to 244
    """
    target_ref = parse_ref_arg(target)
    try:
        config = get_current_config()
        requested = parse_target(to)
        source_env = config.require_default_source_env()
        config.get_environment(target_ref.environment)

        request = MigrationRequest(
            source=DatabaseRef(source_env, source_db),
            source_label=config.get_environment(source_env).project,
            target=target_ref,
            requested_target=requested,
        )
        gateways = build_gateways(config)
        executor = MigrationExecutor(
            gateways.revision_store,
            gateways.catalog,
            gateways.validator,
            gateways.executor,
            lock=lambda: store_lock(config),
            journal=MigrationJournal(),
            on_plan=_print_plan,
            on_step=_print_step,
        )

        header(f"Migrating {target_ref} from '{source_env}' (to {requested})")
        log_info(f"migrate {request.source} -> {target_ref} to {requested}")
        result = executor.migrate(request)
    except ValidationFailure as e:
        render_validation_failures(e.failures)
        exit_with(e)
    except ExecutionFailure as e:
        if e.progress is not None and e.progress.applied_ids:
            info(f"Applied before failure: {', '.join(f'#{i}' for i in e.progress.applied_ids)}")
        err(str(e))
        log_error(f"{type(e).__name__}: {e}")
        _print_resume_hint(e, target_ref)
        raise typer.Exit(e.exit_code)
    except ShelltideError as e:
        exit_with(e)

    _print_result(result)


# === Mark ===

@app.command(help="Record a target database's revision marker without applying anything.")
def mark(
    target: str = typer.Argument(..., help="Target database as <env>/<database>"),
    issue: int = typer.Argument(..., help="Issue number of the last change applied to the target"),
) -> None:
    """
    Write the revision marker of a target by hand.

    Needed when migrate reports a change as applied but its marker as not
    written. The marker is labeled with the default source project and never
    moves backward.
    """
    target_ref = parse_ref_arg(target)
    try:
        config = get_current_config()
        label = config.get_environment(config.require_default_source_env()).project
        config.get_environment(target_ref.environment)
        store = build_gateways(config).revision_store

        with store_lock(config):
            current = store.get(target_ref)
            if current is not None and current.source_label == label and issue < current.issue_id:
                raise MarkerRegressionError(str(target_ref), current.issue_id, issue)
            marker = RevisionMarker(source_label=label, issue_id=issue)
            store.set(target_ref, marker)
    except ShelltideError as e:
        exit_with(e)

    log_info(f"mark {target_ref} -> {marker}")
    ok(f"Revision of {target_ref} set to {marker}")


# === Status ===

@app.command(help="Show every environment's revision against the default source environment.")
def status(
    filter_text: Optional[str] = typer.Argument(
        None, metavar="[ENV[/DATABASE]]", help="Restrict to one environment or one database"
    ),
) -> None:
    """Compare each database's revision marker to the source's latest done issue."""
    try:
        config = get_current_config()
        if not config.environments:
            info("No environments configured. Use `shelltide env add` to add one.")
            return
        gateways = build_gateways(config)
        aggregator = StatusAggregator(config, gateways.revision_store, gateways.catalog, gateways.directory)
        report = aggregator.collect(filter_text)
    except ValueError as e:
        err(str(e))
        raise typer.Exit(EXIT_PLANNING_FAILURE)
    except ShelltideError as e:
        exit_with(e)

    if not report.rows:
        info(f"No databases found in default environment '{report.reference_env}'")
        return
    render_status_table(report)


# === History ===

@app.command(help="Show recent migrate runs recorded in the local journal.")
def history(
    target: Optional[str] = typer.Argument(None, metavar="[ENV[/DATABASE]]", help="Restrict to a target"),
    limit: int = typer.Option(HISTORY_LIMIT, "--limit", "-n", help="Number of runs to show"),
) -> None:
    try:
        env, db = parse_status_filter(target)
    except ValueError as e:
        err(str(e))
        raise typer.Exit(EXIT_PLANNING_FAILURE)

    runs = MigrationJournal().recent_runs(env, db, limit)
    if not runs:
        info("No migrate runs recorded yet.")
        return
    render_history_table(runs)


# === Env Sub-App Commands ===
# Grouped under 'shelltide env'

@env_app.command(name="add", help="Register an environment alias after verifying it on the platform")
def env_add(
    name: str = typer.Argument(..., help="Alias, e.g. prod"),
    project: str = typer.Argument(..., help="Platform project id"),
    instance: str = typer.Argument(..., help="Platform instance id"),
) -> None:
    try:
        config = get_current_config()
        client = build_gateways(config).client

        found = client.get_project(project)
        ok(f"Found project '{found.get('title') or project}'.")
        found = client.get_instance(instance)
        ok(f"Found instance '{found.get('title') or found.get('name') or instance}'.")

        with store_lock(config):
            stored = load_config(apply_env=False)
            stored.environments[name] = Environment(project=project, instance=instance)
            if not save_config(stored):
                err(f"Failed to save config to {get_config_path()}")
                raise typer.Exit(EXIT_CONFIG_FAILURE)
    except ShelltideError as e:
        exit_with(e)

    ok(f"Successfully added environment '{name}' for project '{project}'.")


@env_app.command(name="list", help="List configured environment aliases")
def env_list() -> None:
    try:
        config = get_current_config()
    except ShelltideError as e:
        exit_with(e)
    if not config.environments:
        info("No environments configured. Use `shelltide env add` to add one.")
        return
    render_environment_table(config.environments, config.default_source_env)


@env_app.command(name="remove", help="Remove an environment alias")
def env_remove(
    name: str = typer.Argument(..., help="Alias to remove"),
) -> None:
    try:
        config = get_current_config()
        with store_lock(config):
            stored = load_config(apply_env=False)
            if name not in stored.environments:
                raise EnvironmentNotFound(name)
            del stored.environments[name]
            if not save_config(stored):
                err(f"Failed to save config to {get_config_path()}")
                raise typer.Exit(EXIT_CONFIG_FAILURE)
    except ShelltideError as e:
        exit_with(e)

    ok(f"Removed environment '{name}'.")
    if stored.default_source_env == name:
        warn(f"'{name}' was the default source environment. Set a new one: shelltide config set default.source_env <env-name>")


# === Config Sub-App Commands ===
# Grouped under 'shelltide config'

@config_app.command(name="reset", help="Reset configuration file to defaults")
def config_reset() -> None:
    """Reset config file at ~/.shelltide/config.yaml to defaults."""
    config_path = get_config_path()

    try:
        with exclusive_lock():
            # Backup existing if present
            if config_path.exists():
                backup_path = config_path.with_suffix(".yaml.backup")
                shutil.copy(config_path, backup_path)
                info(f"Backed up existing config to {backup_path}")
            created = create_example_config()
    except ShelltideError as e:
        exit_with(e)

    if created:
        ok(f"Reset config to defaults at {config_path}")
        info("Register environments with: shelltide env add <name> <project> <instance>")
    else:
        err("Failed to reset config file")
        raise typer.Exit(EXIT_CONFIG_FAILURE)


@config_app.command(name="show", help="Display current configuration with all settings and paths")
def config_show() -> None:
    try:
        config = get_current_config()
    except ShelltideError as e:
        exit_with(e)

    config_path = get_config_path()
    header("Current Configuration")
    info(f"Config file: {config_path}")
    get_console().print()
    render_config_table(config)
    get_console().print()
    if config.environments:
        render_environment_table(config.environments, config.default_source_env)
    info("Change values: shelltide config set <key> <value>")
    info("Reset to defaults: shelltide config reset")


def _unknown_key(key: str) -> NoReturn:
    err(f"Unknown configuration key '{key}'")
    info(f"Available keys: {', '.join(SETTABLE_KEYS)}")
    raise typer.Exit(EXIT_CONFIG_FAILURE)


@config_app.command(name="get", help="Retrieve value of a specific configuration key")
def config_get(
    key: str = typer.Argument(..., help="Config key to retrieve")
) -> None:
    if key not in SETTABLE_KEYS:
        _unknown_key(key)
    try:
        value = get_current_config().get_value(key)
    except ShelltideError as e:
        exit_with(e)

    if value is None:
        info(f"'{key}' is not set.")
    else:
        print(value)


@config_app.command(name="set", help="Update value of a specific configuration key")
def config_set(
    key: str = typer.Argument(..., help="Config key to set"),
    value: str = typer.Argument(..., help="Value to set")
) -> None:
    """Set a configuration value in ~/.shelltide/config.yaml."""
    if key not in SETTABLE_KEYS:
        _unknown_key(key)
    try:
        config = get_current_config()
        with store_lock(config):
            stored = load_config(apply_env=False)
            typed_value = stored.set_value(key, value)
            if not save_config(stored):
                err("Failed to save config")
                raise typer.Exit(EXIT_CONFIG_FAILURE)
    except ShelltideError as e:
        exit_with(e)

    shown = "********" if key == "access_token" else typed_value
    ok(f"Set {key} = {shown}")
    info(f"Config saved to {get_config_path()}")


def main() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":
    app()
