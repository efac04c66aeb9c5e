"""Internal package for the shelltide CLI (migration engine and platform adapter)."""
from ._version import __version__
from .ansi import C, header, ok, warn, err, info, fmt_action, initialize_colors, get_console, style_if_enabled
from .constants import (
    get_home_dir, LATEST, MARKER_SEPARATOR,
    DEFAULT_SQL_DIALECT, HTTP_TIMEOUT, LOCK_TIMEOUT, HISTORY_LIMIT,
    ROLLOUT_POLL_INTERVAL, ROLLOUT_NOT_STARTED_TIMEOUT, ROLLOUT_TIMEOUT,
    EXIT_OK, EXIT_PLANNING_FAILURE, EXIT_PARTIAL_FAILURE, EXIT_CONFIG_FAILURE,
)
from .logging_setup import init_logger, log_info, log_error
from .enums import (
    ChangeStatus,
    RunState,
    StatusKind,
    StepOutcome,
    TaskStatus,
)
from .errors import (
    ShelltideError,
    ConfigError,
    EnvironmentNotFound,
    ConfigBusy,
    PlanningError,
    InvalidTarget,
    EmptyCatalog,
    UnknownTarget,
    ValidationFailure,
    ExecutionFailure,
    CheckpointFailure,
    MarkerRegressionError,
    PlatformAPIError,
    DatabaseNotFound,
)
from .models import (
    DatabaseRef,
    ResolvedDatabase,
    RevisionMarker,
    Change,
    TargetSpec,
    parse_target,
    DiffResult,
    ValidationResult,
    ExecutionOutcome,
    PlannedChange,
    Plan,
    ExecutionProgress,
    MigrationRequest,
    MigrationResult,
    StatusRow,
    StatusReport,
)
from .config import (
    Environment,
    ShelltideConfig,
    SETTABLE_KEYS,
    load_config,
    save_config,
    get_config_path,
    create_example_config,
)
from .gateways import (
    RevisionStore,
    ChangeCatalog,
    ValidationGateway,
    ExecutionGateway,
    DatabaseDirectory,
)
from .diff import diff, resolve_target, latest_done_id
from .planner import MigrationPlanner
from .executor import MigrationExecutor
from .status import StatusAggregator, classify, parse_status_filter
from .database import (
    get_database_path,
    get_connection,
    db_transaction,
    initialize_database,
    exclusive_lock,
    MigrationJournal,
    RunRecord,
    StepRecord,
)
from .platform_client import (
    PlatformClient,
    PlatformRevisionStore,
    PlatformChangeCatalog,
    PlatformValidationGateway,
    PlatformExecutionGateway,
    PlatformDatabaseDirectory,
    PlatformGateways,
    build_gateways,
)
from .render import (
    render_status_table,
    render_plan_table,
    render_validation_failures,
    render_environment_table,
    render_config_table,
    render_history_table,
)
