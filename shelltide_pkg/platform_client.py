"""REST client and capability adapters for the change-management platform.

PlatformClient wraps the HTTP API (projects, issues, changelogs, revisions,
SQL check, sheets, plans, rollouts). The Platform* adapters implement the
engine's capability interfaces on top of it, resolving DatabaseRefs through
the configuration.

Applying a change is a four-step remote workflow (sheet -> plan -> issue ->
rollout) followed by polling the rollout until every task is terminal. It is
hidden entirely behind PlatformExecutionGateway.apply.
"""

from __future__ import annotations

import base64
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

import requests

from .config import ShelltideConfig
from .constants import (
    CHANGELOG_PAGE_SIZE,
    DEFAULT_SQL_DIALECT,
    HTTP_TIMEOUT,
    ISSUE_TITLE,
    POLL_MAX_RETRIES,
    POLL_RETRY_DELAY,
    ROLLOUT_NOT_STARTED_TIMEOUT,
    ROLLOUT_POLL_INTERVAL,
    ROLLOUT_TIMEOUT,
)
from .enums import ChangeStatus, TaskStatus
from .errors import ConfigError, DatabaseNotFound, PlatformAPIError
from .gateways import (
    ChangeCatalog,
    DatabaseDirectory,
    ExecutionGateway,
    RevisionStore,
    ValidationGateway,
)
from .logging_setup import log_debug, log_error, log_info, log_timing, log_warning
from .models import (
    Change,
    DatabaseRef,
    ExecutionOutcome,
    RevisionMarker,
    ValidationResult,
)


# ========== Resource name helpers ==========

def parse_resource_number(name: str, collection: str) -> tuple[str, int]:
    """Parse ``projects/{project}/{collection}/{number}``.

    Returns:
        (project, number)

    Raises:
        ValueError: If the name does not have that shape.
    """
    parts = name.split("/")
    if len(parts) != 4 or parts[0] != "projects" or parts[2] != collection:
        raise ValueError(f"Invalid {collection} name: {name}")
    try:
        return parts[1], int(parts[3])
    except ValueError:
        raise ValueError(f"Invalid {collection} number in: {name}") from None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp (nanosecond precision tolerated)."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ========== Rollout helpers ==========

def rollout_tasks(rollout: dict[str, Any]) -> list[dict[str, Any]]:
    return [task for stage in rollout.get("stages") or [] for task in stage.get("tasks") or []]


def task_status(task: dict[str, Any]) -> TaskStatus:
    try:
        return TaskStatus(task.get("status", ""))
    except ValueError:
        return TaskStatus.PENDING


def rollout_summary(rollout: dict[str, Any]) -> str:
    """Short progress line such as ``[1/3] 1 done, 2 running``."""
    tasks = rollout_tasks(rollout)
    if not tasks:
        return "No tasks"
    counts: dict[str, int] = {}
    for task in tasks:
        status = task_status(task)
        key = status.value.lower().replace("_", " ") if status in (
            TaskStatus.DONE, TaskStatus.RUNNING, TaskStatus.PENDING, TaskStatus.NOT_STARTED, TaskStatus.FAILED
        ) else "other"
        counts[key] = counts.get(key, 0) + 1
    finished = sum(1 for t in tasks if task_status(t).is_terminal)
    parts = [f"{counts[k]} {k}" for k in ("done", "running", "pending", "not started", "failed", "other") if k in counts]
    return f"[{finished}/{len(tasks)}] {', '.join(parts)}"


def rollout_failure_message(rollout: dict[str, Any]) -> str:
    failed = [t for t in rollout_tasks(rollout) if not task_status(t).is_success]
    if not failed:
        return "Rollout failed with unknown error"
    details = "; ".join(
        f"Task '{t.get('name', '?')}' (target: {t.get('target', '?')}, status: {task_status(t).value})"
        for t in failed
    )
    return f"Rollout failed. {len(failed)} task(s) failed: {details}"


@dataclass
class RolloutResult:
    """Terminal (or abandoned) state of a rollout wait."""

    success: bool
    unknown: bool
    message: str


# ========== HTTP client ==========

class PlatformClient:
    """Thin JSON client for the platform REST API.

    Every transport or HTTP error surfaces as PlatformAPIError. Only the
    rollout status GET is retried; POSTs are never retried.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        timeout: float = HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })
        self.sleep = sleep
        self.clock = clock

    @classmethod
    def from_config(cls, config: ShelltideConfig) -> PlatformClient:
        """Build a client from configuration.

        Raises:
            ConfigError: If the platform URL or access token is missing.
        """
        if not config.platform_url:
            raise ConfigError(
                "platform_url not set. Run: shelltide config set platform_url <url> "
                "(or export SHELLTIDE_URL)"
            )
        if not config.access_token:
            raise ConfigError(
                "No access token found. Run: shelltide config set access_token <token> "
                "(or export SHELLTIDE_ACCESS_TOKEN)"
            )
        return cls(config.platform_url, config.access_token, timeout=config.http_timeout or HTTP_TIMEOUT)

    # ========== Transport ==========

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> requests.Response:
        url = f"{self.base_url}/v1/{path.lstrip('/')}"
        log_debug(f"{method} {url}")
        try:
            return self.session.request(method, url, params=params, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise PlatformAPIError(f"{method} {url} timed out: {e}") from e
        except requests.RequestException as e:
            raise PlatformAPIError(f"{method} {url} failed: {e}") from e

    def _json(self, response: requests.Response, what: str) -> dict[str, Any]:
        if not response.ok:
            raise PlatformAPIError(
                f"Failed to {what}: HTTP {response.status_code} {response.text.strip()}",
                response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise PlatformAPIError(f"Failed to {what}: invalid JSON response") from e
        if not isinstance(data, dict):
            raise PlatformAPIError(f"Failed to {what}: unexpected response shape")
        return data

    # ========== Projects, instances, issues ==========

    def get_project(self, project: str) -> dict[str, Any]:
        response = self._request("GET", f"projects/{project}")
        if response.status_code == 404:
            raise PlatformAPIError(f"Project '{project}' not found.", 404)
        return self._json(response, f"get project '{project}'")

    def get_instance(self, instance: str) -> dict[str, Any]:
        response = self._request("GET", f"instances/{instance}")
        if response.status_code == 404:
            raise PlatformAPIError(f"Instance '{instance}' not found.", 404)
        return self._json(response, f"get instance '{instance}'")

    @log_timing
    def get_done_issue_numbers(self, project: str) -> list[int]:
        """Issue numbers of the project's DONE issues, ascending."""
        response = self._request("GET", f"projects/{project}/issues", params={"filter": 'status="DONE"'})
        data = self._json(response, f"fetch issues for project '{project}'")
        numbers = set()
        for issue in data.get("issues") or []:
            try:
                _, number = parse_resource_number(issue.get("name", ""), "issues")
            except ValueError as e:
                log_warning(f"Skipping issue with unparseable name: {e}")
                continue
            numbers.add(number)
        return sorted(numbers)

    def list_databases(self, instance: str) -> list[str]:
        response = self._request("GET", f"instances/{instance}/databases", params={"pageSize": CHANGELOG_PAGE_SIZE})
        data = self._json(response, f"list databases of instance '{instance}'")
        names = []
        for db in data.get("databases") or []:
            name = db.get("name", "")
            if name:
                names.append(name.rsplit("/", 1)[-1])
        return sorted(names)

    # ========== Revisions ==========

    def get_latest_revision(self, instance: str, database: str) -> Optional[RevisionMarker]:
        """Most recent parseable revision of a database, or None.

        Raises:
            DatabaseNotFound: If the platform answers 404.
        """
        response = self._request("GET", f"instances/{instance}/databases/{database}/revisions")
        if response.status_code == 404:
            raise DatabaseNotFound(instance, database)
        data = self._json(response, f"get revisions of {instance}/{database}")

        latest: Optional[tuple[datetime, RevisionMarker]] = None
        for revision in data.get("revisions") or []:
            version = revision.get("version")
            if not version:
                continue
            try:
                marker = RevisionMarker.decode(version, sheet=revision.get("sheet"))
            except ValueError as e:
                log_debug(f"Ignoring revision {revision.get('name')}: {e}")
                continue
            created = parse_timestamp(revision.get("createTime")) or _EPOCH
            if latest is None or created >= latest[0]:
                latest = (created, marker)
        return latest[1] if latest else None

    def create_revision(self, instance: str, database: str, marker: RevisionMarker) -> dict[str, Any]:
        body: dict[str, Any] = {"version": marker.encode()}
        if marker.sheet:
            body["sheet"] = marker.sheet
        response = self._request("POST", f"instances/{instance}/databases/{database}/revisions", body=body)
        if response.status_code == 404:
            raise DatabaseNotFound(instance, database)
        return self._json(response, f"create revision {marker} on {instance}/{database}")

    # ========== Changelogs ==========

    def list_changelogs(self, instance: str, database: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"instances/{instance}/databases/{database}/changelogs",
            params={"pageSize": CHANGELOG_PAGE_SIZE},
        )
        if response.status_code == 404:
            raise DatabaseNotFound(instance, database)
        data = self._json(response, f"list changelogs of {instance}/{database}")
        return list(data.get("changelogs") or [])

    def get_changelog_statement(self, name: str) -> str:
        response = self._request("GET", name, params={"view": "CHANGELOG_VIEW_FULL"})
        data = self._json(response, f"get changelog '{name}'")
        return data.get("statement") or ""

    # ========== SQL check ==========

    def check_sql(self, instance: str, database: str, sql: str) -> Optional[str]:
        """Run the platform's static SQL check.

        Returns:
            None if the statement passes, otherwise a diagnostic string.

        Raises:
            PlatformAPIError: On transport, auth, or server errors.
        """
        response = self._request(
            "POST",
            "sql/check",
            body={"name": f"instances/{instance}/databases/{database}", "statement": sql},
        )
        if 400 <= response.status_code < 500 and response.status_code not in (401, 403, 404):
            return f"SQL check failed: {response.text.strip()}"
        data = self._json(response, "check SQL")

        advices = data.get("advices") or data.get("advises") or []
        if advices:
            messages = [
                f"{a.get('title', 'advice')}: {a.get('content', '')}".strip(": ")
                for a in advices
                if isinstance(a, dict)
            ]
            return "SQL check failed: " + ("; ".join(messages) or str(advices))
        return None

    # ========== Sheet -> plan -> issue -> rollout ==========

    def create_sheet(self, project: str, sql: str, engine: str) -> str:
        content = base64.b64encode(sql.encode("utf-8")).decode("ascii")
        response = self._request("POST", f"projects/{project}/sheets", body={"content": content, "engine": engine})
        return self._require_name(self._json(response, "create sheet"), "sheet")

    def create_plan(self, project: str, instance: str, database: str, sheet: str) -> str:
        body = {
            "steps": [{
                "specs": [{
                    "id": str(uuid.uuid4()),
                    "change_database_config": {
                        "target": f"instances/{instance}/databases/{database}",
                        "sheet": sheet,
                        "type": "MIGRATE",
                    },
                }],
            }],
        }
        response = self._request("POST", f"projects/{project}/plans", body=body)
        return self._require_name(self._json(response, "create plan"), "plan")

    def create_issue(self, project: str, plan: str) -> str:
        body = {"plan": plan, "title": ISSUE_TITLE, "type": "DATABASE_CHANGE"}
        response = self._request("POST", f"projects/{project}/issues", body=body)
        return self._require_name(self._json(response, "create issue"), "issue")

    def create_rollout(self, project: str, plan: str, issue: str) -> str:
        response = self._request("POST", f"projects/{project}/rollouts", body={"plan": plan, "issue": issue})
        return self._require_name(self._json(response, "create rollout"), "rollout")

    def get_rollout(self, rollout: str) -> dict[str, Any]:
        return self._json(self._request("GET", rollout), f"get rollout '{rollout}'")

    @staticmethod
    def _require_name(data: dict[str, Any], what: str) -> str:
        name = data.get("name")
        if not name:
            raise PlatformAPIError(f"Platform response for new {what} has no name")
        return name

    # ========== Rollout polling ==========

    def _get_rollout_with_retry(self, rollout: str) -> dict[str, Any]:
        last_error: Optional[PlatformAPIError] = None
        for attempt in range(1, POLL_MAX_RETRIES + 1):
            try:
                return self.get_rollout(rollout)
            except PlatformAPIError as e:
                last_error = e
                if attempt < POLL_MAX_RETRIES:
                    log_warning(f"Failed to get rollout (attempt {attempt}/{POLL_MAX_RETRIES}), retrying: {e}")
                    self.sleep(POLL_RETRY_DELAY)
        assert last_error is not None
        raise last_error

    def wait_for_rollout(
        self,
        rollout: str,
        *,
        poll_interval: float = ROLLOUT_POLL_INTERVAL,
        not_started_timeout: float = ROLLOUT_NOT_STARTED_TIMEOUT,
        timeout: float = ROLLOUT_TIMEOUT,
    ) -> RolloutResult:
        """Poll until every rollout task is terminal.

        A rollout with no tasks yet is still pending. Giving up (stuck in
        NOT_STARTED, overall timeout, or status unreadable) yields an
        ``unknown`` result: the SQL may or may not have run.
        """
        start = self.clock()
        polls = 0
        log_info(f"Waiting for rollout {rollout} to complete...")

        while True:
            polls += 1
            try:
                data = self._get_rollout_with_retry(rollout)
            except PlatformAPIError as e:
                return RolloutResult(False, True, f"Rollout {rollout} status unavailable: {e}")

            tasks = rollout_tasks(data)
            elapsed = self.clock() - start
            log_debug(f"[{elapsed:>5.0f}s] poll {polls}: {rollout_summary(data)}")

            if tasks and all(task_status(t).is_terminal for t in tasks):
                if all(task_status(t).is_success for t in tasks):
                    log_info(f"Rollout {rollout} completed successfully")
                    return RolloutResult(True, False, "")
                message = rollout_failure_message(data)
                log_error(f"Rollout {rollout} failed: {message}")
                return RolloutResult(False, False, message)

            if tasks and all(task_status(t) == TaskStatus.NOT_STARTED for t in tasks) \
                    and elapsed > not_started_timeout:
                return RolloutResult(
                    False,
                    True,
                    f"Rollout {rollout} stuck in NOT_STARTED state for {not_started_timeout:g}s. "
                    "Check the platform UI for approval requirements or configuration issues.",
                )

            if elapsed > timeout:
                return RolloutResult(
                    False,
                    True,
                    f"Rollout {rollout} did not finish within {timeout:g}s ({rollout_summary(data)})",
                )

            self.sleep(poll_interval)


# ========== Capability adapters ==========

class PlatformRevisionStore(RevisionStore):
    """Revision markers stored as database revisions on the platform."""

    def __init__(self, client: PlatformClient, config: ShelltideConfig):
        self.client = client
        self.config = config

    def get(self, ref: DatabaseRef) -> Optional[RevisionMarker]:
        resolved = self.config.resolve(ref)
        return self.client.get_latest_revision(resolved.instance, resolved.database)

    def set(self, ref: DatabaseRef, marker: RevisionMarker) -> None:
        resolved = self.config.resolve(ref)
        self.client.create_revision(resolved.instance, resolved.database, marker)


class PlatformChangeCatalog(ChangeCatalog):
    """Done issues and per-database changelogs of a source project.

    Changelogs that share an issue number form a single Change whose
    statements are concatenated in creation order.
    """

    def __init__(self, client: PlatformClient, config: ShelltideConfig):
        self.client = client
        self.config = config
        self._statements: dict[str, str] = {}

    def list_done(self, source_label: str) -> list[Change]:
        return [Change(id=n, status=ChangeStatus.DONE) for n in self.client.get_done_issue_numbers(source_label)]

    @log_timing
    def list_changes(self, source: DatabaseRef, target_database: str) -> list[Change]:
        resolved = self.config.resolve(source)
        done = set(self.client.get_done_issue_numbers(resolved.project))

        grouped: dict[int, list[tuple[datetime, dict[str, Any]]]] = {}
        for changelog in self.client.list_changelogs(resolved.instance, resolved.database):
            try:
                project, number = parse_resource_number(changelog.get("issue", ""), "issues")
            except ValueError:
                continue
            if project != resolved.project or not changelog.get("statement"):
                continue
            if not _touches_database(changelog, target_database):
                continue
            created = parse_timestamp(changelog.get("createTime")) or _EPOCH
            grouped.setdefault(number, []).append((created, changelog))

        changes = []
        for number in sorted(grouped):
            entries = sorted(grouped[number], key=lambda item: item[0])
            names = []
            for _, changelog in entries:
                name = changelog.get("name", f"issue-{number}")
                names.append(name)
                self._statements[name] = changelog["statement"]
            changes.append(
                Change(
                    id=number,
                    status=_change_status(number, entries, done),
                    payload_ref=tuple(names),
                    created_at=entries[0][0],
                )
            )
        log_debug(f"Catalog for {source} -> {target_database}: {[c.id for c in changes]}")
        return changes

    def fetch_payload(self, change: Change) -> str:
        statements = []
        for name in change.payload_ref:
            statement = self._statements.get(name)
            if statement is None:
                statement = self.client.get_changelog_statement(name)
            statements.append(statement)
        return "\n".join(statements)


def _touches_database(changelog: dict[str, Any], database: str) -> bool:
    resources = changelog.get("changedResources")
    if not resources:
        return True
    return any(db.get("name") == database for db in resources.get("databases") or [])


def _change_status(
    number: int,
    entries: Sequence[tuple[datetime, dict[str, Any]]],
    done: set[int],
) -> ChangeStatus:
    statuses = {(c.get("status") or "DONE").upper() for _, c in entries}
    if statuses & {"FAILED", "CANCELED", "CANCELLED"}:
        return ChangeStatus.CANCELLED
    if number in done and statuses <= {"DONE"}:
        return ChangeStatus.DONE
    return ChangeStatus.PENDING


class PlatformValidationGateway(ValidationGateway):
    """Runs the platform SQL check for every item of a batch."""

    def __init__(self, client: PlatformClient, config: ShelltideConfig):
        self.client = client
        self.config = config

    def check(self, target: DatabaseRef, items: Sequence[tuple[int, str]]) -> list[ValidationResult]:
        resolved = self.config.resolve(target)
        results = []
        for change_id, sql in items:
            diagnostic = self.client.check_sql(resolved.instance, resolved.database, sql)
            results.append(ValidationResult(change_id, diagnostic is None, diagnostic or ""))
        return results


class PlatformExecutionGateway(ExecutionGateway):
    """Applies a change through sheet -> plan -> issue -> rollout."""

    def __init__(self, client: PlatformClient, config: ShelltideConfig):
        self.client = client
        self.config = config
        self.engine = (config.sql_dialect or DEFAULT_SQL_DIALECT).upper()

    def apply(self, payload: str, target: DatabaseRef) -> ExecutionOutcome:
        resolved = self.config.resolve(target)
        try:
            sheet = self.client.create_sheet(resolved.project, payload, self.engine)
            plan = self.client.create_plan(resolved.project, resolved.instance, resolved.database, sheet)
            issue = self.client.create_issue(resolved.project, plan)
        except PlatformAPIError as e:
            # No rollout exists yet, so nothing ran
            return ExecutionOutcome.failed(str(e))

        try:
            rollout = self.client.create_rollout(resolved.project, plan, issue)
        except PlatformAPIError as e:
            return ExecutionOutcome.failed(f"rollout creation outcome unknown: {e}", unknown=True)

        result = self.client.wait_for_rollout(
            rollout,
            poll_interval=self.config.rollout_poll_interval or ROLLOUT_POLL_INTERVAL,
            not_started_timeout=self.config.rollout_not_started_timeout or ROLLOUT_NOT_STARTED_TIMEOUT,
            timeout=self.config.rollout_timeout or ROLLOUT_TIMEOUT,
        )
        if result.success:
            return ExecutionOutcome.ok(datetime.now(timezone.utc), sheet=sheet)
        return ExecutionOutcome.failed(result.message, unknown=result.unknown)


class PlatformDatabaseDirectory(DatabaseDirectory):
    """Lists databases on an environment's instance."""

    def __init__(self, client: PlatformClient, config: ShelltideConfig):
        self.client = client
        self.config = config

    def list_databases(self, environment: str) -> list[str]:
        return self.client.list_databases(self.config.get_environment(environment).instance)


@dataclass
class PlatformGateways:
    """Every capability the CLI needs, bound to one client."""

    client: PlatformClient
    revision_store: RevisionStore
    catalog: ChangeCatalog
    validator: ValidationGateway
    executor: ExecutionGateway
    directory: DatabaseDirectory


def build_gateways(config: ShelltideConfig) -> PlatformGateways:
    """Create a client from configuration and wrap it in every adapter.

    Raises:
        ConfigError: If credentials are missing.
    """
    client = PlatformClient.from_config(config)
    return PlatformGateways(
        client=client,
        revision_store=PlatformRevisionStore(client, config),
        catalog=PlatformChangeCatalog(client, config),
        validator=PlatformValidationGateway(client, config),
        executor=PlatformExecutionGateway(client, config),
        directory=PlatformDatabaseDirectory(client, config),
    )
