"""Tests for shelltide_pkg.platform_client module (requests mocked)."""

import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from shelltide_pkg.constants import POLL_MAX_RETRIES, POLL_RETRY_DELAY
from shelltide_pkg.enums import ChangeStatus
from shelltide_pkg.errors import ConfigError, DatabaseNotFound, PlatformAPIError
from shelltide_pkg.models import Change, DatabaseRef, RevisionMarker
from shelltide_pkg.platform_client import (
    PlatformChangeCatalog,
    PlatformClient,
    PlatformDatabaseDirectory,
    PlatformExecutionGateway,
    PlatformRevisionStore,
    PlatformValidationGateway,
    RolloutResult,
    build_gateways,
    parse_resource_number,
    parse_timestamp,
    rollout_summary,
)


BASE = "https://bb.example.com"


def response(status=200, payload=None, text=None):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.json.return_value = payload if payload is not None else {}
    resp.text = text if text is not None else str(payload or "")
    return resp


def rollout(*statuses):
    return {
        "name": "projects/p/rollouts/9",
        "stages": [{"tasks": [{"name": f"task-{i}", "status": s, "target": "instances/i/databases/app"}
                              for i, s in enumerate(statuses)]}],
    }


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def session():
    s = MagicMock(spec=requests.Session)
    s.headers = {}
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(session, clock):
    return PlatformClient(BASE + "/", "tok", session=session, sleep=clock.sleep, clock=clock)


class TestHelpers:
    """Tests for resource-name and timestamp helpers."""

    def test_parse_resource_number(self):
        assert parse_resource_number("projects/proj-dev/issues/244", "issues") == ("proj-dev", 244)

    @pytest.mark.parametrize("name", ["projects/p/plans/1", "projects/p/issues/x", "issues/1", ""])
    def test_parse_resource_number_invalid(self, name):
        with pytest.raises(ValueError):
            parse_resource_number(name, "issues")

    def test_parse_timestamp_nanoseconds(self):
        assert parse_timestamp("2024-05-01T12:34:56.123456789Z") == datetime(
            2024, 5, 1, 12, 34, 56, 123456, tzinfo=timezone.utc
        )

    def test_parse_timestamp_plain(self):
        assert parse_timestamp("2024-05-01T12:34:56Z") == datetime(2024, 5, 1, 12, 34, 56, tzinfo=timezone.utc)
        assert parse_timestamp("not a time") is None
        assert parse_timestamp(None) is None

    def test_rollout_summary(self):
        assert rollout_summary(rollout("DONE", "RUNNING", "RUNNING")) == "[1/3] 1 done, 2 running"
        assert rollout_summary({}) == "No tasks"


class TestTransport:
    """Tests for request composition and error mapping."""

    def test_bearer_auth_and_url(self, client, session):
        session.request.return_value = response(200, {"name": "projects/p", "title": "P"})

        assert client.get_project("p")["title"] == "P"
        assert session.headers["Authorization"] == "Bearer tok"
        session.request.assert_called_once_with(
            "GET", f"{BASE}/v1/projects/p", params=None, json=None, timeout=30
        )

    def test_transport_error_wrapped(self, client, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(PlatformAPIError, match="refused"):
            client.get_instance("i")

    def test_http_error_wrapped(self, client, session):
        session.request.return_value = response(500, text="internal")

        with pytest.raises(PlatformAPIError) as exc_info:
            client.get_done_issue_numbers("p")
        assert exc_info.value.status_code == 500
        assert "internal" in str(exc_info.value)

    def test_project_not_found(self, client, session):
        session.request.return_value = response(404, text="not found")

        with pytest.raises(PlatformAPIError, match="Project 'p' not found"):
            client.get_project("p")

    def test_from_config_requires_credentials(self, config):
        config.access_token = None
        with pytest.raises(ConfigError, match="access_token"):
            PlatformClient.from_config(config)

        config.access_token = "t"
        config.platform_url = None
        with pytest.raises(ConfigError, match="platform_url"):
            PlatformClient.from_config(config)

    def test_build_gateways(self, config):
        gateways = build_gateways(config)
        assert gateways.client.base_url == "https://platform.example.com"
        assert isinstance(gateways.catalog, PlatformChangeCatalog)


class TestIssuesAndDatabases:
    """Tests for issue and database listings."""

    def test_done_issue_numbers(self, client, session):
        session.request.return_value = response(200, {"issues": [
            {"name": "projects/p/issues/244"},
            {"name": "projects/p/issues/241"},
            {"name": "garbage"},
        ]})

        assert client.get_done_issue_numbers("p") == [241, 244]
        _, kwargs = session.request.call_args
        assert kwargs["params"] == {"filter": 'status="DONE"'}

    def test_list_databases(self, client, session):
        session.request.return_value = response(200, {"databases": [
            {"name": "instances/i/databases/billing"},
            {"name": "instances/i/databases/app"},
        ]})

        assert client.list_databases("i") == ["app", "billing"]


class TestRevisions:
    """Tests for revision marker reads and writes."""

    def test_latest_by_create_time(self, client, session):
        session.request.return_value = response(200, {"revisions": [
            {"name": "r1", "version": "proj-dev#243", "createTime": "2024-05-02T00:00:00Z"},
            {"name": "r2", "version": "proj-dev#244", "createTime": "2024-05-03T00:00:00Z", "sheet": "s"},
            {"name": "r3", "version": "20240101-manual", "createTime": "2024-06-01T00:00:00Z"},
            {"name": "r4", "version": "proj-dev#240", "createTime": "2024-05-01T00:00:00Z"},
        ]})

        marker = client.get_latest_revision("i", "app")

        assert marker == RevisionMarker("proj-dev", 244, sheet="s")

    def test_no_revisions(self, client, session):
        session.request.return_value = response(200, {})
        assert client.get_latest_revision("i", "app") is None

    def test_missing_database(self, client, session):
        session.request.return_value = response(404, text="database not found")

        with pytest.raises(DatabaseNotFound):
            client.get_latest_revision("i", "app")

    def test_create_revision(self, client, session):
        session.request.return_value = response(200, {"name": "instances/i/databases/app/revisions/5"})

        client.create_revision("i", "app", RevisionMarker("proj-dev", 244, sheet="projects/p/sheets/1"))

        args, kwargs = session.request.call_args
        assert args == ("POST", f"{BASE}/v1/instances/i/databases/app/revisions")
        assert kwargs["json"] == {"version": "proj-dev#244", "sheet": "projects/p/sheets/1"}


class TestSqlCheck:
    """Tests for the SQL check call."""

    def test_pass(self, client, session):
        session.request.return_value = response(200, {})
        assert client.check_sql("i", "app", "SELECT 1;") is None

        _, kwargs = session.request.call_args
        assert kwargs["json"] == {"name": "instances/i/databases/app", "statement": "SELECT 1;"}

    def test_advices_fail(self, client, session):
        session.request.return_value = response(200, {"advices": [{"title": "Syntax error", "content": "near FROMM"}]})

        diagnostic = client.check_sql("i", "app", "SELECT * FROMM t;")

        assert diagnostic == "SQL check failed: Syntax error: near FROMM"

    def test_client_error_is_diagnostic(self, client, session):
        session.request.return_value = response(400, text="bad statement")
        assert "bad statement" in client.check_sql("i", "app", "x")

    def test_server_error_raises(self, client, session):
        session.request.return_value = response(503, text="unavailable")
        with pytest.raises(PlatformAPIError):
            client.check_sql("i", "app", "x")


class TestApplyWorkflow:
    """Tests for sheet, plan, issue and rollout creation."""

    def test_create_sheet_base64(self, client, session):
        session.request.return_value = response(200, {"name": "projects/p/sheets/3"})

        assert client.create_sheet("p", "ALTER TABLE t ADD c INT;", "MYSQL") == "projects/p/sheets/3"

        _, kwargs = session.request.call_args
        assert base64.b64decode(kwargs["json"]["content"]).decode() == "ALTER TABLE t ADD c INT;"
        assert kwargs["json"]["engine"] == "MYSQL"

    def test_create_plan_body(self, client, session):
        session.request.return_value = response(200, {"name": "projects/p/plans/4"})

        client.create_plan("p", "i", "app", "projects/p/sheets/3")

        _, kwargs = session.request.call_args
        spec = kwargs["json"]["steps"][0]["specs"][0]
        assert spec["change_database_config"] == {
            "target": "instances/i/databases/app",
            "sheet": "projects/p/sheets/3",
            "type": "MIGRATE",
        }
        assert spec["id"]

    def test_response_without_name(self, client, session):
        session.request.return_value = response(200, {})
        with pytest.raises(PlatformAPIError, match="no name"):
            client.create_issue("p", "projects/p/plans/4")


class TestWaitForRollout:
    """Tests for rollout polling."""

    def test_completes(self, client, session, clock):
        session.request.side_effect = [
            response(200, rollout("RUNNING", "NOT_STARTED")),
            response(200, rollout("DONE", "SKIPPED")),
        ]

        result = client.wait_for_rollout("projects/p/rollouts/9", poll_interval=2)

        assert result == RolloutResult(True, False, "")
        assert clock.sleeps == [2]

    def test_failed_task(self, client, session):
        session.request.return_value = response(200, rollout("DONE", "FAILED"))

        result = client.wait_for_rollout("projects/p/rollouts/9")

        assert not result.success
        assert not result.unknown
        assert "task-1" in result.message

    def test_stuck_not_started_is_unknown(self, client, session):
        session.request.return_value = response(200, rollout("NOT_STARTED"))

        result = client.wait_for_rollout("projects/p/rollouts/9", poll_interval=2, not_started_timeout=5)

        assert not result.success
        assert result.unknown
        assert "NOT_STARTED" in result.message

    def test_overall_timeout_is_unknown(self, client, session):
        session.request.return_value = response(200, rollout("RUNNING"))

        result = client.wait_for_rollout("projects/p/rollouts/9", poll_interval=2, timeout=5)

        assert result.unknown
        assert "did not finish" in result.message

    def test_empty_rollout_keeps_waiting(self, client, session):
        session.request.side_effect = [response(200, {"stages": []}), response(200, rollout("DONE"))]

        assert client.wait_for_rollout("projects/p/rollouts/9").success

    def test_get_retried(self, client, session, clock):
        session.request.side_effect = [
            requests.Timeout("slow"),
            requests.ConnectionError("reset"),
            response(200, rollout("DONE")),
        ]

        assert client.wait_for_rollout("projects/p/rollouts/9").success
        assert clock.sleeps == [POLL_RETRY_DELAY, POLL_RETRY_DELAY]

    def test_retries_exhausted_is_unknown(self, client, session):
        session.request.side_effect = requests.ConnectionError("down")

        result = client.wait_for_rollout("projects/p/rollouts/9")

        assert result.unknown
        assert session.request.call_count == POLL_MAX_RETRIES


class TestAdapters:
    """Tests for the capability adapters over a mocked client."""

    @pytest.fixture
    def api(self):
        return MagicMock(spec=PlatformClient)

    def test_revision_store(self, api, config):
        store = PlatformRevisionStore(api, config)
        api.get_latest_revision.return_value = RevisionMarker("proj-dev", 7)

        assert store.get(DatabaseRef("prod", "app")).issue_id == 7
        api.get_latest_revision.assert_called_once_with("inst-prod", "app")

        store.set(DatabaseRef("prod", "app"), RevisionMarker("proj-dev", 8))
        api.create_revision.assert_called_once_with("inst-prod", "app", RevisionMarker("proj-dev", 8))

    def test_catalog_list_done(self, api, config):
        api.get_done_issue_numbers.return_value = [241, 244]

        done = PlatformChangeCatalog(api, config).list_done("proj-dev")

        assert [c.id for c in done] == [241, 244]
        assert all(c.status == ChangeStatus.DONE for c in done)

    def test_catalog_list_changes(self, api, config):
        api.get_done_issue_numbers.return_value = [241, 243]
        api.list_changelogs.return_value = [
            {"name": "cl/2", "issue": "projects/proj-dev/issues/241", "statement": "B;",
             "createTime": "2024-05-01T00:00:02Z"},
            {"name": "cl/1", "issue": "projects/proj-dev/issues/241", "statement": "A;",
             "createTime": "2024-05-01T00:00:01Z"},
            {"name": "cl/3", "issue": "projects/other/issues/242", "statement": "X;"},
            {"name": "cl/4", "issue": "projects/proj-dev/issues/243", "statement": ""},
            {"name": "cl/5", "issue": "projects/proj-dev/issues/243", "statement": "C;",
             "changedResources": {"databases": [{"name": "billing"}]}},
            {"name": "cl/6", "issue": "projects/proj-dev/issues/244", "statement": "D;", "status": "DONE"},
        ]
        catalog = PlatformChangeCatalog(api, config)

        changes = catalog.list_changes(DatabaseRef("dev", "app"), "app")

        assert [(c.id, c.status) for c in changes] == [(241, ChangeStatus.DONE), (244, ChangeStatus.PENDING)]
        assert changes[0].payload_ref == ("cl/1", "cl/2")
        assert catalog.fetch_payload(changes[0]) == "A;\nB;"
        api.list_changelogs.assert_called_once_with("inst-dev", "app")
        api.get_changelog_statement.assert_not_called()

    def test_catalog_fetches_uncached_payload(self, api, config):
        api.get_changelog_statement.return_value = "ALTER TABLE t ADD c INT;"

        payload = PlatformChangeCatalog(api, config).fetch_payload(Change(id=9, payload_ref=("cl/9",)))

        assert payload == "ALTER TABLE t ADD c INT;"
        api.get_changelog_statement.assert_called_once_with("cl/9")

    def test_validation_gateway(self, api, config):
        api.check_sql.side_effect = [None, "SQL check failed: nope"]

        results = PlatformValidationGateway(api, config).check(DatabaseRef("prod", "app"), [(1, "a"), (2, "b")])

        assert [(r.change_id, r.passed, r.diagnostic) for r in results] == [
            (1, True, ""),
            (2, False, "SQL check failed: nope"),
        ]

    def test_execution_gateway_success(self, api, config):
        api.create_sheet.return_value = "projects/proj-prod/sheets/1"
        api.create_plan.return_value = "projects/proj-prod/plans/2"
        api.create_issue.return_value = "projects/proj-prod/issues/3"
        api.create_rollout.return_value = "projects/proj-prod/rollouts/4"
        api.wait_for_rollout.return_value = RolloutResult(True, False, "")

        outcome = PlatformExecutionGateway(api, config).apply("SQL;", DatabaseRef("prod", "app"))

        assert outcome.success
        assert outcome.applied_at is not None
        assert outcome.sheet == "projects/proj-prod/sheets/1"
        api.create_sheet.assert_called_once_with("proj-prod", "SQL;", "MYSQL")
        api.create_plan.assert_called_once_with("proj-prod", "inst-prod", "app", "projects/proj-prod/sheets/1")
        assert api.wait_for_rollout.call_args[0] == ("projects/proj-prod/rollouts/4",)

    def test_execution_gateway_failure_before_rollout(self, api, config):
        api.create_sheet.return_value = "s"
        api.create_plan.side_effect = PlatformAPIError("plan rejected", 400)

        outcome = PlatformExecutionGateway(api, config).apply("SQL;", DatabaseRef("prod", "app"))

        assert not outcome.success
        assert not outcome.unknown
        api.create_rollout.assert_not_called()

    def test_execution_gateway_rollout_creation_unknown(self, api, config):
        api.create_rollout.side_effect = PlatformAPIError("timed out")

        outcome = PlatformExecutionGateway(api, config).apply("SQL;", DatabaseRef("prod", "app"))

        assert outcome.unknown
        api.wait_for_rollout.assert_not_called()

    def test_execution_gateway_rollout_timeout(self, api, config):
        api.wait_for_rollout.return_value = RolloutResult(False, True, "did not finish")

        outcome = PlatformExecutionGateway(api, config).apply("SQL;", DatabaseRef("prod", "app"))

        assert not outcome.success
        assert outcome.unknown

    def test_directory(self, api, config):
        api.list_databases.return_value = ["app"]

        assert PlatformDatabaseDirectory(api, config).list_databases("staging") == ["app"]
        api.list_databases.assert_called_once_with("inst-staging")
