"""Dispatch and status requests sent to the migration server."""
from urllib.parse import parse_qs, urlparse
from dashboard.core.http_client import ResilientHttpClient
from dashboard.core.migration_api import MigrationApiClient, build_callback_url
from dashboard.core.workflow import DispatchRequest, JobKey
from tests.conftest import DASHBOARD_URL, MIGRATOR_URL


def test_dispatch_sends_identity_credentials_and_callback(api, remote):
    key = JobKey("3c56530e-ca31", 1234)
    req = DispatchRequest(key=key, site_id=31383, secret="s3", workspace_id=22925473,
                          page_slug="home", manual=True, quality_analysis=False, wave_id="1700000000_4321")

    api.dispatch(req)

    params = remote.requests[0].url.params
    assert remote.requests[0].url.path == "/"
    assert params["mb_project_uuid"] == "3c56530e-ca31"
    assert params["brz_project_id"] == "1234"
    assert params["mb_site_id"] == "31383"
    assert params["mb_secret"] == "s3"
    assert params["brz_workspaces_id"] == "22925473"
    assert params["mb_page_slug"] == "home"
    assert params["mgr_manual"] == "1"
    assert params["quality_analysis"] == "false"
    assert params["wave_id"] == "1700000000_4321"
    assert params["webhook_mb_project_uuid"] == "3c56530e-ca31"
    assert params["webhook_brz_project_id"] == "1234"

    callback = urlparse(params["webhook_url"])
    assert f"{callback.scheme}://{callback.netloc}" == DASHBOARD_URL
    assert callback.path == "/api/webhooks/migration-result"
    assert parse_qs(callback.query) == {
        "source_id": ["3c56530e-ca31"],
        "target_id": ["1234"],
        "wave_id": ["1700000000_4321"],
    }


def test_optional_fields_are_omitted(api, remote):
    api.dispatch(DispatchRequest(key=JobKey("src", 5), site_id=1, secret="x"))

    params = remote.requests[0].url.params
    assert "brz_workspaces_id" not in params
    assert "mb_page_slug" not in params
    assert "quality_analysis" not in params
    assert "wave_id" not in params
    assert params["mgr_manual"] == "0"


def test_callback_url_without_wave():
    url = build_callback_url(DASHBOARD_URL + "/", JobKey("a", 2))
    assert url == f"{DASHBOARD_URL}/api/webhooks/migration-result?source_id=a&target_id=2"


def test_fetch_status_queries_migration_status(api, remote):
    remote.reply("/migration-status", (200, {"status": "in_progress", "progress": 40}))

    response = api.fetch_status(JobKey("src", 9))

    assert response.body["progress"] == 40
    assert remote.requests[0].url.params["brz_project_id"] == "9"


def test_health_reports_unavailable_without_raising(remote, sleeps):
    remote.reply("/health", (500, {}))
    client = MigrationApiClient(base_url=MIGRATOR_URL, dashboard_base_url=DASHBOARD_URL,
                                http=ResilientHttpClient(transport=remote.transport, sleep=sleeps.append))

    info = client.health()

    assert info["available"] is False
    assert info["http_code"] == 500
    assert len(remote.calls("/health")) == 1


def test_health_reports_available(api, remote):
    remote.reply("/health", (200, {"status": "ok"}))

    info = api.health()

    assert info["available"] is True
    assert info["data"] == {"status": "ok"}
