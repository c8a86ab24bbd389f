import pytest

from citesync.core.config import Settings
from citesync.jobs import server
from citesync.jobs.citation_sync import AuditRequestResult
from citesync.models import SyncStats


def _settings(**overrides):
    values = dict(database_url="postgres://test", brightlocal_api_key="bl-key", cron_secret="s3cret")
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def calls(monkeypatch):
    recorded = {}

    def fake_sync(settings):
        recorded["sync"] = settings
        return SyncStats(mapped=2, triggered=1, pulled=1, campaigns=0, errors=1)

    def fake_request_audits(location_ids, store, client, settings):
        recorded["audit"] = location_ids
        return recorded.get("audit_result", AuditRequestResult(queued=1))

    monkeypatch.setattr(server, "get_settings", lambda: _settings())
    monkeypatch.setattr(server, "run_citation_sync", fake_sync)
    monkeypatch.setattr(server, "request_audits", fake_request_audits)
    monkeypatch.setattr(server, "_build_store", lambda: object())
    return recorded


AUTH = {"Authorization": "Bearer s3cret"}


def test_health_endpoint(calls):
    client = server.app.test_client()
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
    assert response.get_json()["brightlocal_configured"] is True


def test_cron_rejects_bad_token(calls):
    client = server.app.test_client()
    assert client.get("/cron/citation-sync").status_code == 401
    assert client.get("/cron/citation-sync", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert "sync" not in calls


def test_cron_returns_summary(calls):
    client = server.app.test_client()
    response = client.get("/cron/citation-sync", headers=AUTH)

    assert response.status_code == 200
    body = response.get_json()
    assert body["ok"] is True
    assert {k: body[k] for k in ("mapped", "triggered", "pulled", "campaigns", "errors")} == {
        "mapped": 2, "triggered": 1, "pulled": 1, "campaigns": 0, "errors": 1,
    }


def test_cron_unconfigured_is_200(calls, monkeypatch):
    monkeypatch.setattr(server, "get_settings", lambda: _settings(brightlocal_api_key=""))
    client = server.app.test_client()

    response = client.get("/cron/citation-sync", headers=AUTH)

    assert response.status_code == 200
    assert response.get_json()["configured"] is False
    assert "sync" not in calls


def test_cron_without_secret_is_open(calls, monkeypatch):
    monkeypatch.setattr(server, "get_settings", lambda: _settings(cron_secret=None))
    client = server.app.test_client()
    assert client.get("/cron/citation-sync").status_code == 200


def test_cron_never_leaks_exceptions(calls, monkeypatch):
    def boom(settings):
        raise RuntimeError("pool exhausted")

    monkeypatch.setattr(server, "run_citation_sync", boom)
    client = server.app.test_client()

    response = client.post("/cron/citation-sync", headers=AUTH)

    assert response.status_code == 200
    assert response.get_json()["errors"] == 1


def test_audit_endpoint_validates_payload(calls, monkeypatch):
    monkeypatch.setattr(server.BrightLocalClient, "from_settings", classmethod(lambda cls, s: object()))
    client = server.app.test_client()

    assert client.post("/citations/audit", json={}).status_code == 401
    assert client.post("/citations/audit", json={"location_ids": "loc-1"}, headers=AUTH).status_code == 400


def test_audit_endpoint_queues_locations(calls, monkeypatch):
    monkeypatch.setattr(server.BrightLocalClient, "from_settings", classmethod(lambda cls, s: object()))
    client = server.app.test_client()

    response = client.post("/citations/audit", json={"location_ids": ["loc-1", "loc-2"]}, headers=AUTH)

    assert response.status_code == 200
    assert response.get_json()["queued"] == 1
    assert calls["audit"] == ["loc-1", "loc-2"]


def test_audit_endpoint_not_found(calls, monkeypatch):
    monkeypatch.setattr(server.BrightLocalClient, "from_settings", classmethod(lambda cls, s: object()))
    calls["audit_result"] = None
    client = server.app.test_client()

    response = client.post("/citations/audit", json={}, headers=AUTH)

    assert response.status_code == 404
    assert calls["audit"] is None


@pytest.fixture
def broken_config(calls, monkeypatch):
    def raise_config_error():
        raise server.ConfigError("BRIGHTLOCAL_AUTH_MODE must be one of ['key', 'signed'], got 'bogus'")

    monkeypatch.setattr(server, "get_settings", raise_config_error)
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    return calls


def test_cron_config_error_still_requires_token(broken_config):
    client = server.app.test_client()

    assert client.get("/cron/citation-sync").status_code == 401

    response = client.get("/cron/citation-sync", headers=AUTH)
    assert response.status_code == 200
    assert response.get_json()["ok"] is False
    assert response.get_json()["errors"] == 1
    assert "sync" not in broken_config


def test_audit_config_error_returns_json(broken_config):
    client = server.app.test_client()

    assert client.post("/citations/audit", json={}).status_code == 401

    response = client.post("/citations/audit", json={}, headers=AUTH)
    assert response.status_code == 500
    assert response.get_json()["ok"] is False
    assert "audit" not in broken_config


def test_health_reports_config_error(broken_config):
    response = server.app.test_client().get("/healthz")
    assert response.status_code == 503
    assert response.get_json()["status"] == "misconfigured"
