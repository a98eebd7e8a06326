import pytest

from webapp import create_app

from conftest import SITE_URL, TENANT_ID

MANIFEST = {
    "groups": [
        {"display_name": "Concept Reviewers", "mail_nickname": "concept-reviewers", "description": "Reviewers"}
    ],
    "sharepoint": {"site_groups": [{"title": "Concept Reviewers"}]},
}


@pytest.fixture
def client(manager):
    app = create_app(manager=manager)
    app.config["TESTING"] = True
    return app.test_client()


def test_lists_configured_tenants(client):
    response = client.get("/tenants")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["count"] == 1
    assert payload["tenants"][0] == {
        "tenant_id": TENANT_ID,
        "display_name": "Contoso",
        "auth_type": "client_secret",
        "sharepoint_site": SITE_URL,
        "power_platform_environment": "env-1",
    }


def test_provision_returns_report(client, fake_tenant):
    response = client.post(f"/tenants/{TENANT_ID}/provision", json=MANIFEST)

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["summary"]["created"] == 2
    assert payload["correlation_id"]
    assert len(fake_tenant.groups) == 1


def test_dry_run_flag(client, fake_tenant):
    response = client.post(f"/tenants/{TENANT_ID}/provision?dry_run=true", json=MANIFEST)

    assert response.status_code == 200
    assert response.get_json()["dry_run"] is True
    assert fake_tenant.writes == []


def test_missing_body(client):
    response = client.post(f"/tenants/{TENANT_ID}/provision", data="not json", content_type="text/plain")

    assert response.status_code == 400


def test_invalid_manifest(client):
    response = client.post(f"/tenants/{TENANT_ID}/provision", json={"groups": [{"display_name": "No nickname"}]})

    assert response.status_code == 422
    details = response.get_json()["details"]
    assert details[0]["loc"] == ["groups", 0, "mail_nickname"]


def test_unknown_tenant(client):
    response = client.post("/tenants/other/provision", json=MANIFEST)

    assert response.status_code == 404
    assert response.get_json()["error"] == "Tenant other is not configured"


def test_provisioning_error_is_a_conflict(client):
    manifest = {"users": [{"user_principal_name": "new@contoso.com", "display_name": "New"}]}

    response = client.post(f"/tenants/{TENANT_ID}/provision", json=manifest)

    assert response.status_code == 409
    assert "no initial password" in response.get_json()["error"]


def test_partial_failure_is_multi_status(client):
    manifest = {"users": [{"user_principal_name": "new@contoso.com", "display_name": "New"}], **MANIFEST}

    response = client.post(f"/tenants/{TENANT_ID}/provision?continue_on_error=1", json=manifest)

    assert response.status_code == 207
    actions = [outcome["action"] for outcome in response.get_json()["outcomes"]]
    assert actions == ["failed", "created", "created"]


def test_audit_feed(client):
    client.post(f"/tenants/{TENANT_ID}/provision?dry_run=true", json=MANIFEST)

    response = client.get("/audit.json?limit=2")

    payload = response.get_json()
    assert payload["count"] == 2
    assert payload["events"][0]["message"] == "operation_completed"


def test_audit_store_is_attached_when_missing(manager):
    manager.audit.store = None

    app = create_app(manager=manager)

    assert manager.audit.store is app.config["AUDIT_STORE"]


def test_audit_feed_filters_by_correlation_id(client):
    client.post(f"/tenants/{TENANT_ID}/provision?dry_run=true", json=MANIFEST, headers={"X-Correlation-ID": "corr-9"})
    client.post(f"/tenants/{TENANT_ID}/provision?dry_run=true", json=MANIFEST)

    response = client.get("/audit.json?correlation_id=corr-9&limit=100")

    events = response.get_json()["events"]
    assert events
    assert {event["correlation_id"] for event in events} == {"corr-9"}
