import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from generous import app as app_module
from generous.service.executors import ToolOutcome
from generous.service.runtime import get_runtime
from generous.service.triggers import sign_webhook_payload


class FakeTools:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def invoke(self, tool_id, params):
        self.calls.append((tool_id, params))
        if tool_id in self.failing:
            return ToolOutcome.failure(f"{tool_id} is down")
        return ToolOutcome.ok({"tool": tool_id, "params": params})


@pytest.fixture
def tools():
    runtime = get_runtime()
    fake = FakeTools()
    runtime.tool_executor = fake
    runtime.runs.executor = fake
    return fake


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _headers(email="alice@example.com"):
    _, session = get_runtime().auth.issue_session(email)
    return {"Authorization": f"Bearer {session.id}"}


def _create_workflow(client, headers, **overrides):
    payload = {
        "name": "weather report",
        "nodes": [
            {"id": "lookup", "toolId": "weather", "inputs": {"city": "$var.city"}},
            {"id": "notify", "toolId": "notify", "inputs": {"report": {"$ref": "lookup.params"}}},
        ],
        "edges": [{"source": "lookup", "target": "notify"}],
        "variables": {"city": "Oslo"},
    }
    payload.update(overrides)
    response = client.post("/api/workflows", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_requests_without_session_are_rejected(client):
    response = client.get("/api/workflows")
    assert response.status_code == 401
    assert response.json() == {"error": "invalid session", "code": "unauthorized", "details": None}

    response = client.get("/api/workflows", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_session_id_header_is_accepted(client):
    _, session = get_runtime().auth.issue_session("bob@example.com")
    response = client.get("/api/workflows", headers={"session_id": session.id})
    assert response.status_code == 200
    assert response.json() == {"workflows": []}


def test_workflow_crud(client):
    headers = _headers()
    created = _create_workflow(client, headers)
    assert created["isEnabled"] is True
    assert created["nodes"][0]["toolId"] == "weather"

    listing = client.get("/api/workflows", headers=headers).json()
    assert [w["id"] for w in listing["workflows"]] == [created["id"]]

    patched = client.patch(
        f"/api/workflows/{created['id']}",
        json={"name": "renamed", "description": "daily"},
        headers=headers,
    )
    assert patched.status_code == 200
    assert patched.json()["name"] == "renamed"
    assert patched.json()["nodes"] == created["nodes"]

    deleted = client.delete(f"/api/workflows/{created['id']}", headers=headers)
    assert deleted.status_code == 204
    missing = client.get(f"/api/workflows/{created['id']}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_invalid_payloads_return_flat_error_body(client):
    headers = _headers()
    response = client.post("/api/workflows", json={"nodes": []}, headers=headers)
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "invalid request"
    assert body["code"] == "validation_error"
    assert body["details"]["errors"]

    response = client.post(
        "/api/workflows",
        json={"name": "bad", "nodes": [{"id": "c", "data": {"type": "condition"}}]},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_other_users_cannot_touch_a_workflow(client):
    created = _create_workflow(client, _headers())
    intruder = _headers("mallory@example.com")

    assert client.get(f"/api/workflows/{created['id']}", headers=intruder).status_code == 403
    assert client.post(f"/api/workflows/{created['id']}/execute", headers=intruder).status_code == 403
    assert client.delete(f"/api/workflows/{created['id']}", headers=intruder).status_code == 403


def test_execute_and_list_executions(client, tools):
    headers = _headers()
    created = _create_workflow(client, headers)

    response = client.post(
        f"/api/workflows/{created['id']}/execute",
        json={"variables": {"city": "Bergen"}},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "completed"
    assert body["error"] is None
    assert body["nodeResults"]["lookup"]["status"] == "success"
    assert body["nodeResults"]["notify"]["output"]["params"] == {"report": {"city": "Bergen"}}
    assert tools.calls[0] == ("weather", {"city": "Bergen"})

    listing = client.get(f"/api/workflows/{created['id']}/executions", headers=headers).json()
    assert listing["total"] == 1
    assert listing["limit"] == 50
    assert listing["executions"][0]["id"] == body["executionId"]
    assert listing["executions"][0]["triggeredBy"] == "manual"
    assert listing["executions"][0]["nodeResults"]["lookup"]["attempts"] == 1

    bad_page = client.get(
        f"/api/workflows/{created['id']}/executions?limit=500", headers=headers
    )
    assert bad_page.status_code == 400


def test_failed_node_reports_failed_execution(client, tools):
    tools.failing.add("weather")
    headers = _headers()
    created = _create_workflow(client, headers)

    body = client.post(f"/api/workflows/{created['id']}/execute", headers=headers).json()
    assert body["status"] == "failed"
    assert body["nodeResults"]["lookup"]["error"] == "weather is down"
    assert body["nodeResults"]["notify"]["status"] == "skipped"


def test_disabled_workflow_cannot_execute(client, tools):
    headers = _headers()
    created = _create_workflow(client, headers, isEnabled=False)

    response = client.post(f"/api/workflows/{created['id']}/execute", headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "workflow is disabled"
    assert tools.calls == []


def test_unwritable_result_still_returned_in_error_details(client, tools, monkeypatch):
    headers = _headers()
    created = _create_workflow(client, headers)
    store = get_runtime().store
    original = store.update_execution

    def refuse_terminal(execution_id, **updates):
        if updates.get("status") in ("completed", "failed"):
            raise RuntimeError("disk full")
        return original(execution_id, **updates)

    monkeypatch.setattr(store, "update_execution", refuse_terminal)

    response = client.post(f"/api/workflows/{created['id']}/execute", headers=headers)
    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "server_error"
    assert body["details"]["result"]["status"] == "completed"
    assert body["details"]["executionId"] == body["details"]["result"]["executionId"]


def test_cron_schedule_round_trip(client):
    headers = _headers()
    created = _create_workflow(client, headers)
    url = f"/api/workflows/{created['id']}/schedule"

    response = client.post(url, json={"type": "cron", "cronExpression": "*/5 * * * *"}, headers=headers)
    assert response.status_code == 200
    assert response.json()["cron"]["cronExpression"] == "*/5 * * * *"
    assert response.json()["webhook"] is None

    workflow = client.get(f"/api/workflows/{created['id']}", headers=headers).json()
    assert workflow["triggerConfig"] == {
        "type": "cron",
        "cronExpression": "*/5 * * * *",
        "timezone": "UTC",
    }

    bad = client.post(url, json={"type": "cron", "cronExpression": "* *"}, headers=headers)
    assert bad.status_code == 400

    removed = client.delete(f"{url}?type=cron", headers=headers).json()
    assert removed["cron"] is None
    workflow = client.get(f"/api/workflows/{created['id']}", headers=headers).json()
    assert workflow["triggerConfig"] is None


def test_webhook_trigger_runs_workflow(client, tools):
    headers = _headers()
    created = _create_workflow(
        client,
        headers,
        nodes=[{"id": "n", "toolId": "ingest", "inputs": {"payload": "$var.webhookPayload"}}],
        edges=[],
    )
    schedule = client.post(
        f"/api/workflows/{created['id']}/schedule", json={"type": "webhook"}, headers=headers
    ).json()
    hook = schedule["webhook"]
    again = client.post(
        f"/api/workflows/{created['id']}/schedule", json={"type": "webhook"}, headers=headers
    ).json()
    assert again["webhook"]["url"] == hook["url"]

    body = json.dumps({"ref": "main"}).encode()
    signature = "sha256=" + sign_webhook_payload(body, hook["secret"])
    response = client.post(
        f"/api/webhooks/{hook['url']}",
        content=body,
        headers={"X-Webhook-Signature": signature, "Content-Type": "application/json"},
    )
    assert response.status_code == 200, response.text
    assert response.json()["success"] is True
    assert tools.calls == [("ingest", {"payload": {"ref": "main"}})]

    forged = client.post(
        f"/api/webhooks/{hook['url']}", content=body, headers={"X-Webhook-Signature": "sha256=00"}
    )
    assert forged.status_code == 401
    assert client.post("/api/webhooks/wh-unknown", content=b"{}").status_code == 404


def test_cron_endpoint_runs_due_jobs(client, tools, monkeypatch):
    headers = _headers()
    created = _create_workflow(client, headers)
    runtime = get_runtime()
    runtime.store.upsert_scheduled_job(
        created["id"], "* * * * *", next_run=datetime.now(timezone.utc) - timedelta(minutes=1)
    )

    monkeypatch.setattr(runtime.settings, "cron_secret", "tick-tock")
    assert client.get("/api/cron").status_code == 401
    assert client.get("/api/cron", headers={"Authorization": "Bearer wrong"}).status_code == 401

    response = client.get("/api/cron", headers={"Authorization": "Bearer tick-tock"})
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["results"][0]["workflowId"] == created["id"]
    assert body["results"][0]["status"] == "completed"

    again = client.get("/api/cron", headers={"Authorization": "Bearer tick-tock"}).json()
    assert again["processed"] == 0


def _create_toolspace(client, headers, **overrides):
    payload = {"name": "sandbox", "tools": "weather, calculator", "quotas": {"maxRequestsPerDay": 1}}
    payload.update(overrides)
    response = client.post("/api/toolspaces", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_toolspace_crud(client):
    headers = _headers()
    created = _create_toolspace(client, headers, permissions={"allowDelete": False})
    assert created["tools"] == ["weather", "calculator"]
    assert created["permissions"] == {"allowDelete": False}
    assert created["quotas"] == {"maxRequestsPerDay": 1}

    patched = client.patch(
        f"/api/toolspaces/{created['id']}", json={"tools": ["*"]}, headers=headers
    ).json()
    assert patched["tools"] == ["*"]

    listing = client.get("/api/toolspaces", headers=headers).json()
    assert [t["id"] for t in listing["toolspaces"]] == [created["id"]]
    other = _headers("eve@example.com")
    assert client.get(f"/api/toolspaces/{created['id']}", headers=other).status_code == 403


def test_toolspace_execute_enforces_policy_and_quota(client, tools):
    headers = _headers()
    toolspace = _create_toolspace(client, headers)
    url = f"/api/toolspaces/{toolspace['id']}/execute"

    missing = client.post(url, json={"params": {}}, headers=headers)
    assert missing.status_code == 400
    assert missing.json()["error"] == "toolId is required"

    denied = client.post(url, json={"toolId": "@stripe/refund"}, headers=headers)
    assert denied.status_code == 403
    assert denied.json()["code"] == "forbidden"

    ok = client.post(url, json={"toolId": "weather", "params": {"city": "Oslo"}}, headers=headers)
    assert ok.status_code == 200
    body = ok.json()
    assert body["success"] is True
    assert body["result"] == {"tool": "weather", "params": {"city": "Oslo"}}
    assert body["usage"]["remaining"]["requestsPerDay"] == 0

    limited = client.post(url, json={"toolId": "weather"}, headers=headers)
    assert limited.status_code == 429
    assert limited.json()["code"] == "rate_limited"
    assert tools.calls == [("weather", {"city": "Oslo"})]


def test_quota_usage_and_reset(client, tools):
    headers = _headers()
    toolspace = _create_toolspace(client, headers, quotas={"maxRequestsPerDay": 5})
    base = f"/api/toolspaces/{toolspace['id']}"
    client.post(f"{base}/execute", json={"toolId": "weather"}, headers=headers)
    client.post(f"{base}/execute", json={"toolId": "calculator"}, headers=headers)

    status = client.get(f"{base}/quota", headers=headers).json()
    assert status["usage"]["day"]["count"] == 2
    assert status["remaining"]["requestsPerDay"] == 3
    assert status["remaining"]["requestsPerMinute"] is None

    usage = client.get(f"{base}/usage", headers=headers).json()
    assert usage["totalCalls"] == 2
    # each call carries a handful of tokens, which rounds up to a cent
    assert usage["totalCostCents"] == 2
    assert usage["totalCostDisplay"] == "2¢"
    assert set(usage["byTool"]) == {"weather", "calculator"}

    reset = client.delete(f"{base}/quota", headers=headers).json()
    assert reset["clearedKeys"] == 3
    status = client.get(f"{base}/quota", headers=headers).json()
    assert status["usage"]["day"]["count"] == 0


def test_cost_estimate(client):
    headers = _headers()
    toolspace = _create_toolspace(client, headers)
    response = client.post(
        f"/api/toolspaces/{toolspace['id']}/estimate",
        json={"toolId": "@stripe/createPayment", "params": {"amount": 100}},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["isExternal"] is True
    assert body["estimatedCostCents"] >= 4
    assert body["estimatedCostDisplay"].endswith("¢")


def test_workflow_with_toolspace_meters_each_tool_call(client, tools):
    headers = _headers()
    toolspace = _create_toolspace(client, headers, tools=["*"], quotas={})
    created = _create_workflow(client, headers, toolspaceId=toolspace["id"])

    body = client.post(f"/api/workflows/{created['id']}/execute", headers=headers).json()
    assert body["status"] == "completed"
    usage = client.get(f"/api/toolspaces/{toolspace['id']}/usage", headers=headers).json()
    assert usage["totalCalls"] == 2


def test_healthz_and_request_id(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Frame-Options"] == "DENY"
