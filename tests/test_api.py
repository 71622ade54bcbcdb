"""
HTTP tests for the Robot Extract API
"""
import asyncio

import httpx
import pytest

from robot_api import config
from robot_api.models.usage import UsageLog
from robot_api.services import jobs, ledger, ssrf, webhooks

EXTRACT = {"url": "https://example.com/product", "fields": ["title", "price"]}


@pytest.fixture
def deliveries(monkeypatch):
    sent = []

    def handler(request):
        sent.append(request)
        return httpx.Response(200)

    monkeypatch.setattr(webhooks, "_make_client",
                        lambda timeout: httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return sent


def _error(response):
    body = response.json()
    assert body["success"] is False
    return body["error"]


def test_health_endpoint(client):
    response = client.get("/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "robot-extract-api"
    assert "X-API-Version" in response.headers
    assert "X-Request-ID" in response.headers


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_sync_extract(client, api_key, api_headers, db):
    response = client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"] == {"title": "Widget", "price": "$10"}
    assert body["meta"]["tokens"] == 42
    assert body["meta"]["blocked"] is False
    assert body["meta"]["remainingCredits"] == 49
    assert response.headers["X-Cache-Hit"] == "false"
    assert response.headers["X-RateLimit-Limit"] == str(config.RATE_LIMIT_AUTH)

    assert ledger.remaining_credits(db, api_key[0]) == 49
    assert [u.status for u in db.query(UsageLog).all()] == ["success"]


def test_repeat_extract_is_served_from_cache(client, api_key, api_headers, fakes):
    client.post("/extract", json=EXTRACT, headers=api_headers)
    response = client.post("/extract", json=EXTRACT, headers=api_headers)
    assert response.status_code == 200
    assert response.headers["X-Cache-Hit"] == "true"
    assert response.json()["meta"]["cache"]["hit"] is True
    # cache hits are still charged
    assert response.json()["meta"]["remainingCredits"] == 48
    assert len(fakes.renderer.calls) == 1


def test_missing_key(client):
    response = client.post("/v1/extract", json=EXTRACT)
    assert response.status_code == 401
    error = _error(response)
    assert error["code"] == "missing"
    assert error["requestId"] == response.headers["X-Request-ID"]
    assert error["retryable"] is False


def test_invalid_key(client):
    response = client.post("/v1/extract", json=EXTRACT, headers={"x-api-key": "rs_nope"})
    assert response.status_code == 401
    assert _error(response)["code"] == "invalid"


def test_bearer_key_is_accepted(client, api_key):
    response = client.post("/v1/extract", json=EXTRACT, headers={"Authorization": f"Bearer {api_key[1]}"})
    assert response.status_code == 200


def test_inactive_key(client, api_key, api_headers, db):
    ledger.deactivate_key(db, api_key[0])
    response = client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    assert response.status_code == 403
    assert _error(response)["code"] == "inactive"


def test_insufficient_credits(client, db):
    _, plaintext = ledger.create_key(db, "broke", credits=0)
    response = client.post("/v1/extract", json=EXTRACT, headers={"x-api-key": plaintext})
    assert response.status_code == 402
    error = _error(response)
    assert error["code"] == "insufficient_credits"
    assert error["message"] == "Insufficient credits: 1 required, 0 remaining"


@pytest.mark.parametrize("payload,fragment", [
    ({"fields": ["title"]}, "url"),
    ({"url": "ftp://example.com", "fields": ["title"]}, "url"),
    ({"url": "https://example.com"}, "fields"),
    ({"url": "https://example.com", "fields": ["a"], "schema": {"type": "object"}}, "fields"),
    ({"url": "https://example.com", "fields": ["a"], "options": {"timeoutMs": 10}}, "timeoutMs"),
])
def test_bad_request(client, api_headers, payload, fragment):
    response = client.post("/v1/extract", json=payload, headers=api_headers)
    assert response.status_code == 400
    error = _error(response)
    assert error["code"] == "bad_request"
    assert fragment in error["message"]


def test_private_target_is_rejected(client, api_headers):
    response = client.post("/v1/extract", json={"url": "http://127.0.0.1/admin", "fields": ["a"]},
                           headers=api_headers)
    assert response.status_code == 400


def test_invalid_json_body(client, api_headers):
    response = client.post("/v1/extract", content=b"{not json", headers={**api_headers,
                                                                     "Content-Type": "application/json"})
    assert response.status_code == 400
    assert _error(response)["code"] == "bad_request"


def test_payload_too_large(client, api_headers, monkeypatch):
    monkeypatch.setattr(config, "MAX_REQUEST_BYTES", 64)
    response = client.post("/v1/extract", json={**EXTRACT, "instructions": "x" * 200}, headers=api_headers)
    assert response.status_code == 413
    assert _error(response)["code"] == "payload_too_large"


def test_blocked_sync_extract(client, api_headers, fakes):
    fakes.renderer.blocked = True
    response = client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    assert response.status_code == 403
    error = _error(response)
    assert error["code"] == "blocked"
    assert response.json()["meta"]["blocked"] is True


def test_failed_sync_extract(client, api_headers, fakes):
    fakes.renderer.error = RuntimeError("renderer exploded")
    response = client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    assert response.status_code == 500
    assert _error(response)["code"] == "server_error"
    assert _error(response)["retryable"] is True


def test_anonymous_sync_extract(client, monkeypatch):
    monkeypatch.setattr(config, "ALLOW_ANON", True)
    monkeypatch.setattr(config, "ANON_DAILY_LIMIT", 1)
    response = client.post("/v1/extract", json=EXTRACT)
    assert response.status_code == 200
    assert response.json()["meta"]["remainingCredits"] == 0

    again = client.post("/v1/extract", json={**EXTRACT, "instructions": "second"})
    assert again.status_code == 429
    assert _error(again)["code"] == "rate_limited"

    queued = client.post("/v1/extract", json={**EXTRACT, "async": True})
    assert queued.status_code == 401


def test_async_extract_and_result(client, api_headers, deliveries):
    payload = {**EXTRACT, "async": True, "webhook_url": "https://hooks.example.com/robot"}
    response = client.post("/v1/extract", json=payload, headers=api_headers)
    assert response.status_code == 202
    body = response.json()
    job_id = body["job_id"]
    assert body["status"] == "queued"
    assert body["status_url"] == f"/v1/jobs/{job_id}"

    # TestClient runs background tasks before returning
    job = client.get(f"/v1/jobs/{job_id}", headers=api_headers).json()["job"]
    assert job["status"] == "completed"
    assert job["result_url"] == f"/v1/jobs/{job_id}/result"

    result = client.get(f"/v1/jobs/{job_id}/result", headers=api_headers)
    assert result.status_code == 200
    assert result.json()["data"] == {"title": "Widget", "price": "$10"}

    assert len(deliveries) == 1
    assert deliveries[0].headers["X-Robot-Event"] == "job.completed"


def test_webhook_requires_secret(client, api_headers, monkeypatch):
    monkeypatch.setattr(config, "WEBHOOK_SECRET", "")
    payload = {**EXTRACT, "async": True, "webhook_url": "https://hooks.example.com/robot"}
    response = client.post("/v1/extract", json=payload, headers=api_headers)
    assert response.status_code == 400
    assert "webhook_secret" in _error(response)["message"]


def test_result_not_ready(client, api_key, api_headers, db):
    from robot_api.services import jobs
    from robot_api.services.jobs import JobSpec

    job = jobs.create_job(db, JobSpec(url="https://example.com", fields=["a"]), owner_key_id=api_key[0])
    response = client.get(f"/v1/jobs/{job.id}/result", headers=api_headers)
    assert response.status_code == 409
    assert _error(response)["code"] == "not_ready"


def test_jobs_are_private(client, api_headers, db):
    created = client.post("/v1/extract", json={**EXTRACT, "async": True}, headers=api_headers).json()
    _, other = ledger.create_key(db, "user-2")
    response = client.get(f"/v1/jobs/{created['job_id']}", headers={"x-api-key": other})
    assert response.status_code == 404
    assert _error(response)["code"] == "not_found"


def test_list_jobs(client, api_headers):
    client.post("/v1/extract", json={**EXTRACT, "async": True}, headers=api_headers)
    client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    body = client.get("/v1/jobs", headers=api_headers).json()
    assert body["count"] == 2
    assert client.get("/v1/jobs?status=nope", headers=api_headers).status_code == 400
    assert client.get("/v1/jobs?limit=0", headers=api_headers).status_code == 400


def test_idempotent_async_extract(client, api_key, api_headers, db):
    headers = {**api_headers, "Idempotency-Key": "order-42"}
    payload = {**EXTRACT, "async": True}
    first = client.post("/v1/extract", json=payload, headers=headers)
    second = client.post("/v1/extract", json=payload, headers=headers)

    assert first.status_code == second.status_code == 202
    assert second.json()["job_id"] == first.json()["job_id"]
    assert second.headers["X-Idempotent-Replay"] == "true"
    assert ledger.remaining_credits(db, api_key[0]) == 49

    conflict = client.post("/v1/extract", json={**payload, "instructions": "other"}, headers=headers)
    assert conflict.status_code == 409
    assert _error(conflict)["code"] == "idempotency_conflict"


def test_refused_charge_releases_idempotency_key(client, db):
    key, plaintext = ledger.create_key(db, "user-4", credits=0)
    headers = {"x-api-key": plaintext, "Idempotency-Key": "retry-me"}
    assert client.post("/v1/extract", json=EXTRACT, headers=headers).status_code == 402

    ledger.grant_credits(db, key.id, 1)
    retried = client.post("/v1/extract", json=EXTRACT, headers=headers)
    assert retried.status_code == 200
    assert "X-Idempotent-Replay" not in retried.headers


def test_unexpected_error_releases_idempotency_key(app, client, api_headers, monkeypatch):
    from fastapi.testclient import TestClient

    run_sync = jobs.run_sync

    async def crash(*args, **kwargs):
        raise RuntimeError("storage backend unavailable")

    headers = {**api_headers, "Idempotency-Key": "crash-once"}
    monkeypatch.setattr(jobs, "run_sync", crash)
    failing = TestClient(app, raise_server_exceptions=False)
    assert failing.post("/v1/extract", json=EXTRACT, headers=headers).status_code == 500

    monkeypatch.setattr(jobs, "run_sync", run_sync)
    retried = client.post("/v1/extract", json=EXTRACT, headers=headers)
    assert retried.status_code == 200
    assert "X-Idempotent-Replay" not in retried.headers


def test_target_resolution_runs_off_the_event_loop(client, api_headers, monkeypatch):
    threads = []

    def resolver(hostname):
        try:
            asyncio.get_running_loop()
            threads.append("event loop")
        except RuntimeError:
            threads.append("worker")
        return ["93.184.216.34"]

    monkeypatch.setattr(config, "SSRF_RESOLVE_DNS", True)
    monkeypatch.setattr(ssrf, "resolve_host", resolver)
    assert client.post("/v1/extract", json=EXTRACT, headers=api_headers).status_code == 200
    payload = {"url": "https://example.com", "fields": ["title"], "cron": "0 9 * * *",
               "webhook_url": "https://hooks.example.com/robot"}
    assert client.post("/v1/schedules", json=payload, headers=api_headers).status_code == 201
    assert threads and set(threads) == {"worker"}


def test_batch(client, api_key, api_headers, db):
    payload = {"urls": ["https://example.com/a", "https://example.com/b"], "fields": ["title"]}
    response = client.post("/v1/batch", json=payload, headers=api_headers)
    assert response.status_code == 202
    body = response.json()
    assert body["meta"]["count"] == 2
    assert body["meta"]["remainingCredits"] == 48
    assert [j["url"] for j in body["jobs"]] == payload["urls"]

    for entry in body["jobs"]:
        job = client.get(entry["status_url"], headers=api_headers).json()["job"]
        assert job["status"] == "completed"


def test_batch_is_all_or_nothing(client, db):
    key, plaintext = ledger.create_key(db, "user-3", credits=1)
    payload = {"urls": ["https://example.com/a", "https://example.com/b"], "fields": ["title"]}
    response = client.post("/v1/batch", json=payload, headers={"x-api-key": plaintext})
    assert response.status_code == 402
    assert ledger.remaining_credits(db, key.id) == 1


def test_batch_size_limit(client, api_headers):
    payload = {"urls": [f"https://example.com/{i}" for i in range(config.MAX_BATCH_SIZE + 1)], "fields": ["a"]}
    assert client.post("/v1/batch", json=payload, headers=api_headers).status_code == 400


def test_schedule_crud(client, api_headers):
    payload = {"url": "https://example.com/prices", "fields": ["price"], "cron": "0 9 * * *",
               "webhook_url": "https://hooks.example.com/robot", "webhook_secret": "s" * 16}
    created = client.post("/v1/schedules", json=payload, headers=api_headers)
    assert created.status_code == 201
    schedule = created.json()["schedule"]
    assert schedule["has_webhook_secret"] is True
    assert "webhook_secret" not in schedule
    assert schedule["next_run_at"] is not None

    path = f"/v1/schedules/{schedule['id']}"
    paused = client.patch(path, json={"is_active": False}, headers=api_headers).json()["schedule"]
    assert paused["is_active"] is False
    assert paused["next_run_at"] is None

    listed = client.get("/v1/schedules", headers=api_headers).json()
    assert listed["count"] == 1

    assert client.delete(path, headers=api_headers).json() == {"success": True, "deleted": schedule["id"]}
    assert client.get(path, headers=api_headers).status_code == 404


def test_schedule_rejects_bad_cron(client, api_headers):
    payload = {"url": "https://example.com", "fields": ["a"], "cron": "61 * * * *",
               "webhook_url": "https://hooks.example.com/robot"}
    response = client.post("/v1/schedules", json=payload, headers=api_headers)
    assert response.status_code == 400


def test_cron_tick(client, api_headers, deliveries):
    payload = {"url": "https://example.com/prices", "fields": ["price"], "cron": "* * * * *",
               "webhook_url": "https://hooks.example.com/robot"}
    client.post("/v1/schedules", json=payload, headers=api_headers)

    assert client.post("/v1/cron/tick").status_code == 401
    assert client.post("/v1/cron/tick", headers={"X-Cron-Secret": "wrong"}).status_code == 401

    # nothing is due until the next minute boundary
    response = client.post("/v1/cron/tick", headers={"X-Cron-Secret": "test-cron-secret"})
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["claimed"] == 0


def test_webhook_test_endpoint(client, api_headers, deliveries):
    response = client.post("/v1/webhook/test", json={"url": "https://hooks.example.com/robot"},
                           headers=api_headers)
    assert response.status_code == 200
    body = response.json()
    assert body["delivered"] is True
    assert body["attempts"] == 1
    assert body["status_code"] == 200
    assert deliveries[0].headers["X-Robot-Signature"]


def test_webhook_test_rejects_private_target(client, api_headers, deliveries):
    response = client.post("/v1/webhook/test", json={"url": "https://192.168.1.10/hook"}, headers=api_headers)
    assert response.status_code in (200, 400)
    assert response.json()["success"] is False
    assert deliveries == []


def test_usage_and_export(client, api_headers):
    client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    usage = client.get("/v1/usage?range=24h", headers=api_headers).json()
    assert usage["summary"]["total"] == 1
    assert usage["summary"]["tokens"] == 42

    export = client.get("/v1/usage/export?range=7d", headers=api_headers)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "attachment" in export.headers["Content-Disposition"]
    assert export.text.splitlines()[0].startswith("id,url,status")

    assert client.get("/v1/usage?range=1y", headers=api_headers).status_code == 400


def test_key_management(client, admin_headers):
    assert client.post("/v1/keys", json={"owner_id": "acme"}).status_code == 401

    created = client.post("/v1/keys", json={"owner_id": "acme", "tier": "pro"}, headers=admin_headers)
    assert created.status_code == 201
    plaintext = created.json()["api_key"]
    key_id = created.json()["key"]["id"]
    assert created.json()["key"]["remaining_credits"] == config.DEFAULT_CREDITS["pro"]

    me = client.get("/v1/keys/me", headers={"x-api-key": plaintext}).json()["key"]
    assert me["id"] == key_id
    assert "hash" not in me

    granted = client.post(f"/v1/keys/{key_id}/credits", json={"amount": 5}, headers=admin_headers).json()
    assert granted["remaining_credits"] == config.DEFAULT_CREDITS["pro"] + 5

    rotated = client.post(f"/v1/keys/{key_id}/rotate", headers=admin_headers).json()
    assert client.get("/v1/keys/me", headers={"x-api-key": plaintext}).status_code == 401
    assert client.get("/v1/keys/me", headers={"x-api-key": rotated["api_key"]}).status_code == 200

    client.post(f"/v1/keys/{key_id}/deactivate", headers=admin_headers)
    assert client.get("/v1/keys/me", headers={"x-api-key": rotated["api_key"]}).status_code == 403
    assert client.post("/v1/keys/nope/rotate", headers=admin_headers).status_code == 404


def test_unprefixed_and_prefixed_routes_match(client, api_headers):
    assert client.get("/keys/me", headers=api_headers).status_code == 200
    assert client.get("/v1/keys/me", headers=api_headers).status_code == 200


def test_unknown_route(client):
    response = client.get("/v1/nope")
    assert response.status_code == 404
    assert _error(response)["code"] == "not_found"


def test_prometheus_metrics(client, api_headers):
    client.post("/v1/extract", json=EXTRACT, headers=api_headers)
    response = client.get("/v1/metrics/prometheus")
    assert response.status_code == 200
    assert "robot_requests_total" in response.text


def test_dlq_stats(client, admin_headers):
    assert client.get("/v1/admin/webhooks/dlq").status_code == 401
    response = client.get("/v1/admin/webhooks/dlq", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["dlq"]["total_files"] == 0
