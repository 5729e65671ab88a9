import json
import sys
from pathlib import Path

import httpx
import pytest

from auth_utils import api_key_header, auth_header, configure_auth_env, mock_jwks
from fake_executor import FakeStepExecutor


pytestmark = pytest.mark.anyio

OPERATOR = ["operator"]
VIEWER = ["user"]


def _write_environment_registry(path: Path) -> None:
    data = [{"name": "development"}, {"name": "staging"}, {"name": "production"}, {"name": "legacy", "enabled": False}]
    path.write_text(json.dumps(data), encoding="utf-8")


def _load_main(tmp_path: Path, monkeypatch, executor=None, **orchestrator_kwargs):
    service_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(service_dir))
    registry_path = tmp_path / "environments.json"
    _write_environment_registry(registry_path)
    monkeypatch.setenv("OPS_ENVIRONMENT_REGISTRY_PATH", str(registry_path))
    monkeypatch.setenv("OPS_HISTORY_PATH", "")
    monkeypatch.setenv("OPS_STEP_DELAY_MIN_SECONDS", "0")
    monkeypatch.setenv("OPS_STEP_DELAY_MAX_SECONDS", "0")
    monkeypatch.setenv("OPS_DEMO_MODE", "true")
    configure_auth_env()

    for module in [
        "main",
        "config",
        "storage",
        "policy",
        "rate_limit",
        "auth",
        "orchestrator",
        "deploy_routes",
        "admin_routes",
        "observability",
    ]:
        if module in sys.modules:
            del sys.modules[module]

    import importlib

    main = importlib.import_module("main")
    main.orchestrator.shutdown()
    orchestrator = main.DeployOrchestrator(main.environments, executor or FakeStepExecutor(), **orchestrator_kwargs)
    monkeypatch.setattr(main, "orchestrator", orchestrator)
    mock_jwks(monkeypatch)
    return main


def _client(main) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=main.app), base_url="http://testserver")


async def test_health_is_open_and_unlimited(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    main.rate_limiters["global"].reconfigure(60, 1)
    async with _client(main) as client:
        responses = [await client.get("/health") for _ in range(3)]
    assert all(response.status_code == 200 for response in responses)
    assert responses[0].json() == {"status": "ok"}
    assert "RateLimit-Limit" not in responses[0].headers


async def test_start_returns_accepted_with_rate_limit_headers(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    async with _client(main) as client:
        response = await client.post(
            "/deploy/start",
            json={"environment": "staging", "version": "1.2.3"},
            headers={**auth_header(OPERATOR), "X-Request-Id": "req-start-1"},
        )
    assert response.status_code == 202
    body = response.json()
    assert body["message"] == "Deployment to staging started"
    assert body["deployment"]["environment"] == "staging"
    assert body["deployment"]["status"] == "running"
    assert body["deployment"]["id"].startswith("deploy-")
    assert set(body["deployment"]) == {"id", "environment", "status", "startedAt"}
    assert response.headers["X-Request-Id"] == "req-start-1"
    assert response.headers["RateLimit-Limit"] == "100"
    assert response.headers["RateLimit-Remaining"] == "99"
    assert main.orchestrator.wait(timeout=5)


async def test_start_requires_deploy_role(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    async with _client(main) as client:
        forbidden = await client.post("/deploy/start", json={}, headers=auth_header(VIEWER))
        missing = await client.post("/deploy/start", json={})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "ROLE_FORBIDDEN"
    assert missing.status_code == 401
    body = missing.json()
    assert body["code"] == "UNAUTHORIZED"
    assert body["error_code"] == "UNAUTHORIZED"
    assert body["error"] == "Unauthorized"
    assert body["request_id"]


async def test_start_conflict_and_validation_errors(tmp_path: Path, monkeypatch):
    executor = FakeStepExecutor(block_on="validation")
    main = _load_main(tmp_path, monkeypatch, executor)
    async with _client(main) as client:
        first = await client.post("/deploy/start", json={}, headers=auth_header(OPERATOR))
        conflict = await client.post("/deploy/start", json={"environment": "staging"}, headers=auth_header(OPERATOR))
        executor.release.set()
        assert main.orchestrator.wait(timeout=5)
        invalid_env = await client.post("/deploy/start", json={"environment": "legacy"}, headers=auth_header(OPERATOR))
        invalid_body = await client.post("/deploy/start", json={"rollback": "sometimes"}, headers=auth_header(OPERATOR))
    assert first.status_code == 202
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "DEPLOYMENT_IN_PROGRESS"
    assert invalid_env.status_code == 400
    assert invalid_env.json()["code"] == "INVALID_ENVIRONMENT"
    assert invalid_body.status_code == 400
    assert invalid_body.json()["code"] == "INVALID_REQUEST"


async def test_stop_cancels_running_deployment(tmp_path: Path, monkeypatch):
    executor = FakeStepExecutor(block_on="preparation")
    main = _load_main(tmp_path, monkeypatch, executor)
    async with _client(main) as client:
        idle = await client.post("/deploy/stop", headers=auth_header(OPERATOR))
        started = await client.post("/deploy/start", json={}, headers=auth_header(OPERATOR))
        assert executor.entered.wait(5)
        stopped = await client.post("/deploy/stop", headers=auth_header(OPERATOR))
        executor.release.set()
        assert main.orchestrator.wait(timeout=5)
        logs = await client.get(f"/deploy/logs/{started.json()['deployment']['id']}", headers=auth_header(VIEWER))
    assert idle.status_code == 400
    assert idle.json()["code"] == "NO_DEPLOYMENT_RUNNING"
    assert stopped.status_code == 200
    assert stopped.json()["deployment"]["status"] == "cancelled"
    assert stopped.json()["deployment"]["cancelledBy"] == "user@example.com"
    assert logs.json()["deployment"]["status"] == "cancelled"


async def test_rollback_flow(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    main.rate_limiters["deploy"].reconfigure(300, 10)
    async with _client(main) as client:
        no_version = await client.post("/deploy/rollback", json={"environment": "staging"}, headers=auth_header(OPERATOR))
        for version in ("v1", "v2"):
            await client.post(
                "/deploy/start",
                json={"environment": "staging", "version": version},
                headers=auth_header(OPERATOR),
            )
            assert main.orchestrator.wait(timeout=5)
        rolled = await client.post("/deploy/rollback", json={"environment": "staging"}, headers=auth_header(OPERATOR))
        assert main.orchestrator.wait(timeout=5)
    assert no_version.status_code == 400
    assert no_version.json()["code"] == "NO_ROLLBACK_VERSION"
    assert rolled.status_code == 202
    assert rolled.json()["deployment"]["version"] == "v1"
    assert rolled.json()["message"] == "Rollback to version v1 started"


async def test_rollback_disabled(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch, rollback_enabled=False)
    async with _client(main) as client:
        response = await client.post(
            "/deploy/rollback",
            json={"environment": "staging", "version": "1.0.0"},
            headers=auth_header(OPERATOR),
        )
    assert response.status_code == 403
    assert response.json()["code"] == "ROLLBACK_DISABLED"


async def test_status_history_and_logs(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    async with _client(main) as client:
        for version in ("a1", "a2"):
            await client.post("/deploy/start", json={"version": version}, headers=auth_header(OPERATOR))
            assert main.orchestrator.wait(timeout=5)
        status = await client.get("/deploy/status", headers=auth_header(VIEWER))
        history = await client.get("/deploy/history", params={"limit": 1}, headers=auth_header(VIEWER))
        bad_limit = await client.get("/deploy/history", params={"limit": 0}, headers=auth_header(VIEWER))
        missing = await client.get("/deploy/logs/deploy-unknown", headers=auth_header(VIEWER))
    body = status.json()
    assert status.status_code == 200
    assert body["current"] is None
    assert set(body["environments"]) == {"development", "staging", "production"}
    assert body["environments"]["development"]["version"] == "a2"
    assert [item["version"] for item in body["history"]] == ["a1", "a2"]
    assert body["history"][0]["startedAt"].endswith("Z")
    assert history.json()["total"] == 2
    assert [item["version"] for item in history.json()["deploys"]] == ["a2"]
    assert bad_limit.status_code == 400
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


async def test_environment_health_endpoint(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch, FakeStepExecutor(healthy=False))
    async with _client(main) as client:
        response = await client.get("/deploy/health", headers=auth_header(VIEWER))
    assert response.status_code == 200
    assert response.json()["overall"] == "degraded"


async def test_deploy_rate_limit_returns_429(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    main.rate_limiters["deploy"].reconfigure(300, 1)
    async with _client(main) as client:
        first = await client.post("/deploy/start", json={}, headers=auth_header(OPERATOR))
        assert main.orchestrator.wait(timeout=5)
        limited = await client.post(
            "/deploy/start",
            json={},
            headers={**auth_header(OPERATOR), "X-Request-Id": "req-limited"},
        )
        other_actor = await client.post("/deploy/start", json={}, headers=auth_header(OPERATOR, subject="user-2"))
        assert main.orchestrator.wait(timeout=5)
    assert first.status_code == 202
    assert limited.status_code == 429
    body = limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["error_code"] == "RATE_LIMITED"
    assert body["message"] == "Deploy rate limit exceeded. Please wait before trying again."
    assert body["request_id"] == "req-limited"
    assert 0 < body["retryAfter"] <= 300
    assert limited.headers["Retry-After"] == str(body["retryAfter"])
    assert limited.headers["RateLimit-Limit"] == "1"
    assert limited.headers["RateLimit-Remaining"] == "0"
    assert first.headers["RateLimit-Limit"] == str(main.rate_limiters["global"].max_count)
    assert other_actor.status_code == 202


async def test_global_rate_limit_applies_per_client(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    main.rate_limiters["global"].reconfigure(900, 2)
    async with _client(main) as client:
        responses = [await client.get("/deploy/status", headers=auth_header(VIEWER)) for _ in range(3)]
        health = await client.get("/health")
    assert [response.status_code for response in responses] == [200, 200, 429]
    assert responses[1].headers["RateLimit-Remaining"] == "0"
    assert responses[2].json()["message"] == "Rate limit exceeded. Please try again later."
    assert int(responses[2].headers["Retry-After"]) <= 900
    assert health.status_code == 200


async def test_webhook_requires_api_key_and_auto_deploy(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    async with _client(main) as client:
        no_key = await client.post("/deploy/webhook", json={"ref": "refs/heads/main"})
        wrong_key = await client.post("/deploy/webhook", json={"ref": "refs/heads/main"}, headers=api_key_header("nope"))
        disabled = await client.post("/deploy/webhook", json={"ref": "refs/heads/main"}, headers=api_key_header())
        main.orchestrator.auto_deploy = True
        ignored = await client.post("/deploy/webhook", json={"ref": "refs/heads/dev"}, headers=api_key_header())
        triggered = await client.post(
            "/deploy/webhook",
            json={"ref": "refs/heads/main", "repository": {"name": "app"}, "pusher": {"name": "dana"}},
            headers=api_key_header(),
        )
        assert main.orchestrator.wait(timeout=5)
    assert no_key.status_code == 401
    assert no_key.json()["code"] == "API_KEY_REQUIRED"
    assert wrong_key.status_code == 401
    assert wrong_key.json()["code"] == "INVALID_API_KEY"
    assert disabled.status_code == 403
    assert disabled.json()["code"] == "AUTO_DEPLOY_DISABLED"
    assert ignored.json() == {"message": "Branch ignored", "branch": "refs/heads/dev"}
    assert triggered.json()["message"] == "Auto-deploy triggered"
    deployment = main.orchestrator.get(triggered.json()["deployId"])
    assert deployment.webhook is True


async def test_webhook_strict_limit(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    main.rate_limiters["strict"].reconfigure(900, 1)
    async with _client(main) as client:
        first = await client.post("/deploy/webhook", json={"ref": "refs/heads/dev"}, headers=api_key_header())
        second = await client.post("/deploy/webhook", json={"ref": "refs/heads/dev"}, headers=api_key_header())
    assert first.status_code == 403
    assert second.status_code == 429
    assert second.json()["message"] == "Strict rate limit exceeded. Please try again later."


async def test_webhook_api_keys_have_separate_budgets(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    monkeypatch.setattr(main.SETTINGS, "api_keys", ["key-a", "key-b"])
    main.rate_limiters["api_key"].reconfigure(60, 1)
    async with _client(main) as client:
        first_a = await client.post("/deploy/webhook", json={"ref": "refs/heads/dev"}, headers=api_key_header("key-a"))
        first_b = await client.post("/deploy/webhook", json={"ref": "refs/heads/dev"}, headers=api_key_header("key-b"))
        second_a = await client.post("/deploy/webhook", json={"ref": "refs/heads/dev"}, headers=api_key_header("key-a"))
    assert first_a.status_code == 403
    assert first_b.status_code == 403
    assert second_a.status_code == 429
    assert second_a.json()["message"] == "API rate limit exceeded. Please try again later."


async def test_admin_rate_limits(tmp_path: Path, monkeypatch):
    main = _load_main(tmp_path, monkeypatch)
    admin = auth_header(["admin"])
    async with _client(main) as client:
        listed = await client.get("/admin/rate-limits", headers=admin)
        forbidden = await client.get("/admin/rate-limits", headers=auth_header(OPERATOR))
        updated = await client.put("/admin/rate-limits/deploy", json={"window_seconds": 120, "max_count": 9}, headers=admin)
        invalid = await client.put("/admin/rate-limits/deploy", json={"window_seconds": 0, "max_count": 9}, headers=admin)
        missing_field = await client.put("/admin/rate-limits/deploy", json={"max_count": 9}, headers=admin)
        unknown = await client.put("/admin/rate-limits/nope", json={"window_seconds": 60, "max_count": 1}, headers=admin)
    assert listed.status_code == 200
    assert {item["name"] for item in listed.json()["limits"]} == {"global", "strict", "login", "user", "api_key", "deploy"}
    assert forbidden.status_code == 403
    assert updated.status_code == 200
    assert updated.json()["window_seconds"] == 120
    assert updated.json()["max_count"] == 9
    assert main.rate_limiters["deploy"].max_count == 9
    assert invalid.status_code == 400
    assert missing_field.status_code == 400
    assert unknown.status_code == 404
