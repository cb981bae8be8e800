from datetime import timedelta

import httpx

from conftest import FakeScenario
from everwell.db.models import InsightsCache, utcnow
from everwell.services import insights_usage, llm
from everwell.services.insights_service import FALLBACK_WEEKLY_PLAN, get_last_monday
from everwell.services.llm import FALLBACK_INSIGHTS


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_insights_requires_authentication(client, override_provider) -> None:
    provider = override_provider(FakeScenario.OK)
    response = client.post("/api/insights")
    assert response.status_code == 401
    assert response.json() == {"ok": False, "reason": "not_authenticated", "message": "User not authenticated"}
    assert provider.calls == []


def test_insights_without_openai_key(client, auth_token, no_provider) -> None:
    response = client.post("/api/insights", headers=_auth_headers(auth_token))
    assert response.status_code == 400
    body = response.json()
    assert body["ok"] is False
    assert body["reason"] == "no_openai_key"


def test_insights_needs_five_days(client, auth_token, auth_user_id, seed_measurements, override_provider) -> None:
    provider = override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=4)
    response = client.post("/api/insights", headers=_auth_headers(auth_token))
    assert response.status_code == 400
    assert response.json()["reason"] == "not_enough_data"
    assert "at least 5 days" in response.json()["message"]
    assert provider.calls == []


def test_insights_generates_then_serves_cache(
    client, auth_token, auth_user_id, seed_measurements, override_provider
) -> None:
    provider = override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=5)
    headers = _auth_headers(auth_token)

    first = client.post("/api/insights", headers=headers)
    assert first.status_code == 200
    body = first.json()
    assert body["ok"] is True
    assert body["cached"] is False
    assert len(body["insights"]["recommendations"]) == 3
    assert len(body["insights"]["observations"]) == 2
    assert body["plan"]["focus_areas"] == body["insights"]["recommendations"]
    assert body["plan"]["weekly_goals"] == body["insights"]["recommendations"][:3]

    second = client.post("/api/insights", headers=headers)
    assert second.status_code == 200
    assert second.json()["cached"] is True
    assert second.json()["insights"] == body["insights"]
    assert provider.calls == ["generate_insights"]

    usage = client.get("/api/insights/usage", headers=headers)
    assert usage.status_code == 200
    stats = usage.json()["usage"]
    assert stats["today"] == 1
    assert stats["weekly"] == 1
    assert stats["monthly"] == 1
    assert stats["daily_limit"] == 5
    assert stats["remaining"] == 4
    assert stats["can_generate"] is True


def test_insights_new_data_misses_cache(client, auth_token, auth_user_id, seed_measurements, override_provider) -> None:
    provider = override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=5)
    headers = _auth_headers(auth_token)

    assert client.post("/api/insights", headers=headers).json()["cached"] is False
    client.post("/api/measurements", headers=headers, json={"entries": [{"metric_slug": "water_oz", "value": 64}]})
    assert client.post("/api/insights", headers=headers).json()["cached"] is False
    assert provider.calls == ["generate_insights", "generate_insights"]


def test_insights_daily_quota(
    client, auth_token, auth_user_id, seed_measurements, override_provider, monkeypatch
) -> None:
    monkeypatch.setattr(insights_usage, "INSIGHTS_DAILY_LIMIT", 0)
    provider = override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=5)

    response = client.post("/api/insights", headers=_auth_headers(auth_token))
    assert response.status_code == 429
    assert response.json()["reason"] == "rate_limit"
    assert "(0 per day)" in response.json()["message"]
    assert provider.calls == []


def test_insights_malformed_model_output_uses_fallback(
    client, auth_token, auth_user_id, seed_measurements, override_provider
) -> None:
    override_provider(FakeScenario.MALFORMED_JSON)
    seed_measurements(auth_user_id, days=5)
    response = client.post("/api/insights", headers=_auth_headers(auth_token))
    assert response.status_code == 200
    assert response.json()["insights"]["summary"] == FALLBACK_INSIGHTS.summary


def test_insights_provider_failures_map_to_reasons(
    client, auth_token, auth_user_id, seed_measurements, override_provider
) -> None:
    seed_measurements(auth_user_id, days=5)
    headers = _auth_headers(auth_token)

    override_provider(FakeScenario.TIMEOUT)
    timeout = client.post("/api/insights", headers=headers)
    assert timeout.status_code == 500
    assert timeout.json()["reason"] == "timeout"

    override_provider(FakeScenario.RATE_LIMIT)
    limited = client.post("/api/insights", headers=headers)
    assert limited.status_code == 429
    assert limited.json()["reason"] == "rate_limit"

    override_provider(FakeScenario.INVALID_API_KEY)
    bad_key = client.post("/api/insights", headers=headers)
    assert bad_key.status_code == 500
    assert bad_key.json()["reason"] == "invalid_api_key"

    usage = client.get("/api/insights/usage", headers=headers).json()["usage"]
    assert usage["today"] == 0


def test_usage_requires_authentication(client) -> None:
    response = client.get("/api/insights/usage")
    assert response.status_code == 401
    assert response.json()["reason"] == "not_authenticated"


def test_health_without_key(client, no_provider, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    response = client.get("/api/insights/health")
    assert response.status_code == 200
    body = response.json()
    assert body["env"]["openai_key_present"] is False
    assert body["provider_ping"]["attempted"] is False
    assert any("Skipping provider ping" in note for note in body["notes"])


def test_health_with_provider(client, override_provider, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-12345678")
    override_provider(FakeScenario.OK)
    body = client.get("/api/insights/health").json()
    assert body["env"]["openai_key_present"] is True
    assert body["env"]["model"] == "gpt-4o-mini"
    assert body["provider_ping"]["status"] == 200
    assert body["provider_ping"]["parsed_json"] is True
    assert any("Provider ping successful" in note for note in body["notes"])

    override_provider(FakeScenario.INVALID_API_KEY)
    failed = client.get("/api/insights/health").json()
    assert failed["provider_ping"]["status"] == 401
    assert any("Provider ping failed" in note for note in failed["notes"])


def test_selftest_uses_sample_when_empty(client, auth_token, override_provider) -> None:
    override_provider(FakeScenario.OK)
    response = client.post("/api/insights/selftest", headers=_auth_headers(auth_token))
    assert response.status_code == 200
    body = response.json()
    assert body["metrics_checked"] == 2
    assert body["provider"] == "openai"
    assert body["model"] == "gpt-4o-mini"
    assert body["result"]["summary"]


def test_selftest_counts_logged_rows(client, auth_token, auth_user_id, seed_measurements, override_provider) -> None:
    override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=2)
    body = client.post("/api/insights/selftest", headers=_auth_headers(auth_token)).json()
    assert body["metrics_checked"] == 6


def test_generate_daily_insight_and_read_today(
    client, auth_token, auth_user_id, seed_measurements, override_provider
) -> None:
    override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=3)
    headers = _auth_headers(auth_token)

    generated = client.post("/api/insights/generate", headers=headers)
    assert generated.status_code == 200
    insight = generated.json()["insight"]
    assert insight["summary"].startswith("Nice work")
    assert len(insight["actions"]) == 3
    assert insight["risk_flags"] == []

    today = client.get("/api/insights/today", headers=headers)
    assert today.status_code == 200
    body = today.json()
    assert body["today"]["weight_lbs"] == 180
    assert body["today"]["steps"] == 8000
    assert body["today"]["bmi"] is None
    assert body["ai_insight"]["summary"] == insight["summary"]
    assert body["trends"]["weight_7d_avg"] == 180


def test_generate_daily_insight_bad_output(client, auth_token, override_provider) -> None:
    override_provider(FakeScenario.MALFORMED_JSON)
    response = client.post("/api/insights/generate", headers=_auth_headers(auth_token))
    assert response.status_code == 500
    assert response.json() == {"ok": False, "reason": "server_error", "message": "Failed to generate AI insight"}


def test_weekly_plan(client, auth_token, override_provider) -> None:
    override_provider(FakeScenario.OK)
    response = client.post("/api/plan/weekly", headers=_auth_headers(auth_token))
    assert response.status_code == 200
    body = response.json()
    assert body["day"] == get_last_monday().isoformat()
    assert body["plan"]["summary"].startswith("This week focus")
    assert body["plan"]["risk_flags"] == ["Water intake is well below target"]


def test_weekly_plan_falls_back_on_bad_output(client, auth_token, override_provider) -> None:
    override_provider(FakeScenario.MALFORMED_JSON)
    body = client.post("/api/plan/weekly", headers=_auth_headers(auth_token)).json()
    assert body["plan"]["summary"] == FALLBACK_WEEKLY_PLAN["summary"]
    assert body["plan"]["actions"] == FALLBACK_WEEKLY_PLAN["actions"]


def test_weekly_plan_timeout(client, auth_token, override_provider) -> None:
    override_provider(FakeScenario.TIMEOUT)
    response = client.post("/api/plan/weekly", headers=_auth_headers(auth_token))
    assert response.status_code == 500
    assert response.json()["reason"] == "timeout"


def _gateway_page(*args, **kwargs) -> httpx.Response:
    return httpx.Response(
        200,
        text="<html><body>upstream gateway</body></html>",
        request=httpx.Request("POST", "https://api.openai.test/v1/chat/completions"),
    )


def test_insights_non_json_upstream_body(client, auth_token, auth_user_id, seed_measurements, monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-12345678")
    monkeypatch.setattr(llm.httpx, "post", _gateway_page)
    seed_measurements(auth_user_id, days=5)

    response = client.post("/api/insights", headers=_auth_headers(auth_token))
    assert response.status_code == 500
    body = response.json()
    assert body["ok"] is False
    assert body["reason"] == "server_error"

    health = client.get("/api/insights/health")
    assert health.status_code == 200
    assert health.json()["provider_ping"]["error"]
    assert any("Provider ping failed" in note for note in health.json()["notes"])


def test_insights_unexpected_provider_error(
    client, auth_token, auth_user_id, seed_measurements, override_provider
) -> None:
    provider = override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=5)

    def explode(payload):
        raise RuntimeError("connection pool exhausted")

    provider.generate_insights = explode
    response = client.post("/api/insights", headers=_auth_headers(auth_token))
    assert response.status_code == 500
    assert response.json() == {"ok": False, "reason": "server_error", "message": "Internal server error"}


def test_insights_expired_cache_regenerates(
    client, auth_token, auth_user_id, seed_measurements, override_provider, db_session
) -> None:
    provider = override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=5)
    headers = _auth_headers(auth_token)

    assert client.post("/api/insights", headers=headers).json()["cached"] is False
    for row in db_session.query(InsightsCache).filter(InsightsCache.user_id == auth_user_id).all():
        row.created_at = utcnow() - timedelta(hours=25)
    db_session.commit()

    again = client.post("/api/insights", headers=headers)
    assert again.status_code == 200
    assert again.json()["cached"] is False
    assert provider.calls == ["generate_insights", "generate_insights"]
    assert client.get("/api/insights/usage", headers=headers).json()["usage"]["today"] == 2
