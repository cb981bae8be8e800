from conftest import FakeScenario

CRON_SECRET = "cron-test-secret"


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _email_of(client, token: str) -> str:
    return client.get("/api/auth/me", headers=_auth_headers(token)).json()["email"]


def _opt_in(client, token: str) -> None:
    response = client.put("/api/preferences", headers=_auth_headers(token), json={"reminders": {"daily_email": True}})
    assert response.status_code == 200


def test_daily_insights_cron_requires_secret(client, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    assert client.post("/api/cron/daily-insights").status_code == 401
    assert client.post("/api/cron/daily-insights", headers=_auth_headers("wrong")).status_code == 401


def test_daily_insights_cron_disabled_without_configured_secret(client, monkeypatch) -> None:
    monkeypatch.delenv("CRON_SECRET", raising=False)
    response = client.post("/api/cron/daily-insights", headers={"Authorization": "Bearer "})
    assert response.status_code == 401


def test_daily_insights_cron_generates_per_user(
    client, auth_token, auth_user_id, seed_measurements, override_provider, monkeypatch
) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    override_provider(FakeScenario.OK)
    seed_measurements(auth_user_id, days=2)

    response = client.post("/api/cron/daily-insights", headers=_auth_headers(CRON_SECRET))
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Daily insights generation completed"
    assert body["processed"] == len(body["results"])
    mine = next(row for row in body["results"] if row["user_id"] == auth_user_id)
    assert mine["status"] == "success"
    assert mine["insight"].endswith("...")
    assert len(mine["insight"]) == 53

    today = client.get("/api/insights/today", headers=_auth_headers(auth_token)).json()
    assert today["ai_insight"] is not None
    assert today["today"]["steps"] == 8000


def test_daily_insights_cron_records_provider_errors(client, auth_user_id, override_provider, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    override_provider(FakeScenario.TIMEOUT)
    body = client.post("/api/cron/daily-insights", headers=_auth_headers(CRON_SECRET)).json()
    mine = next(row for row in body["results"] if row["user_id"] == auth_user_id)
    assert mine["status"] == "error"
    assert mine["error"] == "Request timeout - please try again"


def test_daily_insights_cron_without_openai_key(client, auth_user_id, no_provider, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    body = client.post("/api/cron/daily-insights", headers=_auth_headers(CRON_SECRET)).json()
    mine = next(row for row in body["results"] if row["user_id"] == auth_user_id)
    assert mine == {
        "user_id": auth_user_id,
        "status": "error",
        "insight": None,
        "error": "OpenAI API key not configured",
    }


def test_daily_insights_cron_get_only_in_development(client, override_provider, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    override_provider(FakeScenario.OK)

    monkeypatch.setenv("APP_ENV", "development")
    assert client.get("/api/cron/daily-insights", headers=_auth_headers(CRON_SECRET)).status_code == 200
    assert client.get("/api/cron/daily-insights").status_code == 401

    monkeypatch.setenv("APP_ENV", "production")
    assert client.get("/api/cron/daily-insights", headers=_auth_headers(CRON_SECRET)).status_code == 405


def test_daily_email_cron_sends_to_opted_in_users(client, auth_token, override_email_sender, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    sender = override_email_sender()
    _opt_in(client, auth_token)
    email = _email_of(client, auth_token)

    response = client.post("/api/email/daily", headers={"CRON_SECRET": CRON_SECRET})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["sent"] >= 1
    assert body["failed"] == 0
    mine = next(message for message in sender.sent if message["to"] == email)
    assert mine["subject"] == "Your Daily Health Reminder"
    assert "Ready to Track Your Health?" in mine["html"]
    assert "not medical advice" in mine["text"]


def test_daily_email_cron_counts_failures(client, auth_token, override_email_sender, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    _opt_in(client, auth_token)
    email = _email_of(client, auth_token)
    sender = override_email_sender(fail_for={email})

    body = client.post("/api/email/daily", headers={"CRON_SECRET": CRON_SECRET}).json()
    assert body["failed"] >= 1
    assert all(message["to"] != email for message in sender.sent)


def test_daily_email_for_current_user(client, auth_token, override_email_sender) -> None:
    sender = override_email_sender()
    headers = _auth_headers(auth_token)

    skipped = client.post("/api/email/daily", headers=headers)
    assert skipped.status_code == 200
    assert skipped.json() == {"success": True, "sent": 0, "skipped": 1, "failed": 0}
    assert sender.sent == []

    _opt_in(client, auth_token)
    sent = client.post("/api/email/daily", headers=headers)
    assert sent.json() == {"success": True, "sent": 1, "skipped": 0, "failed": 0}
    assert sender.sent[0]["to"] == _email_of(client, auth_token)


def test_daily_email_delivery_error(client, auth_token, override_email_sender) -> None:
    _opt_in(client, auth_token)
    override_email_sender(fail_for={_email_of(client, auth_token)})
    response = client.post("/api/email/daily", headers=_auth_headers(auth_token))
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to send daily email"


def test_daily_email_requires_user_or_secret(client, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    assert client.post("/api/email/daily").status_code == 401
    assert client.post("/api/email/daily", headers={"CRON_SECRET": "nope"}).status_code == 401
