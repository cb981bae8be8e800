import json
import os
import tempfile
from datetime import date, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="everwell-tests-"))
os.environ.setdefault("DB_PATH", str(_TEST_ROOT / "everwell_bootstrap.db"))
os.environ.setdefault("AVATAR_DIR", str(_TEST_ROOT / "avatars"))
os.environ.setdefault("APP_ENV", "development")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from everwell.core.errors import ReasonCode
from everwell.core.security import hash_password
from everwell.db.models import Profile, User
from everwell.db.session import SessionLocal, configure_database, create_tables
from everwell.services.email import get_email_sender
from everwell.services.insights_service import WEEKLY_SYSTEM_PROMPT
from everwell.services.llm import (
    InsightsResult,
    LLMRequestError,
    get_insights_provider,
    parse_insights_response,
    parse_llm_json,
)
from everwell.services.metrics_service import MetricsService, utc_today


class FakeScenario(str, Enum):
    OK = "OK"
    MALFORMED_JSON = "MALFORMED_JSON"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    INVALID_API_KEY = "INVALID_API_KEY"


_SCENARIO_ERRORS = {
    FakeScenario.TIMEOUT: (ReasonCode.timeout, None, "Request timeout - please try again"),
    FakeScenario.RATE_LIMIT: (ReasonCode.rate_limit, 429, "Rate limit exceeded - please try again later"),
    FakeScenario.INVALID_API_KEY: (
        ReasonCode.invalid_api_key,
        401,
        "Invalid API key - please check your OpenAI configuration",
    ),
}


class FakeInsightsProvider:
    provider_name = "openai"

    def __init__(self, scenario: FakeScenario, fixture_dir: Path) -> None:
        self.scenario = scenario
        self.fixture_dir = fixture_dir
        self.model = "gpt-4o-mini"
        self.calls: list[str] = []

    def _load_json(self, name: str) -> dict:
        raw = (self.fixture_dir / f"{name}.json").read_text(encoding="utf-8")
        return json.loads(raw)

    def _malformed(self) -> str:
        return (self.fixture_dir / "MALFORMED_JSON.txt").read_text(encoding="utf-8")

    def _raise_if_failing(self) -> None:
        if self.scenario in _SCENARIO_ERRORS:
            reason, status_code, message = _SCENARIO_ERRORS[self.scenario]
            raise LLMRequestError(
                reason=reason,
                provider=self.provider_name,
                model=self.model,
                message=message,
                status_code=status_code,
            )

    def generate_insights(self, payload: dict[str, Any]) -> InsightsResult:
        self.calls.append("generate_insights")
        self._raise_if_failing()
        if self.scenario == FakeScenario.MALFORMED_JSON:
            return parse_insights_response(self._malformed())
        return InsightsResult.model_validate(self._load_json("OK_INSIGHTS"))

    def generate_json(self, system_prompt: str, user_prompt: str, max_tokens: int = 500) -> dict[str, Any]:
        _ = (user_prompt, max_tokens)
        self.calls.append("generate_json")
        self._raise_if_failing()
        if self.scenario == FakeScenario.MALFORMED_JSON:
            return parse_llm_json(self._malformed())
        if system_prompt == WEEKLY_SYSTEM_PROMPT:
            return self._load_json("OK_WEEKLY_PLAN")
        return self._load_json("OK_DAILY_INSIGHT")

    def ping(self) -> dict[str, Any]:
        self.calls.append("ping")
        if self.scenario in _SCENARIO_ERRORS:
            _, status_code, message = _SCENARIO_ERRORS[self.scenario]
            return {"attempted": True, "status": status_code, "latency_ms": 5, "parsed_json": None, "error": message}
        return {"attempted": True, "status": 200, "latency_ms": 42, "parsed_json": True, "error": None}


class FakeEmailSender:
    def __init__(self, fail_for: Optional[set[str]] = None) -> None:
        self.fail_for = fail_for or set()
        self.sent: list[dict[str, str]] = []

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> dict[str, Any]:
        if to in self.fail_for:
            raise RuntimeError(f"simulated delivery failure for {to}")
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})
        return {"id": f"email_{len(self.sent)}"}


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "llm"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "everwell_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from everwell.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(full_name: Optional[str] = None, height_in: Optional[float] = None) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=hash_password("StrongPass123"))
        db_session.add(user)
        db_session.flush()
        db_session.add(Profile(user_id=user.id, full_name=full_name, height_in=height_in))
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post("/api/auth/signup", json={"email": email, "password": password})
    assert signup.status_code == 201
    login = client.post("/api/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def auth_user_id(client: TestClient, auth_token: str) -> int:
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {auth_token}"})
    assert me.status_code == 200
    return me.json()["id"]


@pytest.fixture
def seed_measurements(db_session: Session):
    """Log the same entries on each of the last `days` days, ending today."""

    def _seed(user_id: int, days: int = 5, entries: Optional[list[dict[str, Any]]] = None) -> list[date]:
        rows = entries or [
            {"metric_slug": "weight_lbs", "value": 180},
            {"metric_slug": "steps", "value": 8000},
            {"metric_slug": "sleep_hours", "value": 7.5},
        ]
        today = utc_today()
        logged = [today - timedelta(days=offset) for offset in range(days)]
        for day in logged:
            MetricsService.save_measurements(db_session, user_id, day, rows)
        return logged

    return _seed


@pytest.fixture
def fake_provider_factory(fixture_dir: Path) -> Callable[[FakeScenario], FakeInsightsProvider]:
    def _factory(scenario: FakeScenario) -> FakeInsightsProvider:
        return FakeInsightsProvider(scenario=scenario, fixture_dir=fixture_dir)

    return _factory


@pytest.fixture
def override_provider(app, fake_provider_factory):
    def _override(scenario: FakeScenario = FakeScenario.OK) -> FakeInsightsProvider:
        provider = fake_provider_factory(scenario)
        app.dependency_overrides[get_insights_provider] = lambda: provider
        return provider

    return _override


@pytest.fixture
def no_provider(app, client):
    app.dependency_overrides[get_insights_provider] = lambda: None


@pytest.fixture
def override_email_sender(app):
    def _override(fail_for: Optional[set[str]] = None) -> FakeEmailSender:
        sender = FakeEmailSender(fail_for=fail_for)
        app.dependency_overrides[get_email_sender] = lambda: sender
        return sender

    return _override
