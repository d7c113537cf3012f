from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from limits import parse

from positivity import auth, main
from positivity.config import RATE_LIMIT_PER_IP, GeminiConfig
from positivity.gemini import GeminiService
from positivity.main import app, get_gemini_service
from positivity.security import limiter, load_monitor

from .conftest import ScriptedGemini, analysis_json, gemini_error, gemini_reply

SESSION = auth.SessionInfo(
    user=auth.SessionUser(id="user-1", name="Ada", email="ada@example.com"),
    expires=datetime.utcnow() + timedelta(days=30),
)


@pytest.fixture(autouse=True)
def reset_state():
    limiter.reset()
    load_monitor.lag_ms = 0.0
    yield
    app.dependency_overrides.clear()
    load_monitor.lag_ms = 0.0


@pytest.fixture
def client():
    # Lifespan is not entered, so no database or real Gemini client is needed
    return TestClient(app)


@pytest.fixture
def signed_in():
    app.dependency_overrides[auth.get_session] = lambda: SESSION


@pytest.fixture
def use_gemini(make_service):
    def _use(*steps) -> ScriptedGemini:
        gemini = ScriptedGemini(*steps)
        service = make_service(gemini)
        app.dependency_overrides[get_gemini_service] = lambda: service
        return gemini

    return _use


def test_hello(client):
    response = client.get("/hello")

    assert response.status_code == 200
    assert response.json()["message"] == "Hello World!"
    assert response.headers["x-frame-options"] == "SAMEORIGIN"
    assert "content-security-policy" in response.headers


def test_auth_status(client):
    data = client.get("/auth-status").json()
    assert data["providers"] == ["Google", "GitHub"]
    assert data["endpoints"]["session"] == "/auth/session"


def test_cors_allows_listed_origin(client):
    response = client.get("/hello", headers={"Origin": "http://localhost:5173"})
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_cors_ignores_unlisted_origin(client):
    response = client.get("/hello", headers={"Origin": "https://evil.example.com"})
    assert "access-control-allow-origin" not in response.headers


class TestAuthRoutes:

    def test_session_is_null_without_cookie(self, client):
        assert client.get("/api/auth/session").json() == {"session": None}

    def test_me_requires_session(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_me_returns_user(self, client, signed_in):
        response = client.get("/api/auth/me")
        assert response.status_code == 200
        assert response.json()["user"]["email"] == "ada@example.com"


class TestAnalyze:

    def test_requires_session(self, client, use_gemini):
        gemini = use_gemini(gemini_reply(analysis_json(90)))

        response = client.post("/api/analyze", json={"content": "Hello"})

        assert response.status_code == 401
        assert gemini.requests == []

    def test_positive_result(self, client, signed_in, use_gemini):
        use_gemini(gemini_reply(analysis_json(90, "Upbeat")))

        response = client.post("/api/analyze", json={"content": "What a lovely day"})

        assert response.status_code == 200
        assert response.json() == {"isPositive": True, "score": 90, "reason": "Upbeat"}
        assert "x-ratelimit-remaining" in response.headers

    def test_negative_result_includes_suggestion(self, client, signed_in, use_gemini):
        use_gemini(
            gemini_reply(analysis_json(30, "Harsh")),
            gemini_reply("Let's find a better way."),
        )

        response = client.post("/api/analyze", json={"content": "This is awful"})

        assert response.status_code == 200
        data = response.json()
        assert data["isPositive"] is False
        assert data["suggestion"] == "Let's find a better way."

    @pytest.mark.parametrize(
        "steps,status,code",
        [
            ((gemini_reply("no json here"),), 502, "PARSING_ERROR"),
            ((gemini_error(400, "API key not valid.", "INVALID_ARGUMENT", "API_KEY_INVALID"),), 500, "AUTHENTICATION_ERROR"),
            ((gemini_error(429, "check quota", "RESOURCE_EXHAUSTED"),), 429, "RATE_LIMIT_ERROR"),
            ((gemini_error(503, "overloaded", "UNAVAILABLE"),), 503, "SERVICE_UNAVAILABLE"),
            ((httpx.ReadTimeout("timed out"),), 503, "TIMEOUT_ERROR"),
        ],
    )
    def test_failures_map_to_status(self, client, signed_in, use_gemini, steps, status, code):
        use_gemini(*steps)

        response = client.post("/api/analyze", json={"content": "Hello"})

        assert response.status_code == status
        assert response.json()["error"] == code

    def test_blank_content_is_bad_request(self, client, signed_in, use_gemini):
        gemini = use_gemini(gemini_reply(analysis_json(90)))

        response = client.post("/api/analyze", json={"content": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_INPUT"
        assert gemini.requests == []

    @pytest.mark.parametrize("payload", [{"content": 123}, {"content": None}, {}])
    def test_non_string_content_is_bad_request(self, client, signed_in, use_gemini, payload):
        gemini = use_gemini(gemini_reply(analysis_json(90)))

        response = client.post("/api/analyze", json=payload)

        assert response.status_code == 400
        assert response.json() == {
            "error": "INVALID_INPUT",
            "message": "Content must be a string",
        }
        assert gemini.requests == []


def test_load_shedding(client):
    load_monitor.lag_ms = load_monitor.max_lag_ms * 10

    response = client.get("/hello")

    assert response.status_code == 503
    assert response.json()["error"] == "Server too busy"


def test_rate_limit(client):
    allowed = parse(RATE_LIMIT_PER_IP).amount

    first = client.get("/hello")
    assert first.headers["x-ratelimit-limit"] == str(allowed)
    assert first.headers["x-ratelimit-remaining"] == str(allowed - 1)

    for _ in range(allowed - 1):
        assert client.get("/hello").status_code == 200

    # Routes share one bucket per client
    response = client.get("/auth-status")

    assert response.status_code == 429
    assert response.json()["error"] == "Too many requests"
    assert response.headers["x-ratelimit-remaining"] == "0"
    assert "retry-after" in response.headers


def test_rate_limit_keys_on_forwarded_client(client):
    allowed = parse(RATE_LIMIT_PER_IP).amount

    for _ in range(2):
        client.get("/hello", headers={"X-Forwarded-For": "203.0.113.5"})
    response = client.get("/hello", headers={"X-Forwarded-For": "198.51.100.7"})

    assert response.headers["x-ratelimit-remaining"] == str(allowed - 1)


async def test_lifespan_closes_client_when_database_fails(monkeypatch):
    created = []

    class RecordingService(GeminiService):
        def __init__(self):
            super().__init__(GeminiConfig(api_key="test-gemini-key"))
            created.append(self)

    class UnreachableEngine:
        def begin(self):
            raise OSError("database unreachable")

    monkeypatch.setattr(main, "GeminiService", RecordingService)
    monkeypatch.setattr(main, "engine", UnreachableEngine())

    with pytest.raises(OSError):
        async with main.lifespan(app):
            pass

    assert created[0]._client.is_closed
