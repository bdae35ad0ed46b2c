"""Tests for askcache/main.py"""
from unittest.mock import patch

import psycopg2
import pytest
from fastapi.testclient import TestClient

from askcache.config import Settings
from askcache.main import create_app
from askcache.services.router import AnswerRouter
from conftest import StubGenerator


@pytest.fixture
def generator():
    return StubGenerator(answer="Paris")


@pytest.fixture
def client(store, generator):
    router = AnswerRouter(generator=generator, store=store, background_persist=False)
    app = create_app(settings=Settings(CACHE_BACKEND="memory"), router=router)
    with TestClient(app) as c:
        yield c


class TestHealth:

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "ok"
        assert client.get("/health").json() == {"status": "ok", "message": "Server is running"}

    def test_detailed_health_without_database(self, client):
        body = client.get("/health/detailed").json()
        assert body["status"] == "ok"
        assert body["database"] == "not configured"
        assert body["cache_enabled"] is True
        assert body["semantic_enabled"] is False

    def test_dbcheck_memory_backend(self, client):
        response = client.get("/dbcheck")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "backend": "memory"}


class TestAsk:

    def test_miss_then_exact_hit(self, client, generator):
        first = client.post("/ask", json={"question": "Capital of France?"})
        assert first.status_code == 200
        assert first.json()["cached"] is False
        assert first.json()["mode"] == "llm"
        assert first.json()["answer"] == "Paris"

        second = client.post("/ask", json={"question": "  capital of  FRANCE? "}).json()
        assert second["cached"] is True
        assert second["mode"] == "exact"
        assert second["similarity"] == 1.0
        assert len(generator.calls) == 1

    def test_time_sensitive_question(self, client, generator, store):
        body = client.post("/ask", json={"question": "What's the weather right now?"}).json()
        assert body["cached"] is False
        assert body["time_sensitive"] is True
        assert generator.calls == [("What's the weather right now?", True)]
        assert store.entries == []

    def test_blank_question_is_bad_request(self, client):
        response = client.post("/ask", json={"question": "   "})
        assert response.status_code == 400

    def test_missing_question_is_validation_error(self, client):
        assert client.post("/ask", json={}).status_code == 422


class TestStartup:

    def test_missing_database_url_disables_cache(self):
        app = create_app(settings=Settings(CACHE_BACKEND="postgres", DATABASE_URL=None))
        with TestClient(app) as c:
            dbcheck = c.get("/dbcheck")
            assert dbcheck.status_code == 500
            assert dbcheck.json()["detail"] == "DATABASE_URL not found."

            # no API key: the model error is returned as the answer
            body = c.post("/ask", json={"question": "Capital of France?"}).json()
            assert body["answer"] == "OPENAI_API_KEY is not set"
            assert body["cached"] is False
            assert body["diagnostics"]["error"] == "OPENAI_API_KEY is not set"

    def test_unreachable_database_is_reported(self):
        settings = Settings(CACHE_BACKEND="postgres", DATABASE_URL="postgresql://u:p@db.invalid/app")
        with patch("askcache.main.Database.connect", side_effect=psycopg2.OperationalError("could not connect")):
            app = create_app(settings=settings)
            with TestClient(app) as c:
                assert c.get("/dbcheck").json()["detail"] == "could not connect"
                assert c.get("/health/detailed").json()["status"] == "degraded"

    def test_memory_backend_builds_router(self):
        app = create_app(settings=Settings(CACHE_BACKEND="memory"))
        with TestClient(app):
            assert app.state.router is not None
            assert app.state.router.store is not None
            assert app.state.router.semantic_enabled is False

    def test_malformed_database_url_is_reported(self, monkeypatch):
        for name in ("DATABASE_PUBLIC_URL", "DATABASE_PRIVATE_URL", "OPENAI_API_KEY", "OPENAI_KEY", "CACHE_BACKEND"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("DATABASE_URL", "mysql://u:p@h/db")

        app = create_app()
        with TestClient(app) as c:
            dbcheck = c.get("/dbcheck")
            assert dbcheck.status_code == 500
            assert "DATABASE_URL format is invalid" in dbcheck.json()["detail"]
            assert app.state.router.store is None

            body = c.post("/ask", json={"question": "Capital of France?"}).json()
            assert body["answer"] == "OPENAI_API_KEY is not set"
            assert body["cached"] is False
