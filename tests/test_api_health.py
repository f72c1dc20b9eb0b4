from __future__ import annotations

import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from identity_fixtures import TEST_JWT_SECRET

from stone_api.app import create_app
from stone_api.config import Settings
from stone_api.modules.auth.errors import ConfigurationFault


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "app_name": "Stone Atlas API (Test)",
        "app_env": "test",
        "app_docs_enabled": False,
        "auth_jwt_secret": TEST_JWT_SECRET,
        "openai_api_key": "",
    }
    values.update(overrides)
    return Settings(**values)


class TestApiHealth(unittest.TestCase):
    def test_health_endpoint_returns_ok(self) -> None:
        client = TestClient(create_app(settings=_settings()))

        response = client.get("/health")
        self.assertEqual(response.status_code, 200)

        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["app"], "Stone Atlas API (Test)")
        self.assertEqual(payload["env"], "test")

    def test_docs_disabled_hides_docs_routes(self) -> None:
        client = TestClient(create_app(settings=_settings()))

        self.assertEqual(client.get("/docs").status_code, 404)
        self.assertEqual(client.get("/redoc").status_code, 404)

    def test_ready_endpoint_reports_identity_integrations(self) -> None:
        settings = _settings(google_client_ids=["client.apps.googleusercontent.com"])
        client = TestClient(create_app(settings=settings))
        with patch(
            "stone_api.modules.health.router._check_db_ready",
            new=AsyncMock(return_value=True),
        ):
            response = client.get("/health/ready")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ready")
        self.assertEqual(
            payload["checks"],
            {
                "db": True,
                "apple_sign_in": True,
                "google_sign_in": True,
                "username_moderation": False,
            },
        )

    def test_ready_endpoint_returns_503_when_db_check_fails(self) -> None:
        client = TestClient(create_app(settings=_settings()))
        with patch(
            "stone_api.modules.health.router._check_db_ready",
            new=AsyncMock(return_value=False),
        ):
            response = client.get("/health/ready")

        self.assertEqual(response.status_code, 503)
        payload = response.json()
        self.assertEqual(payload["error_code"], "service_unavailable")
        self.assertEqual(payload["detail"], "Database not ready")

    def test_ready_endpoint_returns_503_when_database_is_unreachable(self) -> None:
        engine = create_async_engine(
            "sqlite+aiosqlite:////nonexistent-stone-atlas-dir/ready.db", poolclass=NullPool
        )
        client = TestClient(create_app(settings=_settings()))
        with patch("stone_api.modules.health.router.get_engine", return_value=engine):
            response = client.get("/health/ready")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["detail"], "Database not ready")

    def test_cors_headers_are_present_when_origins_configured(self) -> None:
        settings = _settings(app_cors_origins=["http://localhost:5173"])
        client = TestClient(create_app(settings=settings))

        response = client.options(
            "/health",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "GET",
            },
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.headers.get("access-control-allow-origin"),
            "http://localhost:5173",
        )

    def test_request_logging_emits_request_completed(self) -> None:
        settings = _settings(app_log_requests=True, app_log_json=False)
        client = TestClient(create_app(settings=settings))

        with self.assertLogs("stone_api.request", level="INFO") as captured:
            response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertIn("request_completed", "\n".join(captured.output))

    def test_startup_without_jwt_secret_fails_fast(self) -> None:
        with self.assertRaises(ConfigurationFault):
            create_app(settings=_settings(auth_jwt_secret=""))


if __name__ == "__main__":
    unittest.main()
