from __future__ import annotations

import sys
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from identity_fixtures import TEST_JWT_SECRET

from stone_api.app import create_app
from stone_api.config import Settings


class TestApiOpenApiAuth(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        settings = Settings(
            app_name="Stone Atlas API (OpenAPI Test)",
            app_env="test",
            app_docs_enabled=True,
            auth_jwt_secret=TEST_JWT_SECRET,
        )
        cls.schema = TestClient(create_app(settings=settings)).get("/openapi.json").json()

    def test_openapi_includes_bearer_auth_scheme(self) -> None:
        security_schemes = self.schema.get("components", {}).get("securitySchemes", {})
        self.assertIn("bearerAuth", security_schemes)
        scheme = security_schemes["bearerAuth"]
        self.assertEqual(scheme.get("type"), "http")
        self.assertEqual(scheme.get("scheme"), "bearer")

    def test_identity_routes_are_published(self) -> None:
        paths = set(self.schema["paths"])
        for path in (
            "/api/v1/auth/apple",
            "/api/v1/auth/google",
            "/api/v1/auth/refresh",
            "/api/v1/auth/logout",
            "/api/v1/auth/me",
            "/api/v1/auth/check-username/{username}",
            "/api/v1/auth/check-email/{email}",
        ):
            self.assertIn(path, paths)


if __name__ == "__main__":
    unittest.main()
