from __future__ import annotations

import asyncio
import json
import sys
import unittest
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from stone_api.config import Settings
from stone_api.modules.moderation.service import ModerationService, ModerationUnavailable


def _result(flagged: bool) -> dict[str, object]:
    return {
        "id": "modr-1",
        "model": "omni-moderation-latest",
        "results": [
            {
                "flagged": flagged,
                "categories": {"harassment": flagged, "violence": False},
            }
        ],
    }


class TestModerationService(unittest.TestCase):
    def setUp(self) -> None:
        self.requests: list[httpx.Request] = []

    def _service(self, responses: list[httpx.Response]) -> ModerationService:
        pending = list(responses)

        def _handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return pending.pop(0)

        return ModerationService(
            api_key="sk-test",
            max_attempts=3,
            backoff_base_s=0.0,
            transport=httpx.MockTransport(_handler),
        )

    def test_flagged_text(self) -> None:
        service = self._service([httpx.Response(200, json=_result(True))])
        verdict = asyncio.run(service.check_text("rudeword"))

        self.assertTrue(verdict.flagged)
        self.assertTrue(verdict.categories["harassment"])
        request = self.requests[0]
        self.assertEqual(request.headers["authorization"], "Bearer sk-test")
        self.assertEqual(
            json.loads(request.content),
            {"model": "omni-moderation-latest", "input": "rudeword"},
        )

    def test_clean_text(self) -> None:
        service = self._service([httpx.Response(200, json=_result(False))])
        verdict = asyncio.run(service.check_text("squatqueen"))
        self.assertFalse(verdict.flagged)
        self.assertFalse(any(verdict.categories.values()))

    def test_rate_limit_is_retried(self) -> None:
        service = self._service(
            [
                httpx.Response(429),
                httpx.Response(429),
                httpx.Response(200, json=_result(False)),
            ]
        )
        verdict = asyncio.run(service.check_text("deadlifter"))
        self.assertFalse(verdict.flagged)
        self.assertEqual(len(self.requests), 3)

    def test_rate_limit_exhaustion_is_unavailable(self) -> None:
        service = self._service([httpx.Response(429) for _ in range(3)])
        with self.assertRaises(ModerationUnavailable):
            asyncio.run(service.check_text("deadlifter"))
        self.assertEqual(len(self.requests), 3)

    def test_server_error_is_unavailable_without_retry(self) -> None:
        service = self._service([httpx.Response(500)])
        with self.assertRaises(ModerationUnavailable):
            asyncio.run(service.check_text("deadlifter"))
        self.assertEqual(len(self.requests), 1)

    def test_malformed_body_is_unavailable(self) -> None:
        service = self._service([httpx.Response(200, json={"results": []})])
        with self.assertRaises(ModerationUnavailable):
            asyncio.run(service.check_text("deadlifter"))

    def test_empty_text_is_not_sent(self) -> None:
        service = self._service([])
        verdict = asyncio.run(service.check_text(""))
        self.assertFalse(verdict.flagged)
        self.assertEqual(self.requests, [])

    def test_disabled_without_api_key(self) -> None:
        self.assertIsNone(ModerationService.from_settings(Settings(openai_api_key="")))
        self.assertIsInstance(
            ModerationService.from_settings(Settings(openai_api_key="sk-live")),
            ModerationService,
        )


if __name__ == "__main__":
    unittest.main()
