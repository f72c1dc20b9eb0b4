from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from stone_api.config.settings import Settings

logger = logging.getLogger("stone_api.moderation")


class ModerationUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class ModerationVerdict:
    flagged: bool
    categories: dict[str, bool] = field(default_factory=dict)


class TextModerator(Protocol):
    async def check_text(self, text: str) -> ModerationVerdict: ...


class ModerationService:
    """OpenAI moderation endpoint client.

    Rate-limit responses are retried with exponential backoff; every other
    failure raises ``ModerationUnavailable`` and the caller decides whether to
    fail open.
    """

    def __init__(
        self,
        *,
        api_key: str,
        url: str = "https://api.openai.com/v1/moderations",
        model: str = "omni-moderation-latest",
        timeout_s: float = 5.0,
        max_attempts: int = 3,
        backoff_base_s: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._model = model
        self._timeout_s = timeout_s
        self._max_attempts = max(1, max_attempts)
        self._backoff_base_s = backoff_base_s
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> ModerationService | None:
        if not settings.moderation_enabled:
            return None
        return cls(
            api_key=settings.openai_api_key,
            url=settings.moderation_url,
            model=settings.moderation_model,
            timeout_s=settings.moderation_timeout_s,
            max_attempts=settings.moderation_max_attempts,
            backoff_base_s=settings.moderation_backoff_base_s,
        )

    async def check_text(self, text: str) -> ModerationVerdict:
        if not text:
            return ModerationVerdict(flagged=False)

        async with httpx.AsyncClient(
            timeout=self._timeout_s, transport=self._transport
        ) as client:
            for attempt in range(1, self._max_attempts + 1):
                try:
                    response = await client.post(
                        self._url,
                        headers={"Authorization": f"Bearer {self._api_key}"},
                        json={"model": self._model, "input": text},
                    )
                except httpx.HTTPError as exc:
                    raise ModerationUnavailable(f"Moderation request failed: {exc}") from exc

                if response.status_code == httpx.codes.TOO_MANY_REQUESTS:
                    if attempt < self._max_attempts:
                        delay = self._backoff_base_s * (2 ** (attempt - 1))
                        logger.info(
                            "moderation_rate_limited",
                            extra={"attempt": attempt, "retry_in_s": delay},
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise ModerationUnavailable("Moderation is rate limited.")

                if response.status_code != httpx.codes.OK:
                    raise ModerationUnavailable(
                        f"Moderation returned HTTP {response.status_code}."
                    )
                return self._parse(response)

        raise ModerationUnavailable("Moderation gave no answer.")

    @staticmethod
    def _parse(response: httpx.Response) -> ModerationVerdict:
        try:
            body = response.json()
            result = body["results"][0]
            categories = {
                str(name): bool(hit)
                for name, hit in (result.get("categories") or {}).items()
            }
            return ModerationVerdict(flagged=bool(result["flagged"]), categories=categories)
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ModerationUnavailable("Moderation response is malformed.") from exc
