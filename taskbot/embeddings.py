"""Optional embedding client backing semantic memory search."""

from __future__ import annotations

import logging

import httpx

from taskbot.config import Settings

LOGGER = logging.getLogger(__name__)


class EmbeddingClient:
    """Calls an OpenAI-compatible ``/embeddings`` endpoint.

    Every failure is logged and reported as ``None`` so callers fall back to
    full-text search only.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        dimensions: int,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._dimensions = dimensions
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> EmbeddingClient | None:
        if not settings.embedding_api_key:
            return None
        return cls(
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_base_url,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout_seconds=settings.request_timeout_seconds,
        )

    async def try_embed(self, text: str) -> list[float] | None:
        if not text.strip():
            return None
        payload = {"model": self._model, "input": [text], "dimensions": self._dimensions}
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=httpx.Timeout(self._timeout_seconds)
            ) as client:
                response = await client.post(
                    "/embeddings",
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
            return [float(x) for x in data["data"][0]["embedding"]]
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            LOGGER.warning("Embedding request failed, using full-text search only: %s", exc)
            return None
