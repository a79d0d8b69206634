"""Async client for the Ollama chat API, constrained to pydantic schemas.

Used by the optional AI paths only (report-type classification and the
best-effort file matcher). The deterministic engine never needs it.
"""

import json
import logging
from typing import TypeVar

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

DEFAULT_TIMEOUT = 60.0


class OllamaResponse(BaseModel):
    """Non-streaming /api/chat response (only the fields we read)."""

    model: str
    message: dict
    done: bool
    prompt_eval_count: int = 0
    eval_count: int = 0
    total_duration: int = 0


class OllamaClient:
    """Thin async wrapper over Ollama's ``/api/chat`` and ``/api/tags``.

    Usage::

        async with OllamaClient("http://localhost:11434") as client:
            verdict, _raw = await client.generate_structured(
                model="qwen2.5",
                schema_class=ReportClassification,
                system="Classify report filenames.",
                prompt="relatorio_JFAL_2024.pdf",
            )
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def generate_structured(
        self,
        model: str,
        schema_class: type[T],
        system: str,
        prompt: str,
        *,
        temperature: float = 0.0,
    ) -> tuple[T, OllamaResponse]:
        """Ask the model for JSON matching ``schema_class`` and parse it.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status.
            pydantic.ValidationError: If the output does not fit the schema.
            json.JSONDecodeError: If the output is not JSON at all.
        """
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "format": schema_class.model_json_schema(),
            "stream": False,
            "options": {"temperature": temperature},
        }

        response = await self._client.post("/api/chat", json=payload)
        response.raise_for_status()

        raw = OllamaResponse.model_validate(response.json())
        parsed = schema_class.model_validate(json.loads(raw.message.get("content", "")))

        logger.debug(
            "Ollama %s: %d prompt tokens, %d eval tokens, %.1fs",
            model,
            raw.prompt_eval_count,
            raw.eval_count,
            raw.total_duration / 1e9,
        )
        return parsed, raw

    async def list_models(self) -> list[dict]:
        """Models installed on the server."""
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        return response.json().get("models", [])

    async def resolve_model(self, preferred: str = "") -> str | None:
        """Return ``preferred`` if set, else the best instruct model installed."""
        if preferred:
            return preferred
        return pick_instruct_model(await self.list_models())


def pick_instruct_model(models: list[dict]) -> str | None:
    """Prefer instruct/chat-tuned models; fall back to the first one listed."""
    for m in models:
        name = m["name"].lower()
        if "instruct" in name or "chat" in name or "qwen" in name or "gemma" in name:
            return m["name"]
    return models[0]["name"] if models else None
