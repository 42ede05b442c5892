"""Generation clients.

``OpenAIGenerationClient`` speaks the OpenAI chat-completions protocol over
httpx. Every failure (rate limit, HTTP error, timeout, malformed body) is
raised as ``GenerationError`` carrying the raw vendor message.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import httpx

from app.core.exceptions import ConfigurationError, GenerationError
from app.core.metrics import GENERATION_CALLS
from app.generation.types import GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)


class GenerationClient(ABC):
    """Base class for generation backends."""

    @abstractmethod
    async def complete(self, request: GenerationRequest) -> GenerationResult:
        """Send a prompt and return the raw model text."""
        ...


class OpenAIGenerationClient(GenerationClient):
    """OpenAI Chat Completions client."""

    default_model = "gpt-4o-mini"

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.openai.com/v1/chat/completions",
        model: str = "",
        timeout: float = 60.0,
    ):
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        self.api_key = api_key
        self.api_url = api_url
        self.model = model or self.default_model
        self.timeout = timeout

    async def complete(self, request: GenerationRequest) -> GenerationResult:
        model = request.model or self.model
        start = time.monotonic()

        payload: dict = {
            "model": model,
            "messages": [],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.system_prompt:
            payload["messages"].append({"role": "system", "content": request.system_prompt})
        payload["messages"].append({"role": "user", "content": request.user_prompt})
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.api_url,
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )

            if resp.status_code == 429:
                GENERATION_CALLS.labels(status="rate_limited").inc()
                raise GenerationError("Rate limited by OpenAI", raw=resp.text[:500])

            resp.raise_for_status()
            data = resp.json()
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except httpx.TimeoutException as exc:
            GENERATION_CALLS.labels(status="timeout").inc()
            raise GenerationError(f"Request timed out after {self.timeout}s", raw=str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            GENERATION_CALLS.labels(status="http_error").inc()
            body = exc.response.text[:500]
            raise GenerationError(f"HTTP {exc.response.status_code}: {body}", raw=body) from exc
        except httpx.HTTPError as exc:
            GENERATION_CALLS.labels(status="http_error").inc()
            raise GenerationError(f"{type(exc).__name__}: {exc}", raw=str(exc)) from exc
        except (KeyError, IndexError, ValueError) as exc:
            GENERATION_CALLS.labels(status="malformed").inc()
            raise GenerationError(f"Malformed completion payload: {exc}", raw=resp.text[:500]) from exc

        usage = data.get("usage", {})
        elapsed_ms = int((time.monotonic() - start) * 1000)
        GENERATION_CALLS.labels(status="success").inc()
        logger.debug("Generation %s (%s) completed in %dms", request.request_id, request.purpose, elapsed_ms)

        return GenerationResult(
            text=text,
            model=data.get("model", model),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            latency_ms=elapsed_ms,
        )
