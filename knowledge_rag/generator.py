"""
Generation Client -- Sends the assembled prompt to the text-generation model.

Two wire formats are supported:

  - "openai": the OpenAI-compatible /v1/chat/completions endpoint exposed by
    vLLM (and many other servers). The prompt is sent as a single user
    message and the answer is read from choices[0].message.content.
  - "gemini": Gemini's models/{model}:generateContent. The answer is the
    concatenation of candidates[0].content.parts[*].text.

The answer text is returned unmodified. Any failure -- transport error,
error status, or a response without answer text -- raises
GenerationUnavailable. There is no retry and no fallback answer.
"""

import logging
import time
from typing import Protocol

import httpx

from .config import Config
from .errors import GenerationUnavailable

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


class GenerationClient:
    """Async HTTP client for the text-generation model."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api: str = "openai",
        api_key: str = "",
        temperature: float = 0.1,
        max_tokens: int = 1024,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if api not in ("openai", "gemini"):
            raise ValueError(f"Unsupported generation api: {api!r}")

        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api = api
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._owns_client = http_client is None
        # LLM generation can be slow, hence the generous default timeout.
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls, config: Config, http_client: httpx.AsyncClient | None = None
    ) -> "GenerationClient":
        return cls(
            base_url=config.generation_url,
            model=config.generation_model,
            api=config.generation_api,
            api_key=config.generation_api_key,
            temperature=config.generation_temperature,
            max_tokens=config.generation_max_tokens,
            timeout=config.generation_timeout,
            http_client=http_client,
        )

    def _build_request(self, prompt: str) -> tuple[str, dict, dict]:
        headers: dict[str, str] = {}

        if self.api == "gemini":
            if self.api_key:
                headers["x-goog-api-key"] = self.api_key
            return (
                f"{self.base_url}/models/{self.model}:generateContent",
                {
                    "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                    "generationConfig": {
                        "temperature": self.temperature,
                        "maxOutputTokens": self.max_tokens,
                    },
                },
                headers,
            )

        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return (
            f"{self.base_url}/v1/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            headers,
        )

    def _parse_answer(self, result: dict) -> str:
        if self.api == "gemini":
            parts = result["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        return result["choices"][0]["message"]["content"]

    async def generate(self, prompt: str) -> str:
        """
        Send the prompt to the model and return its answer text.

        Args:
            prompt: The full prompt (instructions, context and question).

        Returns:
            The model's answer, unmodified.

        Raises:
            GenerationUnavailable: if the call fails or the response carries
                no answer text.
        """
        start = time.monotonic()
        url, payload, headers = self._build_request(prompt)

        try:
            response = await self.http_client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as exc:
            raise GenerationUnavailable(f"Generation request to {url} failed: {exc}") from exc
        except ValueError as exc:
            raise GenerationUnavailable(f"Generation server at {url} returned invalid JSON") from exc

        try:
            answer = self._parse_answer(result)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise GenerationUnavailable("Generation response did not contain an answer") from exc
        if not isinstance(answer, str):
            raise GenerationUnavailable("Generation response did not contain an answer")

        # Token usage is only reported by OpenAI-compatible servers.
        usage = result.get("usage", {}) if isinstance(result, dict) else {}
        logger.info(
            "LLM generated answer in %.3fs (prompt_tokens=%s, completion_tokens=%s)",
            time.monotonic() - start,
            usage.get("prompt_tokens", "?"),
            usage.get("completion_tokens", "?"),
        )
        return answer

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
