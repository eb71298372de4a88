"""LLM client boundary: prompt in, raw text out."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel, Field

from agent_coordinator.config.settings import Settings
from agent_coordinator.errors import LLMRequestError

logger = logging.getLogger(__name__)


class GenerationOptions(BaseModel):
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2048, ge=1)


class LLMClient(Protocol):
    """Text completion interface. Output is opaque and possibly malformed."""

    model_name: str

    def generate_text(self, prompt: str, options: GenerationOptions) -> str: ...


class OpenAIChatCompletionsClient:
    """Small OpenAI client using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model_name = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_text(self, prompt: str, options: GenerationOptions) -> str:
        payload = {
            "model": self.model_name,
            "temperature": options.temperature,
            "max_tokens": options.max_output_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        response_json = self._request_with_retry(payload)
        return self._extract_content(response_json)

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "llm event=request_failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model_name,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise LLMRequestError(
            f"LLM request failed after {self.max_retries + 1} attempt(s): {last_error}",
            context={"model": self.model_name},
        ) from last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "llm event=trace_request model=%s url=%s timeout_s=%s",
                self.model_name,
                url,
                self.timeout_s,
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise LLMRequestError(
                f"LLM request failed with status {exc.code}: {raw_error[:400]}",
                context={"model": self.model_name, "status": exc.code},
            ) from exc
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise LLMRequestError("LLM response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            return "".join(text_segments)
        raise LLMRequestError("LLM response content could not be read as text")


def build_llm_client(settings: Settings, *, code_model: bool = False) -> LLMClient | None:
    if settings.llm_provider.lower() != "openai":
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatCompletionsClient(
        api_key=api_key,
        model=settings.resolved_code_model() if code_model else settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )


def _trace_enabled() -> bool:
    return os.getenv("AGENT_COORDINATOR_LLM_TRACE", "0").strip() == "1"
