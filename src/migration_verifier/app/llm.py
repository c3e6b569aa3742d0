from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel

from .settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)


class LLMAdapter(Protocol):
    """Interface for structured LLM completions."""

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...


class OpenAIChatAdapter:
    """Chat-completions client that asks for JSON matching a Pydantic schema."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.1,
        max_tokens: int = 4000,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": response_model.__name__.lower(),
                    "strict": False,
                    "schema": response_model.model_json_schema(),
                },
            },
        }
        body = self._post_with_retry("/chat/completions", payload, timeout_s=timeout_s)
        return response_model.model_validate_json(_message_text(body))

    def _post_with_retry(
        self, path: str, payload: dict[str, Any], *, timeout_s: float
    ) -> dict[str, Any]:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return self._post(path, payload, timeout_s=timeout_s)
            except (TimeoutError, ValueError, error.URLError) as exc:
                logger.warning(
                    "llm_request event=failed attempt=%d/%d model=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    exc,
                )
                if attempt == attempts:
                    raise
                if self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise RuntimeError("LLM request loop exited without a result")

    def _post(self, path: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {detail}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(raw)


def _message_text(response_json: dict[str, Any]) -> str:
    """Pull the assistant text out of a chat-completions response."""
    choices = response_json.get("choices") or []
    if not choices:
        raise ValueError("OpenAI response did not contain choices")
    content = choices[0].get("message", {}).get("content", "")
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    if isinstance(content, str) and content.strip():
        return content
    raise ValueError("OpenAI response content could not be parsed as text")


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None
    return OpenAIChatAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
