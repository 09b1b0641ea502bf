import time
from typing import List, Optional

import httpx

from frontdesk.logging_config import get_logger
from frontdesk.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIError(Exception):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"OpenAI API error: {status_code} - {body[:300]}")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions over httpx."""

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str = "gpt-4.1",
        default_timeout_seconds: float = 20.0,
        base_url: str = "https://api.openai.com/v1/chat/completions",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.default_timeout_seconds = default_timeout_seconds
        self.base_url = base_url
        self._transport = transport

    async def generate(
        self,
        messages: List[dict],
        *,
        purpose: str = "reply",
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 600,
        timeout_seconds: Optional[float] = None,
        json_output: bool = False,
    ) -> LLMResponse:
        if not self.api_key:
            raise OpenAIError(401, "OPENAI_API_KEY is not configured")

        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout_seconds
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}

        logger.debug(f"OpenAI request: purpose={purpose}, model={model}, messages_count={len(messages)}")
        started = time.monotonic()
        timed_out = False
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException:
            timed_out = True
            raise
        finally:
            logger.info(
                "Timing",
                extra={
                    "context": {
                        "stage": f"{purpose}_llm_ms",
                        "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                        "model_name": model,
                        "timeout": timed_out,
                    }
                },
            )

        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.text[:500]}")
            raise OpenAIError(response.status_code, response.text)

        data = response.json()
        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        logger.debug(f"OpenAI content ({purpose}): {content[:100] if content else 'EMPTY'}")

        return LLMResponse(
            content=content.strip(),
            model=data.get("model", model),
            usage=data.get("usage"),
        )
