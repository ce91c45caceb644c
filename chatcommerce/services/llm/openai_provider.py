from typing import List, Optional

import httpx

from chatcommerce.logging_config import get_logger
from chatcommerce.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1/chat/completions",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url
        self._transport = transport

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 200,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else 30.0

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        with httpx.Client(timeout=timeout, transport=self._transport) as client:
            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        logger.debug(f"OpenAI response status: {response.status_code}")
        if response.status_code != 200:
            logger.error(f"OpenAI error: {response.status_code} {response.text[:300]}")
            raise LLMError(f"OpenAI API error: {response.status_code}")

        try:
            data = response.json()
            content = ""
            choices = data.get("choices") or []
            if choices:
                content = (choices[0].get("message") or {}).get("content") or ""
            return LLMResponse(
                content=content if isinstance(content, str) else str(content),
                model=data.get("model", model),
                usage=data.get("usage"),
            )
        except (ValueError, AttributeError, TypeError, IndexError, KeyError) as e:
            logger.error(f"OpenAI malformed response: {response.text[:300]}")
            raise LLMError(f"OpenAI API returned an unusable body: {type(e).__name__}") from e
