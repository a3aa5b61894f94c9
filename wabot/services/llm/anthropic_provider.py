from typing import List, Optional

import httpx

from wabot.logging_config import get_logger
from wabot.schemas.tools import ToolCall
from wabot.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.anthropic")

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "claude-sonnet-4-20250514",
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.anthropic.com/v1/messages"

    def generate(
        self,
        messages: List[dict],
        system: Optional[str] = None,
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        model = model or self.default_model

        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = tools

        logger.debug(f"Anthropic request: model={model}, messages_count={len(messages)}, tools={bool(tools)}")

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(
                self.base_url,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"Anthropic error: {response.text}")
            raise Exception(f"Anthropic API error: {response.status_code} - {response.text}")

        data = response.json()
        blocks = data.get("content") or []

        text_parts = [b.get("text") or "" for b in blocks if b.get("type") == "text"]
        tool_calls = [
            ToolCall(id=b.get("id") or "", name=b.get("name") or "", input=b.get("input") or {})
            for b in blocks
            if b.get("type") == "tool_use"
        ]
        content = "\n".join(part for part in text_parts if part.strip())

        logger.debug(
            f"Anthropic response: stop_reason={data.get('stop_reason')}, "
            f"tools={[c.name for c in tool_calls]}, content={content[:100] if content else 'EMPTY'}"
        )

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            stop_reason=data.get("stop_reason"),
            tool_calls=tool_calls,
            blocks=blocks,
            usage=data.get("usage"),
        )
