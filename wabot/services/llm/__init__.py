from wabot.services.llm.anthropic_provider import AnthropicProvider
from wabot.services.llm.base import LLMProvider, LLMResponse

__all__ = ["AnthropicProvider", "LLMProvider", "LLMResponse"]
