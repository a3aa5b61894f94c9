from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from wabot.schemas.tools import ToolCall


@dataclass
class LLMResponse:
    content: str
    model: str
    stop_reason: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    # Raw content blocks, replayed verbatim as the assistant turn of a tool round.
    blocks: List[dict] = field(default_factory=list)
    usage: Optional[dict] = None

    @property
    def wants_tools(self) -> bool:
        return self.stop_reason == "tool_use" and bool(self.tool_calls)


class LLMProvider(ABC):
    """Abstract base class for completion providers."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        system: Optional[str] = None,
        tools: Optional[List[dict]] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
    ) -> LLMResponse:
        """Generate a response, optionally exposing tools."""
        pass
