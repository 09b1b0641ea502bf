from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None


class LLMProvider(ABC):
    """Single request/response chat completion.

    ``purpose`` names the pipeline stage making the call (routing,
    completeness, extraction, ...); it is used for timing logs.
    ``json_output`` asks the model for a JSON object instead of prose.
    """

    @abstractmethod
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
        """Generate response from LLM."""
        pass
