from frontdesk.services.llm.base import LLMProvider, LLMResponse
from frontdesk.services.llm.openai_provider import OpenAIError, OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIError", "OpenAIProvider"]
