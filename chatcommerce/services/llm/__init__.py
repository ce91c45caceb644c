from chatcommerce.services.llm.base import LLMError, LLMProvider, LLMResponse
from chatcommerce.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider"]
