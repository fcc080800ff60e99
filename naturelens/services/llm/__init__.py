from naturelens.services.llm.base import LLMProvider, LLMResponse
from naturelens.services.llm.providers.gemini import GeminiProvider

__all__ = ["GeminiProvider", "LLMProvider", "LLMResponse"]
