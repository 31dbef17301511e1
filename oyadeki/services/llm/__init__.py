from oyadeki.services.llm.base import ImagePart, LLMProvider, LLMResponse
from oyadeki.services.llm.gemini_provider import GeminiError, GeminiProvider

__all__ = ["ImagePart", "LLMProvider", "LLMResponse", "GeminiError", "GeminiProvider"]
