"""Provider implementations."""

from recipegen.ai.providers.base import AIModel, GeneratedImage, Provider, SimpleModelResponse, StructuredModelResponse
from recipegen.ai.providers.openai_provider import OpenAIModel, OpenAIProvider

__all__ = ["AIModel", "GeneratedImage", "Provider", "SimpleModelResponse", "StructuredModelResponse", "OpenAIModel", "OpenAIProvider"]
