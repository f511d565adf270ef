"""LLM and embedding services.

Base Classes:
    - BaseLLMService: Interface for structured-output LLM calls
    - BaseEmbeddingService: Interface for text embedding services

Default Implementations:
    - DefaultLLMService, DefaultEmbeddingService (OpenAI-compatible)

Provider Implementations:
    - OpenAILLMService, OpenAIEmbeddingService
"""

__all__ = [
    "BaseLLMService",
    "BaseEmbeddingService",
    "DefaultEmbeddingService",
    "DefaultLLMService",
    "format_and_send_prompt",
    "OpenAIEmbeddingService",
    "OpenAILLMService",
]

from ._base import BaseEmbeddingService, BaseLLMService, format_and_send_prompt
from ._default import DefaultEmbeddingService, DefaultLLMService
from ._llm_openai import OpenAIEmbeddingService, OpenAILLMService
