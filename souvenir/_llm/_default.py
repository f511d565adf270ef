"""Default LLM and Embedding Service implementations.

The defaults are aliases of the OpenAI-compatible services. Applications can subclass
them, or pass any BaseLLMService / BaseEmbeddingService through ``Souvenir.Config``.
"""

__all__ = ['DefaultLLMService', 'DefaultEmbeddingService']

from ._llm_openai import OpenAIEmbeddingService, OpenAILLMService


class DefaultLLMService(OpenAILLMService):
    """Default Language Model service (OpenAI chat completions with structured output)."""

    pass


class DefaultEmbeddingService(OpenAIEmbeddingService):
    """Default text embedding service (OpenAI embeddings, 1536 dimensions)."""

    pass
