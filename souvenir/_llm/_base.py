"""Base classes and utilities for Language Model and Embedding services.

The pipeline only depends on the two interfaces defined here; concrete providers are
injected through ``Souvenir.Config``.

Classes:
    BaseLLMService: Interface for structured-output LLM calls
    BaseEmbeddingService: Interface for text embedding models
    NoopAsyncContextManager: Stand-in for a disabled rate limiter

Functions:
    format_and_send_prompt: Looks up a template, formats it and sends it to an LLM service
"""

import os
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple, Type, TypeVar, Union

import numpy as np
from pydantic import BaseModel

from souvenir._models import BaseModelAlias
from souvenir._prompt import PROMPTS

T_model = TypeVar("T_model", bound=Union[BaseModel, BaseModelAlias])
TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", re.UNICODE)


async def format_and_send_prompt(
  prompt_key: str,
  llm: "BaseLLMService",
  format_kwargs: dict[str, Any],
  response_model: Type[T_model],
  templates: Optional[Mapping[str, str]] = None,
  **args: Any,
) -> Tuple[T_model, list[dict[str, str]]]:
  """Get a prompt, format it with the supplied args, and send it to the LLM.

  Templates are looked up first in ``templates`` (per-call overrides) and then in
  PROMPTS. If a key named '{prompt_key}_system' exists, it is sent as the system prompt
  and '{prompt_key}_prompt' as the message; otherwise PROMPTS[prompt_key] is used alone.

  Args:
      prompt_key (str): The key for the prompt in the PROMPTS dictionary.
      llm (BaseLLMService): The LLM service to use for sending the message.
      format_kwargs (dict[str, Any]): Dictionary of arguments to format the prompt.
      response_model (Type[T_model]): The expected response model.
      templates (Mapping[str, str], optional): Templates overriding PROMPTS entries.
      **args (Any): Additional keyword arguments to pass to the LLM.

  Returns:
      Tuple[T_model, list[dict[str, str]]]: The response from the LLM and the message history.
  """
  registry = {**PROMPTS, **(templates or {})}
  system_key = prompt_key + "_system"

  if system_key in registry:
    formatted_system = registry[system_key].format(**format_kwargs)
    formatted_prompt = registry[prompt_key + "_prompt"].format(**format_kwargs)
    return await llm.send_message(
      system_prompt=formatted_system, prompt=formatted_prompt, response_model=response_model, **args
    )
  else:
    formatted_prompt = registry[prompt_key].format(**format_kwargs)
    return await llm.send_message(prompt=formatted_prompt, response_model=response_model, **args)


@dataclass
class BaseLLMService:
  """Abstract base class for Language Model service implementations.

  Attributes:
      model (str): The name of the model to use.
      base_url (Optional[str]): The base URL for the API endpoint.
      api_key (Optional[str]): The API key for authentication. When None, the provider
          client reads its usual environment variable.
      llm_async_client (Any): Async client instance, created by subclasses.
      max_requests_concurrent (int): Maximum number of concurrent requests
          (CONCURRENT_TASK_LIMIT environment variable, 1024 if not set).
      max_requests_per_minute (int): Maximum number of requests per minute.
      max_requests_per_second (int): Maximum number of requests per second.
      rate_limit_concurrency (bool): Whether to enforce the concurrency limit.
      rate_limit_per_minute (bool): Whether to enforce the per-minute limit.
      rate_limit_per_second (bool): Whether to enforce the per-second limit.
  """

  model: str = field()
  base_url: Optional[str] = field(default=None)
  api_key: Optional[str] = field(default=None)
  llm_async_client: Any = field(init=False, default=None)
  max_requests_concurrent: int = field(default=int(os.getenv("CONCURRENT_TASK_LIMIT", 1024)))
  max_requests_per_minute: int = field(default=500)
  max_requests_per_second: int = field(default=60)
  rate_limit_concurrency: bool = field(default=True)
  rate_limit_per_minute: bool = field(default=False)
  rate_limit_per_second: bool = field(default=False)

  def count_tokens(self, text: str) -> int:
    """Approximate token count: every word and punctuation mark is one token."""
    return len(TOKEN_PATTERN.findall(text))

  async def send_message(
    self,
    prompt: str,
    system_prompt: str | None = None,
    history_messages: list[dict[str, str]] | None = None,
    response_model: Type[T_model] | None = None,
    **kwargs: Any,
  ) -> Tuple[T_model, list[dict[str, str]]]:
    """Send a message to the language model and receive a structured response.

    Args:
        prompt (str): The user message.
        system_prompt (str, optional): System-level instructions.
        history_messages (list[dict[str, str]], optional): Previous messages with 'role'
            and 'content' keys.
        response_model (Type[T_model], optional): Pydantic model or BaseModelAlias the
            response is parsed into.
        **kwargs (Any): Provider-specific arguments (temperature, max_tokens, ...).

    Returns:
        Tuple[T_model, list[dict[str, str]]]: The parsed response and the updated history.

    Raises:
        ProviderError: Implementations raise it when the provider call fails.
    """
    raise NotImplementedError


@dataclass
class BaseEmbeddingService:
  """Abstract base class for embedding model service implementations.

  Attributes:
      embedding_dim (int): Dimensionality of the produced vectors. Defaults to 1536.
      model (Optional[str]): Name of the embedding model.
      base_url (Optional[str]): Base URL for the API endpoint.
      api_key (Optional[str]): API key for authentication.
      max_requests_concurrent (int): Maximum number of concurrent requests.
      max_requests_per_minute (int): Maximum number of requests per minute.
      max_requests_per_second (int): Maximum number of requests per second.
      rate_limit_concurrency (bool): Whether to enforce the concurrency limit.
      rate_limit_per_minute (bool): Whether to enforce the per-minute limit.
      rate_limit_per_second (bool): Whether to enforce the per-second limit.
      embedding_async_client (Any): Async client instance, created by subclasses.
  """

  embedding_dim: int = field(default=1536)
  model: Optional[str] = field(default="text-embedding-3-small")
  base_url: Optional[str] = field(default=None)
  api_key: Optional[str] = field(default=None)
  max_requests_concurrent: int = field(default=int(os.getenv("CONCURRENT_TASK_LIMIT", 1024)))
  max_requests_per_minute: int = field(default=500)  # Tier 1 OpenAI RPM
  max_requests_per_second: int = field(default=100)
  rate_limit_concurrency: bool = field(default=True)
  rate_limit_per_minute: bool = field(default=True)
  rate_limit_per_second: bool = field(default=False)

  embedding_async_client: Any = field(init=False, default=None)

  async def encode(self, texts: list[str], model: Optional[str] = None) -> np.ndarray[Any, np.dtype[np.float32]]:
    """Encode texts into embedding vectors.

    Args:
        texts (list[str]): Texts to encode.
        model (Optional[str]): Overrides the configured model for this call.

    Returns:
        np.ndarray: Array of shape (len(texts), embedding_dim).

    Raises:
        ProviderError: Implementations raise it when the provider call fails.
    """
    raise NotImplementedError


class NoopAsyncContextManager:
  """An async context manager that does nothing, used when a limiter is disabled."""

  async def __aenter__(self) -> "NoopAsyncContextManager":
    return self

  async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
    pass
