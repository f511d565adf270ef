"""OpenAI-compatible LLM and embedding services.

Both services talk to the OpenAI API or to an Azure OpenAI deployment. Every request
goes through the same limits (a concurrency semaphore and optional per-minute and
per-second limiters), transient failures are retried with exponential backoff, and
whatever still fails is raised as a ProviderError so that the pipeline fails a single
chunk instead of the whole batch.
"""

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from itertools import chain
from typing import Any, AsyncIterator, List, Literal, Optional, Tuple, Type, Union, cast

import instructor
import numpy as np
import tiktoken
from aiolimiter import AsyncLimiter
from openai import APIConnectionError, AsyncAzureOpenAI, AsyncOpenAI, RateLimitError
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from souvenir._exceptions import ProviderError, ValidationError
from souvenir._models import BaseModelAlias
from souvenir._utils import logger

from ._base import TOKEN_PATTERN, BaseEmbeddingService, BaseLLMService, NoopAsyncContextManager, T_model

TIMEOUT_SECONDS = 180.0
TRANSIENT_ERRORS = (RateLimitError, APIConnectionError, TimeoutError)

TClientKind = Literal["openai", "azure"]
TLimiter = Union[asyncio.Semaphore, AsyncLimiter, NoopAsyncContextManager]


def make_openai_client(
  client: str,
  base_url: Optional[str],
  api_key: Optional[str],
  api_version: Optional[str],
  timeout: Optional[float] = None,
) -> Union[AsyncOpenAI, AsyncAzureOpenAI]:
  """Create the raw async client for ``client`` ("openai" or "azure").

  Raises:
      ValueError: If the client kind is unknown.
      ValidationError: If an Azure client lacks its endpoint or API version.
  """
  extra = {} if timeout is None else {"timeout": timeout}
  if client == "openai":
    return AsyncOpenAI(base_url=base_url, api_key=api_key, **extra)
  if client == "azure":
    if base_url is None or api_version is None:
      raise ValidationError("Azure OpenAI requires a base url and an api version.")
    return AsyncAzureOpenAI(azure_endpoint=base_url, api_key=api_key, api_version=api_version, **extra)
  raise ValueError(f"Invalid client type '{client}'. Must be 'openai' or 'azure'.")


def make_limiters(service: Union[BaseLLMService, BaseEmbeddingService]) -> List[TLimiter]:
  """Concurrency and rate limiters of a service, in the order they are entered."""
  return [
    asyncio.Semaphore(service.max_requests_concurrent) if service.rate_limit_concurrency else NoopAsyncContextManager(),
    AsyncLimiter(service.max_requests_per_minute, 60) if service.rate_limit_per_minute else NoopAsyncContextManager(),
    AsyncLimiter(service.max_requests_per_second, 1) if service.rate_limit_per_second else NoopAsyncContextManager(),
  ]


@asynccontextmanager
async def limited(limiters: List[TLimiter]) -> AsyncIterator[None]:
  async with AsyncExitStack() as stack:
    for limiter in limiters:
      await stack.enter_async_context(limiter)  # type: ignore[arg-type]
    yield


@dataclass
class OpenAILLMService(BaseLLMService):
  """Chat model behind the OpenAI or Azure OpenAI API, with structured outputs.

  Responses are parsed by instructor. BaseModelAlias response models are requested as
  their pydantic ``Model`` and handed back as dataclasses.

  Attributes:
      model (str): Chat model (default: "gpt-4o-mini").
      mode (instructor.Mode): Instructor parsing mode (default: JSON).
      client (Literal["openai", "azure"]): API provider (default: "openai").
      api_version (Optional[str]): Azure API version, required when client="azure".
      temperature (float): Sampling temperature unless a call overrides it.
      max_attempts (int): Attempts instructor makes when the response does not validate.
  """

  model: str = field(default="gpt-4o-mini")
  mode: instructor.Mode = field(default=instructor.Mode.JSON)
  client: TClientKind = field(default="openai")
  api_version: Optional[str] = field(default=None)
  temperature: float = field(default=0.3)
  max_attempts: int = field(default=3)

  def __post_init__(self):
    try:
      self.encoding: Optional[tiktoken.Encoding] = tiktoken.encoding_for_model(self.model)
    except Exception as e:
      logger.info(f"No tiktoken encoding for model '{self.model}' ({e}), counting tokens by words.")
      self.encoding = None

    self._limiters = make_limiters(self)
    raw_client = make_openai_client(self.client, self.base_url, self.api_key, self.api_version, TIMEOUT_SECONDS)
    self.llm_async_client = instructor.from_openai(raw_client, mode=self.mode)
    logger.debug(f"Initialized {self.client} LLM service for model '{self.model}'.")

  def count_tokens(self, text: str) -> int:
    if self.encoding is None:
      return len(TOKEN_PATTERN.findall(text))
    return len(self.encoding.encode(text))

  async def send_message(
    self,
    prompt: str,
    system_prompt: str | None = None,
    history_messages: list[dict[str, str]] | None = None,
    response_model: Type[T_model] | None = None,
    **kwargs: Any,
  ) -> Tuple[T_model, list[dict[str, str]]]:
    """Send a prompt to the chat model and parse the response.

    Returns:
        Tuple[T_model, list[dict[str, str]]]: The parsed response and the message history,
        ending with the assistant reply.

    Raises:
        ProviderError: If the request fails or the model returns nothing.
    """
    messages = [
      *([{"role": "system", "content": system_prompt}] if system_prompt else []),
      *(history_messages or []),
      {"role": "user", "content": prompt},
    ]
    aliased = response_model is not None and issubclass(response_model, BaseModelAlias)
    kwargs.setdefault("temperature", self.temperature)

    logger.debug(f"Sending prompt to '{self.model}': {prompt}")
    async with limited(self._limiters):
      try:
        response = await self.llm_async_client.chat.completions.create(
          model=self.model,
          messages=messages,  # type: ignore
          response_model=cast(Type[BaseModelAlias], response_model).Model if aliased else response_model,
          max_retries=AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts), wait=wait_exponential(multiplier=1, min=4, max=10)
          ),
          **kwargs,
        )
      except Exception as e:
        logger.exception(f"LLM request to '{self.model}' failed.")
        raise ProviderError(f"LLM request failed: {e}") from e

    if not response:
      logger.error(f"No response received from '{self.model}'.")
      raise ProviderError("No response received from the language model.")

    content = response.model_dump_json() if isinstance(response, BaseModel) else str(response)
    messages.append({"role": "assistant", "content": content})
    logger.debug(f"Received response: {content}")

    if aliased:
      response = cast(BaseModelAlias.Model, response).to_dataclass(response)
    return cast(T_model, response), messages


@dataclass
class OpenAIEmbeddingService(BaseEmbeddingService):
  """Embedding model behind the OpenAI or Azure OpenAI API.

  Texts are split into requests of ``max_elements_per_request`` which are sent
  concurrently. Rate limit, connection and timeout errors are retried
  ``max_attempts`` times with exponential backoff between ``backoff_min`` and
  ``backoff_max`` seconds; other errors fail at once.

  Attributes:
      embedding_dim (int): Requested vector size (default: 1536).
      max_elements_per_request (int): Texts per API request (default: 32).
      model (Optional[str]): Embedding model (default: "text-embedding-3-small").
      client (Literal["openai", "azure"]): API provider (default: "openai").
      api_version (Optional[str]): Azure API version, required when client="azure".
  """

  embedding_dim: int = field(default=1536)
  max_elements_per_request: int = field(default=32)
  model: Optional[str] = field(default="text-embedding-3-small")
  client: TClientKind = field(default="openai")
  api_version: Optional[str] = field(default=None)
  max_attempts: int = field(default=3)
  backoff_min: float = field(default=4.0)
  backoff_max: float = field(default=10.0)

  def __post_init__(self):
    self._limiters = make_limiters(self)
    self.embedding_async_client = make_openai_client(self.client, self.base_url, self.api_key, self.api_version)
    logger.debug(f"Initialized {self.client} embedding service for model '{self.model}'.")

  async def encode(self, texts: list[str], model: Optional[str] = None) -> np.ndarray[Any, np.dtype[np.float32]]:
    """Embed the texts, in order.

    Returns:
        np.ndarray: Float32 array of shape (len(texts), embedding_dim).

    Raises:
        ProviderError: If a request still fails after its retries.
    """
    model = model or self.model
    size = self.max_elements_per_request
    logger.debug(f"Embedding {len(texts)} texts with '{model}'.")
    try:
      if model is None:
        raise ValueError("Model name must be provided.")
      responses = await asyncio.gather(
        *(self._embedding_request(texts[start : start + size], model) for start in range(0, len(texts), size))
      )
    except Exception as e:
      logger.exception(f"Embedding request to '{model}' failed.")
      raise ProviderError(f"Embedding request failed: {e}") from e

    return np.array([item.embedding for item in chain.from_iterable(r.data for r in responses)], dtype=np.float32)

  async def _embedding_request(self, batch: List[str], model: str) -> Any:
    async for attempt in AsyncRetrying(
      stop=stop_after_attempt(self.max_attempts),
      wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
      retry=retry_if_exception_type(TRANSIENT_ERRORS),
      reraise=True,
    ):
      with attempt:
        async with limited(self._limiters):
          return await self.embedding_async_client.embeddings.create(
            model=model, input=batch, dimensions=self.embedding_dim, encoding_format="float"
          )
