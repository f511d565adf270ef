"""Custom exception classes for the souvenir library.

The taxonomy mirrors how failures are handled by the pipeline:
- ValidationError: bad configuration or a vector with the wrong dimension; fatal, never retried
- ProviderError: an embedding or LLM call failed; the affected chunk is marked failed
- MergeConflictError: a store transaction conflicted; retried internally with backoff
- NotFoundError: an unknown session or entity was referenced by an explicit lookup
"""


class SouvenirError(Exception):
    """Base class for every error raised by souvenir.

    Attributes:
        message (str): Human-readable description of the error
    """

    def __init__(self, message: str = "Souvenir error"):
        self.message = message
        super().__init__(self.message)


class ValidationError(SouvenirError):
    """Exception raised for invalid configuration or malformed data.

    This exception is raised when:
    - A configuration value is out of range (e.g. chunk overlap >= chunk size)
    - An embedding does not have the configured number of dimensions
    - A relationship would connect an entity to itself or carry a negative weight

    Validation errors are surfaced immediately and are never retried.
    """

    def __init__(self, message: str = "Invalid value"):
        """Initialize the ValidationError with a custom message.

        Args:
            message (str): Description of the invalid value. Defaults to "Invalid value".
        """
        super().__init__(message)


class ProviderError(SouvenirError):
    """Exception raised when an embedding or LLM provider call fails.

    Provider errors are retryable at chunk granularity: the chunk being processed is
    marked as failed and the rest of its batch continues.
    """

    def __init__(self, message: str = "Provider call failed"):
        super().__init__(message)


class MergeConflictError(SouvenirError):
    """Exception raised when a store transaction conflicts with a concurrent writer.

    The graph merger retries the transaction with exponential backoff and converts the
    error into a ProviderError once the attempts are exhausted.
    """

    def __init__(self, message: str = "Conflicting write on the memory store"):
        super().__init__(message)


class NotFoundError(SouvenirError):
    """Exception raised when an explicit lookup references an unknown session or entity.

    Searches never raise this error; they return an empty result instead.
    """

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)
