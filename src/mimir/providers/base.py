"""
Abstract base provider interface for language-model backends.

This module defines the uniform contract every backend implements:
connecting, health checks, non-streaming and streaming completion, and
token/cost usage accounting. Hosted backends subclass ``BaseProvider``;
local inference servers subclass ``LocalProvider``.
"""

import asyncio
import inspect
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import aclosing, asynccontextmanager
from decimal import Decimal
from typing import Any, NamedTuple

import httpx

from ..core.exceptions import (
    AuthenticationError,
    MissingCredentialError,
    ProviderError,
    RateLimitError,
    RetryableError,
    StreamError,
)
from ..core.models import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    ConnectionState,
    ModelCost,
    StreamChunk,
    TokenUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1024
HEALTH_CHECK_PROMPT = "Hello, are you working?"

RETRYABLE_TERMS = (
    "rate limit",
    "timeout",
    "connection",
    "socket",
    "econnreset",
    "429",
    "500",
    "502",
    "503",
    "504",
)

# Error types sent inside a stream that are worth another attempt
TRANSIENT_STREAM_ERRORS = (
    "overloaded_error",
    "rate_limit_error",
    "rate_limit_exceeded",
    "api_error",
    "server_error",
)

Prompt = str | Sequence[ChatMessage | dict[str, Any]]
ChunkCallback = Callable[[StreamChunk], Awaitable[None] | None]


class ProviderReply(NamedTuple):
    """Raw completion text plus any token counts the backend reported."""

    text: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class StreamTally:
    """Token counts reported by a backend while a stream is running."""

    def __init__(self) -> None:
        self.prompt_tokens: int | None = None
        self.completion_tokens: int | None = None


def is_retryable_message(message: str) -> bool:
    """Classify an error message as transient by well-known terms."""
    lowered = message.lower()
    return any(term in lowered for term in RETRYABLE_TERMS)


async def emit_chunk(callback: ChunkCallback | None, chunk: StreamChunk) -> None:
    """Deliver a chunk to a sync or async callback."""
    if callback is None:
        return
    result = callback(chunk)
    if inspect.isawaitable(result):
        await result


class BaseProvider(ABC):
    """
    Abstract base provider for all model backends.

    Subclasses declare their identity and cost table as class attributes and
    implement ``_complete_request`` and ``_stream_request`` against the
    backend's wire protocol. Everything else (option defaults, retries,
    usage accounting, structured failures) lives here.
    """

    provider_type: str = "base"
    display_name: str = "Provider"
    default_base_url: str = ""
    default_model_name: str = ""
    requires_api_key: bool = True
    model_costs: dict[str, ModelCost] = {}
    fallback_cost: ModelCost = ModelCost(input=Decimal("0"), output=Decimal("0"))

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.default_model = default_model or self.default_model_name
        self.supported_models: list[str] = list(self.model_costs)
        self.state = ConnectionState.DISCONNECTED
        self.usage_stats = TokenUsage()

        # Configuration from kwargs
        self.timeout = kwargs.get("timeout", 60)
        self.max_retries = kwargs.get("max_retries", 3)
        self.base_delay = kwargs.get("base_delay", 1.0)
        self.max_delay = kwargs.get("max_delay", 60.0)
        self.temperature = kwargs.get("temperature", DEFAULT_TEMPERATURE)
        self.max_tokens = kwargs.get("max_tokens", DEFAULT_MAX_TOKENS)

        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        logger.info(f"Initialized {self.provider_type} provider")

    @property
    def name(self) -> str:
        return self.provider_type

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    # Connection lifecycle

    async def connect(self) -> bool:
        """
        Establish readiness, rebuilding the HTTP client from current settings.

        Safe to call repeatedly, e.g. after the API key changes.

        Returns:
            True once connected

        Raises:
            MissingCredentialError: Hosted backend without an API key
            ProviderConnectionError: Backend unreachable or rejected us
        """
        if self.requires_api_key and not self.api_key:
            self.state = ConnectionState.DISCONNECTED
            raise MissingCredentialError(self.display_name)

        await self._close_client()
        self._client = self._build_client()

        try:
            await self._verify_connection()
        except Exception as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(f"Failed to connect to {self.display_name}: {e}")
            raise

        self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to {self.display_name} successfully")
        return True

    async def check_health(self) -> bool:
        """
        Probe the backend with a minimal completion. Never raises.

        Returns:
            True if the backend answered
        """
        try:
            result = await self.generate_completion(
                HEALTH_CHECK_PROMPT, CompletionOptions(max_tokens=5)
            )
            return result.success
        except Exception as e:
            logger.error(f"{self.display_name} health check failed: {e}")
            return False

    async def close(self) -> None:
        """Release the HTTP client and mark the provider disconnected."""
        await self._close_client()
        self.state = ConnectionState.DISCONNECTED

    async def _verify_connection(self) -> None:
        """Hook for subclasses that must talk to the backend while connecting."""
        return None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._default_headers(),
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    def _default_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "User-Agent": "Mimir"}

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # Completions

    async def generate_completion(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
    ) -> CompletionResult:
        """
        Generate a full completion without streaming.

        Args:
            prompt: Plain text or an ordered list of role/content messages
            options: Model, temperature and max_tokens overrides

        Returns:
            A successful result with usage, or a failed result with the error
        """
        opts = self.resolve_options(options)
        messages = self._to_messages(prompt)

        try:
            if not self.is_connected:
                await self.connect()
            reply = await self.retry_with_backoff(
                self._complete_request, messages, opts
            )
        except Exception as e:
            logger.error(f"{self.display_name} completion failed: {e}")
            return CompletionResult(success=False, model=opts.model, error=str(e))

        usage = self._build_usage(
            messages, reply.text, opts.model, reply.prompt_tokens, reply.completion_tokens
        )
        self.update_usage_stats(usage)

        return CompletionResult(
            success=True, completion=reply.text, model=opts.model, usage=usage
        )

    async def stream_completion(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion as an async sequence of chunks.

        Text chunks arrive in generation order; the last chunk always has
        ``done=True`` and carries either ``usage`` or ``error``. Transient
        failures are retried only until the first text chunk is delivered;
        after that the stream ends with a ``StreamError`` terminal chunk and
        the delivered text stands.
        """
        opts = self.resolve_options(options)
        messages = self._to_messages(prompt)
        parts: list[str] = []
        tally = StreamTally()
        attempt = 0

        while True:
            try:
                if not self.is_connected:
                    await self.connect()
                async with aclosing(self._stream_request(messages, opts, tally)) as deltas:
                    async for text in deltas:
                        if not text:
                            continue
                        parts.append(text)
                        yield StreamChunk(text=text)
                break
            except Exception as e:
                retryable = self._as_retryable(e)
                if retryable is None or parts or attempt >= self.max_retries:
                    yield self._stream_failure(e, parts, opts)
                    return
                delay = self._backoff_delay(attempt)
                logger.warning(
                    f"Stream attempt {attempt + 1} failed for {self.provider_type}: "
                    f"{retryable}. Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1

        usage = self._build_usage(
            messages,
            "".join(parts),
            opts.model,
            tally.prompt_tokens,
            tally.completion_tokens,
        )
        self.update_usage_stats(usage)
        yield StreamChunk(done=True, usage=usage)

    async def generate_completion_stream(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None,
        on_chunk: ChunkCallback | None,
    ) -> CompletionResult:
        """
        Stream a completion through ``on_chunk`` and return the aggregate.

        Args:
            prompt: Plain text or an ordered list of role/content messages
            options: Model, temperature and max_tokens overrides
            on_chunk: Sync or async callable receiving every chunk in order

        Returns:
            Same shape as ``generate_completion``
        """
        opts = self.resolve_options(options)
        parts: list[str] = []
        final: StreamChunk | None = None

        async for chunk in self.stream_completion(prompt, opts):
            if chunk.done:
                final = chunk
            else:
                parts.append(chunk.text)
            await emit_chunk(on_chunk, chunk)

        if final is None or final.error:
            error = final.error if final else "Stream ended without a terminal chunk"
            return CompletionResult(success=False, model=opts.model, error=error)

        return CompletionResult(
            success=True,
            completion="".join(parts),
            model=opts.model,
            usage=final.usage,
        )

    def _stream_failure(
        self, error: Exception, parts: list[str], opts: CompletionOptions
    ) -> StreamChunk:
        if parts:
            error = StreamError(
                f"Stream interrupted after {len(parts)} chunks: {error}",
                provider=self.provider_type,
                model=opts.model,
            )
        logger.error(f"{self.display_name} streaming failed: {error}")
        return StreamChunk(done=True, error=str(error))

    @abstractmethod
    async def _complete_request(
        self, messages: list[dict[str, str]], options: CompletionOptions
    ) -> ProviderReply:
        """
        Execute one non-streaming request against the backend.

        Raises:
            RetryableError: For transient errors
            ProviderError: For permanent errors
        """
        pass

    @abstractmethod
    def _stream_request(
        self,
        messages: list[dict[str, str]],
        options: CompletionOptions,
        tally: StreamTally,
    ) -> AsyncIterator[str]:
        """
        Execute one streaming request, yielding text deltas.

        Implementations record backend-reported token counts on ``tally``.
        """
        pass

    # Retry policy

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)

    def _as_retryable(self, error: Exception) -> RetryableError | None:
        """Return the error as a RetryableError if it is transient, else None."""
        if isinstance(error, RetryableError):
            return error
        if isinstance(error, ProviderError):
            return None
        if is_retryable_message(str(error)):
            return RetryableError(str(error), provider=self.provider_type)
        return None

    async def retry_with_backoff(
        self, operation: Any, *args: Any, **kwargs: Any
    ) -> Any:
        """
        Execute operation with exponential backoff retry logic.

        Args:
            operation: Async function to execute
            *args, **kwargs: Arguments to pass to operation

        Returns:
            Result of successful operation

        Raises:
            ProviderError: If all retries are exhausted
        """
        last_exception: RetryableError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                return await operation(*args, **kwargs)
            except Exception as e:
                retryable = self._as_retryable(e)
                if retryable is None:
                    # Non-retryable errors
                    raise
                last_exception = retryable
                if attempt == self.max_retries:
                    break

                delay = self._backoff_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1} failed for {self.provider_type}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        if last_exception is not None:
            raise last_exception
        raise ProviderError(
            "Operation failed without retryable errors", self.provider_type
        )

    # HTTP helpers

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request, translating transport and status failures."""
        client = self._ensure_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RetryableError(
                f"Request timed out after {self.timeout}s", provider=self.provider_type
            ) from e
        except httpx.TransportError as e:
            raise RetryableError(
                f"Connection to {self.base_url} failed: {e}",
                provider=self.provider_type,
            ) from e
        await self._handle_http_error(response)
        return response

    @asynccontextmanager
    async def _stream(self, method: str, url: str, **kwargs: Any):
        """Open a streaming response, translating transport and status failures."""
        client = self._ensure_client()
        try:
            async with client.stream(method, url, **kwargs) as response:
                if not response.is_success:
                    await response.aread()
                    await self._handle_http_error(response)
                yield response
        except httpx.TimeoutException as e:
            raise RetryableError(
                f"Stream timed out after {self.timeout}s", provider=self.provider_type
            ) from e
        except httpx.TransportError as e:
            raise RetryableError(
                f"Connection to {self.base_url} failed: {e}",
                provider=self.provider_type,
            ) from e

    async def _iter_sse_data(self, response: httpx.Response) -> AsyncIterator[str]:
        """Yield the payload of each ``data:`` line of a server-sent event stream."""
        async for line in response.aiter_lines():
            line = line.strip()
            if not line.startswith("data:"):
                continue
            yield line[len("data:"):].strip()

    async def _handle_http_error(self, response: httpx.Response) -> None:
        """
        Handle HTTP errors from the backend API.

        Args:
            response: HTTP response to check

        Raises:
            Appropriate ProviderError subclass based on status code
        """
        if response.is_success:
            return

        error_message = self._extract_error_message(response)
        status = response.status_code

        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed: {error_message}", provider=self.provider_type
            )
        elif status == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitError(
                f"Rate limit exceeded: {error_message}",
                provider=self.provider_type,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        elif status == 408 or status >= 500:
            raise RetryableError(
                f"{self.display_name} server error ({status}): {error_message}",
                provider=self.provider_type,
            )
        elif status == 404:
            raise ProviderError(
                f"Model or endpoint not found: {error_message}",
                provider=self.provider_type,
            )
        else:
            raise ProviderError(
                f"{self.display_name} API error ({status}): {error_message}",
                provider=self.provider_type,
            )

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            error = response.json().get("error")
        except Exception:
            error = None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        return f"HTTP {response.status_code}: {response.reason_phrase}"

    def _stream_event_error(self, error: Any, model: str | None = None) -> ProviderError:
        """
        Build the exception for an error event received inside a stream.

        Args:
            error: The event's ``error`` payload, a dict or a plain message
            model: Model the stream was generated with

        Returns:
            RateLimitError or RetryableError for transient error types,
            otherwise ProviderError
        """
        if isinstance(error, dict):
            error_type = str(error.get("type") or error.get("code") or "")
            message = str(error.get("message") or error_type or "unknown error")
        else:
            error_type = ""
            message = str(error)

        text = f"{self.display_name} stream error: {message}"
        if "rate_limit" in error_type:
            return RateLimitError(text, provider=self.provider_type, model=model)
        if error_type in TRANSIENT_STREAM_ERRORS:
            return RetryableError(text, provider=self.provider_type, model=model)
        return ProviderError(text, provider=self.provider_type, model=model)

    # Usage accounting

    def resolve_options(
        self, options: CompletionOptions | dict[str, Any] | None
    ) -> CompletionOptions:
        """Fill unset options from the provider's configured defaults."""
        if options is None:
            opts = CompletionOptions()
        elif isinstance(options, CompletionOptions):
            opts = options
        else:
            opts = CompletionOptions(**options)

        return CompletionOptions(
            model=opts.model or self.default_model,
            temperature=self.temperature if opts.temperature is None else opts.temperature,
            max_tokens=opts.max_tokens or self.max_tokens,
        )

    @staticmethod
    def estimate_token_count(text: str) -> int:
        """Estimate tokens at roughly one per four characters."""
        if not text:
            return 0
        return math.ceil(len(text) / 4)

    def get_model_cost(self, model: str | None) -> ModelCost:
        return self.model_costs.get(model or self.default_model, self.fallback_cost)

    def calculate_cost(
        self, prompt_tokens: int, completion_tokens: int, model: str | None = None
    ) -> Decimal:
        """
        Calculate cost for given token usage.

        Args:
            prompt_tokens: Number of prompt tokens
            completion_tokens: Number of completion tokens
            model: Model whose rate applies; unlisted models use the fallback

        Returns:
            Total cost in USD
        """
        rate = self.get_model_cost(model)
        input_cost = Decimal(prompt_tokens) / 1000 * rate.input
        output_cost = Decimal(completion_tokens) / 1000 * rate.output
        return input_cost + output_cost

    def _build_usage(
        self,
        messages: list[dict[str, str]],
        completion: str,
        model: str | None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
    ) -> TokenUsage:
        if prompt_tokens is None:
            prompt_tokens = self.estimate_token_count(
                "\n".join(m["content"] for m in messages)
            )
        if completion_tokens is None:
            completion_tokens = self.estimate_token_count(completion)
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            cost=self.calculate_cost(prompt_tokens, completion_tokens, model),
        )

    def update_usage_stats(self, usage: TokenUsage) -> None:
        self.usage_stats = self.usage_stats.add(usage)

    def get_usage_stats(self) -> TokenUsage:
        return self.usage_stats.model_copy()

    def reset_usage_stats(self) -> None:
        self.usage_stats = TokenUsage()

    # Introspection

    def get_info(self) -> dict[str, Any]:
        return {
            "name": self.provider_type,
            "is_connected": self.is_connected,
            "supported_models": list(self.supported_models),
            "default_model": self.default_model,
        }

    @staticmethod
    def _to_messages(prompt: Prompt) -> list[dict[str, str]]:
        if isinstance(prompt, str):
            return [{"role": "user", "content": prompt}]
        messages = []
        for message in prompt:
            if isinstance(message, ChatMessage):
                messages.append({"role": message.role, "content": message.content})
            else:
                messages.append(
                    {"role": message["role"], "content": message["content"]}
                )
        return messages

    async def __aenter__(self) -> "BaseProvider":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(base_url='{self.base_url}')"


class LocalProvider(BaseProvider):
    """
    Base for local inference servers.

    Local servers need no credentials, cost nothing, and publish the models
    they have loaded; connecting lists those models and refreshes
    ``supported_models``.
    """

    requires_api_key = False
    models_path: str = "/models"

    async def _verify_connection(self) -> None:
        response = await self._request("GET", self.models_path)
        models = self._parse_model_list(response.json())
        if models:
            self.supported_models = models
        logger.info(f"Available {self.display_name} models: {self.supported_models}")

    @abstractmethod
    def _parse_model_list(self, data: dict[str, Any]) -> list[str]:
        pass

    async def check_health(self) -> bool:
        """Ping the model-list endpoint. Never raises."""
        try:
            response = await self._ensure_client().get(self.models_path)
            return response.is_success
        except Exception as e:
            logger.error(f"{self.display_name} health check failed: {e}")
            return False
