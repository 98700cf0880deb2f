"""
Abstract base class for upstream data providers in Token Aggregator.
Owns the HTTP client, the per-provider quota and the retry policy.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..api.schemas import DataSource, RateLimitStatus
from ..core.logging_config import create_logger
from .rate_limiter import RateLimiter

logger = create_logger(__name__)


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, message: str, provider: str, address: Optional[str] = None):
        self.message = message
        self.provider = provider
        self.address = address
        super().__init__(self.message)


class ClientError(ProviderError):
    """Non-retryable 4xx response."""

    def __init__(self, message: str, provider: str, status_code: int, address: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message, provider, address)


class RateLimitedError(ProviderError):
    """Exception raised when the provider answers 429."""

    def __init__(self, message: str, provider: str, retry_after: Optional[float] = None,
                 address: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, provider, address)


class TransientError(ProviderError):
    """Network failure or 5xx response."""

    def __init__(self, message: str, provider: str, status_code: Optional[int] = None,
                 address: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message, provider, address)


class InvalidPayloadError(ProviderError):
    """Exception raised when a response body cannot be understood."""
    pass


class RetriesExhaustedError(ProviderError):
    """Every attempt failed with a retryable error."""

    def __init__(self, message: str, provider: str, attempts: int, last_error: ProviderError,
                 address: Optional[str] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message, provider, address)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter."""

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    jitter: float = 1.0

    def backoff_delay(self, attempt: int, rng: random.Random) -> float:
        """Delay after the zero-based ``attempt`` failed."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter > 0:
            delay += rng.uniform(0, self.jitter)
        return delay


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class BaseDataProvider(ABC):
    """Abstract base class for market data providers."""

    source: DataSource

    def __init__(
        self,
        base_url: str,
        rate_limiter: RateLimiter,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None
    ):
        self.name = self.source.value
        self.base_url = base_url.rstrip('/')
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize HTTP client connection."""
        if self.client is None:
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)

            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                limits=limits,
                headers=self._get_default_headers(),
                follow_redirects=True,
                transport=self._transport
            )

            logger.debug("Connected to provider", extra={"provider": self.name})

    async def disconnect(self) -> None:
        """Close HTTP client connection."""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.debug("Disconnected from provider", extra={"provider": self.name})

    def _get_default_headers(self) -> Dict[str, str]:
        """Get default HTTP headers for requests."""
        return {
            'User-Agent': 'Token-Aggregator/1.0.0',
            'Accept': 'application/json'
        }

    def rate_limit_status(self) -> RateLimitStatus:
        return self.rate_limiter.status()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None,
                        address: Optional[str] = None) -> Any:
        """GET ``path`` with quota enforcement and retries, returning decoded JSON.

        Every attempt takes a quota slot first. 4xx responses other than 429
        fail at once; 429, 5xx and network errors are retried until the
        policy's attempts run out.
        """
        if not self.client:
            await self.connect()

        policy = self.retry_policy
        last_error: Optional[ProviderError] = None

        for attempt in range(policy.max_attempts):
            await self.rate_limiter.acquire()

            try:
                logger.debug("Making request to provider", extra={
                    "provider": self.name,
                    "path": path,
                    "attempt": attempt + 1
                })
                response = await self.client.get(path, params=params)

            except httpx.RequestError as e:
                last_error = TransientError(
                    f"Request to {self.name} failed: {e.__class__.__name__}: {e}",
                    self.name,
                    address=address
                )
                delay = policy.backoff_delay(attempt, self._rng)

            else:
                status_code = response.status_code

                if status_code == 429:
                    retry_after = parse_retry_after(response.headers.get('Retry-After'))
                    last_error = RateLimitedError(
                        f"Rate limited by {self.name}",
                        self.name,
                        retry_after=retry_after,
                        address=address
                    )
                    delay = retry_after if retry_after is not None else policy.max_delay

                elif status_code >= 500:
                    last_error = TransientError(
                        f"HTTP {status_code} from {self.name}",
                        self.name,
                        status_code=status_code,
                        address=address
                    )
                    delay = policy.backoff_delay(attempt, self._rng)

                elif status_code >= 400 or not response.is_success:
                    logger.error("Non-retryable response from provider", extra={
                        "provider": self.name,
                        "path": path,
                        "status_code": status_code
                    })
                    raise ClientError(
                        f"HTTP {status_code} from {self.name}: {response.text[:200]}",
                        self.name,
                        status_code=status_code,
                        address=address
                    )

                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise InvalidPayloadError(
                            f"Invalid JSON response from {self.name}: {str(e)}",
                            self.name,
                            address=address
                        ) from e

            if attempt < policy.max_attempts - 1:
                logger.warning("Provider request failed, retrying", extra={
                    "provider": self.name,
                    "path": path,
                    "attempt": attempt + 1,
                    "max_attempts": policy.max_attempts,
                    "delay": round(delay, 3),
                    "error": str(last_error)
                })
                await self._sleep(delay)

        logger.error("Provider retries exhausted", extra={
            "provider": self.name,
            "path": path,
            "attempts": policy.max_attempts,
            "error": str(last_error)
        })
        raise RetriesExhaustedError(
            f"All {policy.max_attempts} attempts to {self.name} failed: {last_error}",
            self.name,
            attempts=policy.max_attempts,
            last_error=last_error,
            address=address
        ) from last_error

    @abstractmethod
    async def fetch(self, address: str) -> Any:
        """
        Fetch the raw provider payload for a token address.

        Args:
            address: Token mint address

        Returns:
            Provider-specific payload

        Raises:
            ProviderError: If the payload cannot be fetched
        """
        pass
