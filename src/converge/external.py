"""External data lookups resolved before the graph is evaluated.

An external source is a read-only HTTP endpoint returning a single textual
value, for example the caller's current public address used to restrict
administrative access to the cluster control plane. Values are fetched once
per apply cycle and treated as literals for the rest of that cycle.

Failure handling:
- Network errors, timeouts, HTTP 429 and 5xx are retryable and retried with
  exponential backoff up to FETCH_MAX_ATTEMPTS
- Other HTTP errors and malformed bodies fail immediately
- Exhausted retries are fatal: the cycle aborts before any provider call
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .config import MAX_EXTERNAL_RESPONSE_BYTES, RetryConfig
from .models import ExternalSourceDeclaration

logger = logging.getLogger(__name__)

USER_AGENT = "converge-external-fetcher"


class FetchError(Exception):
    """Raised when an external lookup fails.

    Attributes:
        source: Name of the external source.
        retryable: Whether another attempt could succeed.
        attempts: Number of attempts made before giving up.
    """

    def __init__(self, message: str, source: str, retryable: bool, attempts: int = 1) -> None:
        super().__init__(message)
        self.source = source
        self.retryable = retryable
        self.attempts = attempts


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, FetchError) and error.retryable


class ExternalDataFetcher:
    """Fetches external values with bounded, backed-off retries."""

    def __init__(
        self,
        retry: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            retry: Attempt and backoff limits.
            client: HTTP client to use; one is created per fetch_all call otherwise.
        """
        self._retry = retry or RetryConfig()
        self._client = client

    async def fetch(
        self,
        name: str,
        source: ExternalSourceDeclaration,
        client: httpx.AsyncClient | None = None,
    ) -> str:
        """Fetch one external value.

        Args:
            name: Source name, used in errors and logs.
            source: Source declaration.
            client: HTTP client; falls back to the one given at construction.

        Returns:
            The stripped textual value.

        Raises:
            FetchError: If the lookup fails permanently or retries are exhausted.
        """
        http = client or self._client
        if http is None:
            async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as owned:
                return await self.fetch(name, source, owned)

        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "External lookup failed, retrying",
                extra={
                    "source": name,
                    "attempt": state.attempt_number,
                    "max_attempts": self._retry.fetch_max_attempts,
                    "wait_seconds": state.next_action.sleep if state.next_action else 0,
                    "error": str(error),
                },
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._retry.fetch_max_attempts),
            wait=wait_exponential_jitter(
                initial=self._retry.fetch_backoff_initial_seconds,
                max=self._retry.fetch_backoff_max_seconds,
                jitter=self._retry.fetch_backoff_initial_seconds,
            ),
            before_sleep=log_retry,
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    value = await self._fetch_once(name, source, http)
        except FetchError as e:
            if not e.retryable:
                raise
            raise FetchError(
                f"External source '{name}' failed after {attempts} attempts: {e}",
                source=name,
                retryable=False,
                attempts=attempts,
            ) from e

        logger.info("Fetched external value", extra={"source": name, "attempts": attempts})
        return value

    async def _fetch_once(
        self,
        name: str,
        source: ExternalSourceDeclaration,
        client: httpx.AsyncClient,
    ) -> str:
        timeout = source.timeout or self._retry.fetch_timeout_seconds
        try:
            response = await client.get(source.url, headers=source.headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise FetchError(
                f"External source '{name}' timed out after {timeout}s", name, retryable=True
            ) from e
        except httpx.TransportError as e:
            raise FetchError(
                f"External source '{name}' unreachable: {e}", name, retryable=True
            ) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise FetchError(
                f"External source '{name}' returned HTTP {status}", name, retryable=True
            )
        if status >= 400:
            raise FetchError(
                f"External source '{name}' returned HTTP {status}", name, retryable=False
            )

        if len(response.content) > MAX_EXTERNAL_RESPONSE_BYTES:
            raise FetchError(
                f"External source '{name}' response exceeds {MAX_EXTERNAL_RESPONSE_BYTES} bytes",
                name,
                retryable=False,
            )

        value = response.text.strip()
        if not value or "\n" in value:
            raise FetchError(
                f"External source '{name}' did not return a single value", name, retryable=False
            )

        if source.format == "ip":
            try:
                value = str(ipaddress.ip_address(value))
            except ValueError as e:
                raise FetchError(
                    f"External source '{name}' returned an invalid IP address: {value!r}",
                    name,
                    retryable=False,
                ) from e

        return value

    async def fetch_all(
        self,
        sources: dict[str, ExternalSourceDeclaration],
        names: Iterable[str] | None = None,
    ) -> dict[str, str]:
        """Fetch every requested source once.

        Args:
            sources: Declared sources by name.
            names: Sources to fetch; all declared sources when omitted.

        Returns:
            Mapping of source name to value.

        Raises:
            FetchError: On the first source that cannot be resolved.
            KeyError: If a requested name is not declared.
        """
        wanted = sorted(names if names is not None else sources)
        if not wanted:
            return {}

        values: dict[str, str] = {}
        if self._client is not None:
            for name in wanted:
                values[name] = await self.fetch(name, sources[name], self._client)
            return values

        async with httpx.AsyncClient(headers={"User-Agent": USER_AGENT}) as client:
            for name in wanted:
                values[name] = await self.fetch(name, sources[name], client)
        return values
