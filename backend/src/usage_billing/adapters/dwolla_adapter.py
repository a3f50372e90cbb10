"""Dwolla payment processor adapter."""
import asyncio
import time
from typing import Any, Awaitable, Callable

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_before_delay,
    wait_exponential,
)

from usage_billing.config import settings
from usage_billing.exceptions import TerminalProcessorError, TransientProcessorError
from usage_billing.utils.currency import CURRENCY, format_dollars

logger = structlog.get_logger(__name__)

HAL_JSON = "application/vnd.dwolla.v1.hal+json"

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class TokenCache:
    """
    Bearer token cache for the Dwolla client-credentials grant.

    Owned by a single adapter. There is no lock around refresh: two calls that
    miss the cache at the same time will both request a token and the last one
    stored wins. Token issuance has no side effects on Dwolla's end, so the
    only cost of the race is one extra token request.
    """

    def __init__(
        self,
        expiry_buffer_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if expiry_buffer_seconds is None:
            expiry_buffer_seconds = settings.dwolla_token_expiry_buffer_seconds
        self.expiry_buffer_seconds = expiry_buffer_seconds
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float | None = None

    def get(self) -> str | None:
        """Return the cached token, or None if missing or about to expire."""
        if self._token and self._expires_at is not None and self._clock() < self._expires_at:
            return self._token
        return None

    def store(self, token: str, expires_in: int) -> None:
        """Cache a token that the issuer says is valid for ``expires_in`` seconds."""
        self._token = token
        self._expires_at = self._clock() + max(expires_in - self.expiry_buffer_seconds, 0)

    def invalidate(self) -> None:
        """Forget the cached token so the next request fetches a new one."""
        self._token = None
        self._expires_at = None


class DwollaAdapter:
    """
    Adapter for the Dwolla API.

    Handles token acquisition, HAL+JSON headers and the retry policy:

    - 401: drop the cached token and repeat the request once
    - other 4xx: raise TerminalProcessorError immediately
    - 5xx and network errors: retry with capped exponential backoff, bounded
      by both an attempt count and an overall deadline
    """

    def __init__(
        self,
        base_url: str | None = None,
        key: str | None = None,
        secret: str | None = None,
        token_cache: TokenCache | None = None,
        client: httpx.AsyncClient | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_cap_seconds: float | None = None,
        deadline_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """Initialize Dwolla adapter, falling back to application settings."""
        self.base_url = (base_url or settings.dwolla_base_url).rstrip("/")
        self.key = (key if key is not None else settings.dwolla_key).strip()
        self.secret = (secret if secret is not None else settings.dwolla_secret).strip()
        self.token_cache = token_cache or TokenCache()
        self.max_attempts = max_attempts or settings.dwolla_max_attempts
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.dwolla_backoff_base_seconds
        )
        self.backoff_cap_seconds = (
            backoff_cap_seconds if backoff_cap_seconds is not None else settings.dwolla_backoff_cap_seconds
        )
        self.deadline_seconds = (
            deadline_seconds if deadline_seconds is not None else settings.dwolla_request_deadline_seconds
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.dwolla_request_timeout_seconds)
        self._sleep = sleep

    async def __aenter__(self) -> "DwollaAdapter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this adapter created it."""
        if self._owns_client:
            await self._client.aclose()

    async def get_token(self) -> str:
        """
        Return a valid bearer token, requesting a new one when the cache is empty.

        Raises:
            TerminalProcessorError: If Dwolla rejects the application credentials
            TransientProcessorError: On network failure or a 5xx from the token endpoint
        """
        token = self.token_cache.get()
        if token:
            return token

        try:
            response = await self._client.post(
                f"{self.base_url}/token",
                auth=(self.key, self.secret),
                data={"grant_type": "client_credentials"},
            )
        except httpx.TransportError as e:
            raise TransientProcessorError(f"Dwolla token request failed: {e}") from e

        if response.status_code >= 500:
            raise TransientProcessorError(
                f"Dwolla token request failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.is_success:
            raise TerminalProcessorError(
                f"Dwolla token request failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        payload = response.json()
        expires_in = int(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        self.token_cache.store(payload["access_token"], expires_in)

        logger.info("dwolla_token_refreshed", expires_in=expires_in)
        return payload["access_token"]

    async def _send(self, method: str, url: str, body: dict[str, Any] | None) -> httpx.Response:
        token = await self.get_token()
        headers = {"Authorization": f"Bearer {token}", "Accept": HAL_JSON}
        if body is not None:
            headers["Content-Type"] = HAL_JSON
        try:
            return await self._client.request(method, url, headers=headers, json=body)
        except httpx.TransportError as e:
            raise TransientProcessorError(f"Dwolla request failed: {e}") from e

    @staticmethod
    def _checked(response: httpx.Response) -> httpx.Response:
        """Map a non-2xx response onto the processor error taxonomy."""
        if response.is_success:
            return response

        message = f"Dwolla API error: {response.status_code} - {response.text}"
        if 400 <= response.status_code < 500:
            raise TerminalProcessorError(message, status_code=response.status_code, body=response.text)
        raise TransientProcessorError(message, status_code=response.status_code, body=response.text)

    def _retrying(self, url: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "dwolla_request_retrying",
                url=url,
                attempt=retry_state.attempt_number,
                delay=retry_state.upcoming_sleep,
                status_code=getattr(error, "status_code", None),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts) | stop_before_delay(self.deadline_seconds),
            wait=wait_exponential(multiplier=self.backoff_base_seconds, max=self.backoff_cap_seconds),
            retry=retry_if_exception_type(TransientProcessorError),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def request(self, method: str, path_or_url: str, body: dict[str, Any] | None = None) -> httpx.Response:
        """
        Issue an authenticated request with the adapter's retry policy.

        Args:
            method: HTTP method
            path_or_url: Path relative to the base URL, or an absolute Dwolla href
            body: JSON body (optional)

        Returns:
            Successful HTTP response

        Raises:
            TerminalProcessorError: On a 4xx response (after one token refresh for 401)
            TransientProcessorError: When retries or the deadline are exhausted
        """
        url = path_or_url if path_or_url.startswith("http") else f"{self.base_url}/{path_or_url.lstrip('/')}"
        retrying = self._retrying(url)
        token_refreshed = False

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(method, url, body)
                    # A rejected token is refreshed once per request and does not use up an attempt
                    if response.status_code == 401 and not token_refreshed:
                        logger.warning("dwolla_token_rejected", url=url)
                        self.token_cache.invalidate()
                        token_refreshed = True
                        response = await self._send(method, url, body)
                    self._checked(response)
        except TransientProcessorError as e:
            logger.error(
                "dwolla_request_exhausted",
                url=url,
                attempts=retrying.statistics.get("attempt_number"),
                error=str(e),
            )
            raise
        return response

    async def create_transfer(
        self,
        source_href: str,
        destination_href: str,
        amount_cents: int,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Create an ACH transfer between two funding sources.

        Args:
            source_href: Funding source debited
            destination_href: Funding source credited
            amount_cents: Amount in cents
            metadata: Metadata stored on the transfer

        Returns:
            Transfer href from the Location header
        """
        response = await self.request(
            "POST",
            "transfers",
            {
                "_links": {
                    "source": {"href": source_href},
                    "destination": {"href": destination_href},
                },
                "amount": {"currency": CURRENCY, "value": format_dollars(amount_cents)},
                "metadata": metadata or {},
            },
        )

        location = response.headers.get("location")
        if not location:
            raise TerminalProcessorError(
                "Dwolla accepted the transfer but returned no Location header",
                status_code=response.status_code,
            )
        return location

    def funding_source_url(self, funding_href_or_id: str) -> str:
        """Accept either a full funding source href or a bare id."""
        if funding_href_or_id.startswith("http"):
            return funding_href_or_id
        return f"{self.base_url}/funding-sources/{funding_href_or_id}"

    async def get_funding_source(self, funding_href_or_id: str) -> dict[str, Any]:
        """
        Retrieve funding source details.

        Returns:
            Dict with id, name, type, status and bank name
        """
        response = await self.request("GET", self.funding_source_url(funding_href_or_id))
        data = response.json()
        return {
            "id": data.get("id"),
            "name": data.get("name"),
            "type": data.get("type"),
            "status": data.get("status"),
            "bank_name": data.get("bankName"),
        }

    async def initiate_micro_deposits(self, funding_href_or_id: str) -> None:
        """Ask Dwolla to send two verification micro-deposits."""
        await self.request("POST", f"{self.funding_source_url(funding_href_or_id)}/micro-deposits", {})

    async def verify_micro_deposits(self, funding_href_or_id: str, amount1_cents: int, amount2_cents: int) -> None:
        """Confirm micro-deposit amounts to verify a funding source."""
        await self.request(
            "POST",
            f"{self.funding_source_url(funding_href_or_id)}/micro-deposits",
            {
                "amount1": {"value": format_dollars(amount1_cents), "currency": CURRENCY},
                "amount2": {"value": format_dollars(amount2_cents), "currency": CURRENCY},
            },
        )
