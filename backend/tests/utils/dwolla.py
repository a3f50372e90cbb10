"""In-memory Dwolla API served through httpx.MockTransport."""
import json
from collections.abc import Callable
from itertools import count
from typing import Any

import httpx

from usage_billing.adapters.dwolla_adapter import DwollaAdapter, TokenCache

BASE_URL = "https://api-sandbox.dwolla.com"


class FakeDwolla:
    """
    Minimal Dwolla: token endpoint, transfers, funding sources and micro-deposits.

    ``failures`` maps a source funding href to the HTTP status every transfer
    from that source gets (e.g. 400 for an unverified bank account).
    ``queued`` holds canned responses returned, in order, before the normal
    handling kicks in.
    """

    def __init__(self) -> None:
        self.transfers: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.token_requests = 0
        self.failures: dict[str, int] = {}
        self.queued: list[httpx.Response] = []
        self.funding_sources: dict[str, dict[str, Any]] = {}
        self.micro_deposits: list[dict[str, Any]] = []
        self.sleeps: list[float] = []
        self._ids = count(1)
        self._client: httpx.AsyncClient | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_requests}", "expires_in": 3600})

        if self.queued:
            return self.queued.pop(0)

        if path == "/transfers" and request.method == "POST":
            body = json.loads(request.content)
            source = body["_links"]["source"]["href"]
            if source in self.failures:
                return httpx.Response(
                    self.failures[source],
                    json={"code": "InvalidResourceState", "message": "Funding source not verified"},
                )
            href = f"{BASE_URL}/transfers/transfer-{next(self._ids)}"
            self.transfers.append({**body, "href": href})
            return httpx.Response(201, headers={"Location": href})

        if path.startswith("/funding-sources/") and path.endswith("/micro-deposits"):
            self.micro_deposits.append({"path": path, "body": json.loads(request.content or b"{}")})
            return httpx.Response(200)

        if path.startswith("/funding-sources/"):
            source_id = path.rsplit("/", 1)[-1]
            if source_id not in self.funding_sources:
                return httpx.Response(404, json={"code": "NotFound", "message": "Funding source not found"})
            return httpx.Response(200, json=self.funding_sources[source_id])

        return httpx.Response(404, json={"code": "NotFound"})

    def client(self) -> httpx.AsyncClient:
        self._client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return self._client

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def adapter(self, **overrides: Any) -> DwollaAdapter:
        options: dict[str, Any] = {
            "base_url": BASE_URL,
            "key": "test-key",
            "secret": "test-secret",
            "token_cache": TokenCache(expiry_buffer_seconds=60),
            "client": self.client(),
            "max_attempts": 3,
            "backoff_base_seconds": 1.0,
            "backoff_cap_seconds": 5.0,
            "deadline_seconds": 60.0,
            "sleep": self.sleep,
        }
        options.update(overrides)
        return DwollaAdapter(**options)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def transfer_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/transfers"]


def json_response(status_code: int, payload: dict[str, Any] | None = None) -> httpx.Response:
    return httpx.Response(status_code, json=payload or {})


def raising(exc_factory: Callable[[], Exception]) -> Callable[[httpx.Request], httpx.Response]:
    """Handler that raises the given transport error for every request."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise exc_factory()

    return handler
