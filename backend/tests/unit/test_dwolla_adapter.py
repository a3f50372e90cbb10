"""Unit tests for the Dwolla adapter: token cache, retries and request shapes."""
import json

import httpx
import pytest

from usage_billing.adapters.dwolla_adapter import HAL_JSON, DwollaAdapter, TokenCache
from usage_billing.exceptions import TerminalProcessorError, TransientProcessorError
from utils.dwolla import BASE_URL, FakeDwolla, json_response, raising

SOURCE = f"{BASE_URL}/funding-sources/customer-bank"
DESTINATION = f"{BASE_URL}/funding-sources/operator"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_token_cache_expires_before_token_lifetime() -> None:
    """Tokens are dropped expiry_buffer seconds before Dwolla expires them."""
    clock = FakeClock()
    cache = TokenCache(expiry_buffer_seconds=60, clock=clock)

    cache.store("abc", expires_in=3600)
    assert cache.get() == "abc"

    clock.now += 3539
    assert cache.get() == "abc"

    clock.now += 1
    assert cache.get() is None


def test_token_cache_invalidate() -> None:
    """invalidate() forces the next request to fetch a new token."""
    cache = TokenCache(expiry_buffer_seconds=60, clock=FakeClock())
    cache.store("abc", expires_in=3600)

    cache.invalidate()

    assert cache.get() is None


@pytest.mark.asyncio
async def test_create_transfer_request_shape(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """Transfers are posted as HAL+JSON with a two-place USD amount and metadata."""
    href = await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 1200, {"crm_contact_id": "c-1"})

    assert href == f"{BASE_URL}/transfers/transfer-1"

    request = fake_dwolla.transfer_requests()[0]
    assert request.headers["Authorization"] == "Bearer token-1"
    assert request.headers["Accept"] == HAL_JSON
    assert request.headers["Content-Type"] == HAL_JSON

    body = json.loads(request.content)
    assert body["_links"] == {"source": {"href": SOURCE}, "destination": {"href": DESTINATION}}
    assert body["amount"] == {"currency": "USD", "value": "12.00"}
    assert body["metadata"] == {"crm_contact_id": "c-1"}


@pytest.mark.asyncio
async def test_token_requested_once_and_reused(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """The client-credentials token is cached across requests."""
    await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)
    await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 200)

    assert fake_dwolla.token_requests == 1

    token_request = next(r for r in fake_dwolla.requests if r.url.path == "/token")
    assert token_request.headers["Authorization"].startswith("Basic ")
    assert b"grant_type=client_credentials" in token_request.content


@pytest.mark.asyncio
async def test_401_refreshes_token_and_retries_once(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """A rejected token is dropped and the request repeated with a new one."""
    fake_dwolla.queued.append(json_response(401, {"code": "ExpiredAccessToken"}))

    href = await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert href.startswith(f"{BASE_URL}/transfers/")
    assert fake_dwolla.token_requests == 2
    assert fake_dwolla.transfer_requests()[-1].headers["Authorization"] == "Bearer token-2"
    assert fake_dwolla.sleeps == []


@pytest.mark.asyncio
async def test_second_401_is_terminal(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """Only one token refresh is attempted per request."""
    fake_dwolla.queued.extend([json_response(401), json_response(401)])

    with pytest.raises(TerminalProcessorError) as exc_info:
        await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert exc_info.value.status_code == 401
    assert fake_dwolla.token_requests == 2


@pytest.mark.asyncio
async def test_4xx_is_terminal_without_retry(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """Business rejections surface immediately with the processor's body."""
    fake_dwolla.failures[SOURCE] = 400

    with pytest.raises(TerminalProcessorError) as exc_info:
        await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert exc_info.value.status_code == 400
    assert "Funding source not verified" in exc_info.value.body
    assert len(fake_dwolla.transfer_requests()) == 1
    assert fake_dwolla.sleeps == []


@pytest.mark.asyncio
async def test_5xx_retried_with_backoff_then_succeeds(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """Server errors are retried with exponential backoff."""
    fake_dwolla.queued.extend([json_response(503), json_response(502)])

    href = await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert href.startswith(f"{BASE_URL}/transfers/")
    assert fake_dwolla.sleeps == [1.0, 2.0]
    assert len(fake_dwolla.transfer_requests()) == 3


@pytest.mark.asyncio
async def test_5xx_exhausts_attempts(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """After max_attempts server errors a TransientProcessorError is raised."""
    fake_dwolla.queued.extend([json_response(500)] * 3)

    with pytest.raises(TransientProcessorError) as exc_info:
        await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert exc_info.value.status_code == 500
    assert len(fake_dwolla.transfer_requests()) == 3
    assert fake_dwolla.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_backoff_is_capped(fake_dwolla: FakeDwolla) -> None:
    """Delays never exceed the configured cap."""
    adapter = fake_dwolla.adapter(max_attempts=5, backoff_base_seconds=2.0, backoff_cap_seconds=5.0, deadline_seconds=600)
    fake_dwolla.queued.extend([json_response(500)] * 5)

    with pytest.raises(TransientProcessorError):
        await adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert fake_dwolla.sleeps == [2.0, 4.0, 5.0, 5.0]
    await fake_dwolla.aclose()


@pytest.mark.asyncio
async def test_deadline_stops_retries_early(fake_dwolla: FakeDwolla) -> None:
    """A retry that would overrun the deadline is not attempted."""
    adapter = fake_dwolla.adapter(max_attempts=10, deadline_seconds=1.5)
    fake_dwolla.queued.extend([json_response(500)] * 10)

    with pytest.raises(TransientProcessorError):
        await adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert fake_dwolla.sleeps == [1.0]
    assert len(fake_dwolla.transfer_requests()) == 2
    await fake_dwolla.aclose()


@pytest.mark.asyncio
async def test_network_errors_are_transient() -> None:
    """Connection failures are retried and end as TransientProcessorError."""
    sleeps: list[float] = []

    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    token_cache = TokenCache(expiry_buffer_seconds=60)
    token_cache.store("cached-token", expires_in=3600)

    async with httpx.AsyncClient(
        transport=httpx.MockTransport(raising(lambda: httpx.ConnectError("connection refused")))
    ) as client:
        adapter = DwollaAdapter(
            base_url=BASE_URL,
            key="k",
            secret="s",
            token_cache=token_cache,
            client=client,
            max_attempts=3,
            backoff_base_seconds=1.0,
            backoff_cap_seconds=5.0,
            deadline_seconds=60,
            sleep=sleep,
        )
        with pytest.raises(TransientProcessorError) as exc_info:
            await adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert exc_info.value.status_code is None
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_missing_location_header_is_terminal(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """A success without a Location header cannot be correlated and is terminal."""
    fake_dwolla.queued.append(httpx.Response(201))

    with pytest.raises(TerminalProcessorError, match="Location"):
        await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)


@pytest.mark.asyncio
async def test_bad_credentials_are_terminal(fake_dwolla: FakeDwolla) -> None:
    """A rejected client-credentials grant is not retried."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = DwollaAdapter(base_url=BASE_URL, key="k", secret="bad", client=client, sleep=fake_dwolla.sleep)
        with pytest.raises(TerminalProcessorError) as exc_info:
            await adapter.get_token()

    assert exc_info.value.status_code == 401
    assert fake_dwolla.sleeps == []


@pytest.mark.asyncio
async def test_funding_source_and_micro_deposit_requests(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """Funding-source calls accept bare ids or full hrefs."""
    fake_dwolla.funding_sources["fs-1"] = {
        "id": "fs-1",
        "name": "Checking",
        "type": "bank",
        "status": "unverified",
        "bankName": "SANDBOX TEST BANK",
    }

    details = await dwolla_adapter.get_funding_source("fs-1")
    await dwolla_adapter.initiate_micro_deposits(f"{BASE_URL}/funding-sources/fs-1")
    await dwolla_adapter.verify_micro_deposits("fs-1", 3, 9)

    assert details == {
        "id": "fs-1",
        "name": "Checking",
        "type": "bank",
        "status": "unverified",
        "bank_name": "SANDBOX TEST BANK",
    }
    assert [d["path"] for d in fake_dwolla.micro_deposits] == [
        "/funding-sources/fs-1/micro-deposits",
        "/funding-sources/fs-1/micro-deposits",
    ]
    assert fake_dwolla.micro_deposits[1]["body"] == {
        "amount1": {"value": "0.03", "currency": "USD"},
        "amount2": {"value": "0.09", "currency": "USD"},
    }


@pytest.mark.asyncio
async def test_token_endpoint_5xx_is_retried(fake_dwolla: FakeDwolla) -> None:
    """A token endpoint outage backs off like any other transient failure."""
    token_calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            token_calls.append(request)
            if len(token_calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
        return httpx.Response(201, headers={"Location": f"{BASE_URL}/transfers/t-1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = DwollaAdapter(
            base_url=BASE_URL,
            key="k",
            secret="s",
            client=client,
            max_attempts=3,
            backoff_base_seconds=1.0,
            backoff_cap_seconds=5.0,
            deadline_seconds=60,
            sleep=fake_dwolla.sleep,
        )
        href = await adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert href == f"{BASE_URL}/transfers/t-1"
    assert len(token_calls) == 2
    assert fake_dwolla.sleeps == [1.0]


@pytest.mark.asyncio
async def test_token_refresh_after_a_retried_5xx(fake_dwolla: FakeDwolla, dwolla_adapter: DwollaAdapter) -> None:
    """A 401 on a later attempt still gets its one token refresh."""
    fake_dwolla.queued.extend([json_response(502), json_response(401)])

    href = await dwolla_adapter.create_transfer(SOURCE, DESTINATION, 100)

    assert href.startswith(f"{BASE_URL}/transfers/")
    assert fake_dwolla.token_requests == 2
    assert fake_dwolla.sleeps == [1.0]
