"""
HTTP plumbing shared by the platform connectors.

PlatformHttpClient wraps httpx with request pacing, the retry policy, status
mapping onto the error taxonomy and a one-shot credential refresh on 401.
collect_pages drives any cursor/offset pagination with a hard record cap.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from bizpulse.errors import CredentialError, RateLimitedError, RemoteRequestError, TransientRemoteError
from bizpulse.schemas import StepStats
from bizpulse.utils.logger import log
from bizpulse.utils.rate_limiter import RequestPacer
from bizpulse.utils.retry import RetryPolicy, call_with_retry


@dataclass
class Page:
    """One page of remote records and the cursor for the next, if any"""
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[Any] = None


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class PlatformHttpClient:
    """
    Authenticated JSON client for one platform.

    Args:
        platform: Platform name used in errors and log lines
        auth_headers: Builds auth headers from an integration's current token
        retry_policy: Backoff for transient failures (timeouts, 5xx, 429)
        pacer: Per-connector request pacing
        timeout: Per-request timeout in seconds
        token_refresher: Coroutine that refreshes an integration's token;
            tried once when a request comes back 401
        transport: Optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        platform: str,
        auth_headers: Callable[[Any], Dict[str, str]],
        retry_policy: RetryPolicy,
        pacer: RequestPacer,
        timeout: float = 30.0,
        token_refresher: Optional[Callable[[Any], Awaitable[None]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.platform = platform
        self.auth_headers = auth_headers
        self.retry_policy = retry_policy
        self.pacer = pacer
        self.timeout = timeout
        self.token_refresher = token_refresher
        self.transport = transport
        self._sleep = sleep

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def request(
        self,
        integration,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """
        Send a request with retry and a single refresh-and-retry on 401.

        Raises:
            CredentialError: 401 with no refresh token, or 401 again after refresh
            TransientRemoteError: retries exhausted on timeouts/5xx/429
            RemoteRequestError: other 4xx responses
        """
        refreshed = False
        while True:
            try:
                return await call_with_retry(
                    self.retry_policy,
                    lambda: self._send(integration, method, url, params, json, authenticated),
                    description=f"{self.platform} {method} {url}",
                    sleep=self._sleep,
                )
            except CredentialError:
                can_refresh = (
                    authenticated
                    and not refreshed
                    and self.token_refresher is not None
                    and getattr(integration, "refresh_token", None)
                )
                if not can_refresh:
                    raise
                refreshed = True
                log.info(f"{self.platform} returned 401 for integration {integration.id}, refreshing token")
                await self.token_refresher(integration)

    async def get_json(self, integration, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.request(integration, "GET", url, params=params)
        return response.json()

    async def post_json(self, integration, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request(integration, "POST", url, json=payload)
        return response.json()

    async def _send(
        self,
        integration,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
        authenticated: bool,
    ) -> httpx.Response:
        await self.pacer.acquire()
        headers = {"Accept": "application/json"}
        if authenticated:
            headers.update(self.auth_headers(integration))

        async with self.client() as client:
            try:
                response = await client.request(method, url, params=params, json=json, headers=headers)
            except httpx.TimeoutException as e:
                raise TransientRemoteError(f"{self.platform} request timed out: {e}", self.platform) from e
            except httpx.TransportError as e:
                raise TransientRemoteError(f"{self.platform} connection failed: {e}", self.platform) from e

        self.raise_for_status(response)
        return response

    def raise_for_status(self, response: httpx.Response):
        status = response.status_code
        if status < 400:
            return
        if status == 401:
            raise CredentialError(f"{self.platform} rejected credentials (401)", self.platform)
        if status == 429:
            raise RateLimitedError(
                f"{self.platform} rate limit hit (429)",
                self.platform,
                retry_after=_retry_after_seconds(response),
            )
        if status >= 500:
            raise TransientRemoteError(f"{self.platform} server error {status}", self.platform, status_code=status)
        raise RemoteRequestError(
            f"{self.platform} request failed {status}: {response.text[:200]}",
            self.platform,
            status_code=status,
        )


async def collect_pages(
    fetch_page: Callable[[Optional[Any]], Awaitable[Page]],
    stats: StepStats,
    max_records: int,
    page_delay: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "records",
) -> List[Dict[str, Any]]:
    """
    Page through a remote collection.

    Continues while the platform reports more data and fewer than
    ``max_records`` have been accumulated. Sets ``stats.truncated`` when the
    cap stops pagination early.
    """
    records: List[Dict[str, Any]] = []
    cursor = None

    while True:
        page = await fetch_page(cursor)
        stats.pages += 1
        records.extend(page.records)

        if page.next_cursor is None:
            break
        if len(records) >= max_records:
            stats.truncated = True
            log.warning(f"Stopped paging {label} at {len(records)} records (cap {max_records})")
            break

        cursor = page.next_cursor
        if page_delay:
            await sleep(page_delay)

    if len(records) > max_records:
        records = records[:max_records]
        stats.truncated = True

    stats.fetched += len(records)
    return records
