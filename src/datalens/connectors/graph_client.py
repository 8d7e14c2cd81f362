"""
Microsoft Graph API client.

Features:
- Token acquisition with either a delegated refresh token or app-only
  client credentials, refreshed shortly before expiry
- 429 throttling with Retry-After header support
- Exponential backoff on 5xx and transport errors
- ``@odata.nextLink`` pagination
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from datalens.exceptions import GraphAPIError

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
GRAPH_AUTH_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_RETRY_AFTER_SECONDS = 5


class GraphClient:
    """
    Microsoft Graph API client.

    Usage:
        client = GraphClient(tenant_id, client_id, client_secret)
        async with client:
            data = await client.get("/me/drive/root/children")

    When ``refresh_token`` is given the client acts on behalf of the user
    who granted it (``/me`` paths work); otherwise it uses the app-only
    client credentials grant and must address users explicitly.
    """

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str = "",
        refresh_token: Optional[str] = None,
        base_url: str = GRAPH_API_BASE,
        token_url: str = GRAPH_AUTH_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.tenant_id = tenant_id or "common"
        self.client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url.format(tenant_id=self.tenant_id)
        self.max_retries = max(1, max_retries)
        self.base_backoff_seconds = base_backoff_seconds
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._transport = transport

        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._token_lock = asyncio.Lock()

        self._client: Optional[httpx.AsyncClient] = None

        self.stats = {
            "requests": 0,
            "retries": 0,
            "throttled": 0,
            "errors": 0,
        }

    @property
    def is_delegated(self) -> bool:
        return bool(self._refresh_token)

    def clear_credentials(self) -> None:
        """Drop secrets and tokens held in memory."""
        self._client_secret = ""
        self._refresh_token = None
        self._access_token = None
        self._token_expires_at = None

    async def __aenter__(self) -> "GraphClient":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=self._connect_timeout),
            follow_redirects=True,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        self.clear_credentials()

    def _token_request_data(self) -> dict[str, str]:
        data = {"client_id": self.client_id, "scope": GRAPH_SCOPE}
        if self._client_secret:
            data["client_secret"] = self._client_secret
        if self._refresh_token:
            data["grant_type"] = "refresh_token"
            data["refresh_token"] = self._refresh_token
            data["scope"] = f"{GRAPH_SCOPE} offline_access"
        else:
            data["grant_type"] = "client_credentials"
        return data

    async def _ensure_token(self) -> str:
        """Return a valid access token, acquiring a new one if needed."""
        async with self._token_lock:
            now = datetime.now(timezone.utc)

            # 60s buffer before expiry
            if (
                self._access_token
                and self._token_expires_at
                and self._token_expires_at > now + timedelta(seconds=60)
            ):
                return self._access_token

            logger.debug("Acquiring new Graph API access token")
            client = self._require_client()
            try:
                response = await client.post(self.token_url, data=self._token_request_data())
            except httpx.TimeoutException as e:
                raise GraphAPIError(
                    "Timeout while acquiring access token",
                    endpoint=self.token_url,
                    context="connection to Azure AD timed out",
                ) from e
            except httpx.TransportError as e:
                raise GraphAPIError(
                    "Failed to connect to Azure AD for authentication",
                    endpoint=self.token_url,
                    context=f"{type(e).__name__} during token request",
                ) from e

            if response.status_code in (400, 401):
                try:
                    detail = response.json().get("error_description", "Bad request")
                except ValueError:
                    detail = response.text or "Bad request"
                raise GraphAPIError(
                    f"Token request failed: {detail}",
                    status_code=response.status_code,
                    endpoint=self.token_url,
                    context="acquiring access token for Graph API",
                )
            if response.is_error:
                raise GraphAPIError(
                    f"Token request failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    endpoint=self.token_url,
                )

            token_data = response.json()
            self._access_token = token_data["access_token"]
            # Refresh tokens rotate on use
            if token_data.get("refresh_token") and self._refresh_token:
                self._refresh_token = token_data["refresh_token"]
            expires_in = int(token_data.get("expires_in", 3600))
            self._token_expires_at = now + timedelta(seconds=expires_in)

            logger.debug(f"Token acquired, expires in {expires_in}s")
            return self._access_token

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Make a request to Graph API.

        Handles:
        - 429 throttling with Retry-After
        - Retries with exponential backoff on 5xx and transport errors
        - One token refresh on 401
        """
        client = self._require_client()
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        extra_headers = kwargs.pop("headers", {})

        last_error: Optional[GraphAPIError] = None
        refreshed = False
        for attempt in range(self.max_retries):
            token = await self._ensure_token()
            headers = {**extra_headers, "Authorization": f"Bearer {token}"}
            try:
                self.stats["requests"] += 1
                response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                last_error = GraphAPIError(
                    f"Transport error during Graph API request: {type(e).__name__}",
                    endpoint=url,
                    context=f"{method} request encountered network issue",
                )
                last_error.__cause__ = e
                backoff = self.base_backoff_seconds * (2 ** attempt)
                logger.warning(f"Transport error on {url}: {e}, retrying in {backoff}s")
                await asyncio.sleep(backoff)
                self.stats["retries"] += 1
                continue

            if response.status_code == 429:
                self.stats["throttled"] += 1
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                last_error = GraphAPIError(
                    "Graph API throttled",
                    status_code=429,
                    retry_after=retry_after,
                    endpoint=url,
                )
                logger.warning(
                    f"Graph API throttled, waiting {retry_after}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(retry_after)
                self.stats["retries"] += 1
                continue

            if response.status_code == 401 and not refreshed:
                refreshed = True
                self._access_token = None
                self._token_expires_at = None
                continue

            if response.status_code >= 500:
                last_error = GraphAPIError(
                    f"Graph API error {response.status_code}",
                    status_code=response.status_code,
                    endpoint=url,
                )
                backoff = self.base_backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"Graph API error {response.status_code}, retrying in {backoff}s"
                )
                await asyncio.sleep(backoff)
                self.stats["retries"] += 1
                continue

            if response.is_error:
                self.stats["errors"] += 1
                raise GraphAPIError(
                    f"Graph API request failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                    endpoint=url,
                    context=f"{method} {path}",
                )
            return response

        self.stats["errors"] += 1
        if last_error:
            raise last_error
        raise GraphAPIError(
            "Max retries exceeded for Graph API request",
            endpoint=url,
            context=f"failed after {self.max_retries} attempts",
        )

    async def get(self, path: str, **kwargs) -> dict[str, Any]:
        """GET request returning JSON."""
        response = await self._request("GET", path, **kwargs)
        return response.json()

    async def get_bytes(self, path: str, **kwargs) -> bytes:
        """GET request returning raw bytes (for file downloads)."""
        response = await self._request("GET", path, **kwargs)
        return response.content

    async def get_all_pages(self, path: str) -> list[dict]:
        """Get all pages of a paginated response."""
        items = []
        next_path: Optional[str] = path
        while next_path:
            data = await self.get(next_path)
            items.extend(data.get("value", []))
            next_path = data.get("@odata.nextLink")
        return items

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GraphClient must be used as async context manager")
        return self._client


def _parse_retry_after(value: Optional[str]) -> int:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(value))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
