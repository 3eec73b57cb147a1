"""EMD — FileMaker Data API Client.

Handles session tokens, find queries and offset pagination. Transient errors
are not retried here: the poller treats a failed fetch as a failed cycle and
the next tick tries again.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from emd.config import settings
from emd.core.logging import get_logger

logger = get_logger("filemaker.client")

# Sessions expire after 15 minutes of inactivity
TOKEN_LIFETIME = timedelta(minutes=14)
NO_RECORDS_CODE = "401"  # FileMaker "No records match the request"
INVALID_TOKEN_CODE = "952"


class FileMakerAPIError(Exception):
    """Raised when the FileMaker Data API returns an error."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = ""):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


def _error_message(resp: httpx.Response) -> tuple[str, str]:
    """Extract (code, message) from a Data API error body."""
    try:
        body = resp.json()
    except ValueError:
        return "", resp.text[:200]
    messages = body.get("messages") or [{}]
    return str(messages[0].get("code", "")), messages[0].get("message", "")


class FileMakerClient:
    """Async HTTP client for the FileMaker Data API."""

    def __init__(
        self,
        host: str | None = None,
        database: str | None = None,
        layout: str | None = None,
        username: str | None = None,
        password: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host or settings.filemaker_host
        self.database = database or settings.filemaker_database
        self.layout = layout or settings.filemaker_layout
        self.username = username if username is not None else settings.filemaker_user
        self.password = password if password is not None else settings.filemaker_password
        self.timeout = timeout or settings.fetch_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.host}/fmi/data/vLatest/databases/{self.database}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Release the Data API session and the HTTP connection pool."""
        if self._token and self._client and not self._client.is_closed:
            try:
                await self._client.delete(f"{self.base_url}/sessions/{self._token}")
            except httpx.HTTPError as e:
                logger.warning(f"Could not close FileMaker session: {e}")
        self._token = None
        self._token_expiry = None
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Authentication ──

    async def get_token(self) -> str:
        """Return a cached session token, logging in when expired."""
        now = datetime.now(timezone.utc)
        if self._token and self._token_expiry and now < self._token_expiry:
            return self._token

        client = await self._get_client()
        try:
            resp = await client.post(
                f"{self.base_url}/sessions",
                json={},
                auth=(self.username, self.password),
            )
        except httpx.RequestError as e:
            raise FileMakerAPIError(f"Authentication request failed: {e}") from e

        if resp.status_code >= 400:
            code, message = _error_message(resp)
            raise FileMakerAPIError(
                f"Authentication failed: {message or resp.status_code}",
                resp.status_code,
                code,
            )

        token = resp.json().get("response", {}).get("token")
        if not token:
            raise FileMakerAPIError("Failed to retrieve token from FileMaker")

        self._token = token
        self._token_expiry = now + TOKEN_LIFETIME
        logger.info("FileMaker session opened")
        return token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expiry = None

    # ── Find ──

    async def find(
        self,
        query: List[Dict[str, Any]],
        limit: int = 200,
        offset: int = 1,
        sort: List[Dict[str, Any]] | None = None,
    ) -> tuple[List[Dict[str, Any]], int]:
        """Run one ``_find`` page; returns (records, found_count)."""
        body: Dict[str, Any] = {"query": query, "limit": limit, "offset": offset}
        if sort:
            body["sort"] = sort
        url = f"{self.base_url}/layouts/{self.layout}/_find"

        resp = await self._post_authenticated(url, body)
        if resp.status_code >= 400:
            code, message = _error_message(resp)
            if code == NO_RECORDS_CODE:
                return [], 0
            raise FileMakerAPIError(
                f"Find failed: {message or resp.status_code}", resp.status_code, code
            )

        payload = resp.json().get("response", {})
        records = payload.get("data", [])
        found = payload.get("dataInfo", {}).get("foundCount", len(records))
        return records, int(found)

    async def _post_authenticated(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        """POST with a bearer token, re-authenticating once on an expired session."""
        client = await self._get_client()
        for attempt in (1, 2):
            token = await self.get_token()
            try:
                resp = await client.post(
                    url, json=body, headers={"Authorization": f"Bearer {token}"}
                )
            except httpx.RequestError as e:
                raise FileMakerAPIError(f"Request to FileMaker failed: {e}") from e

            if resp.status_code == 401 and attempt == 1:
                code, _ = _error_message(resp)
                if code == INVALID_TOKEN_CODE or not code:
                    logger.warning("FileMaker session expired, re-authenticating")
                    self.invalidate_token()
                    continue
            return resp
        return resp

    async def find_all(
        self,
        query: List[Dict[str, Any]],
        batch_size: int = 200,
        sort: List[Dict[str, Any]] | None = None,
        max_pages: int = 50,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a find query."""
        all_records: List[Dict[str, Any]] = []
        offset = 1
        for _ in range(max_pages):
            records, found = await self.find(query, batch_size, offset, sort)
            all_records.extend(records)
            if not records or len(all_records) >= found:
                break
            offset += len(records)
        else:
            logger.warning(f"Stopped paginating after {max_pages} pages")

        logger.info(f"Fetched {len(all_records)} records from {self.layout}")
        return all_records
