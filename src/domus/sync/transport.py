"""
HTTP transport for the household sync protocol.

    POST /api/sync/push   {changes, chunkIndex, totalChunks} -> {pushed}
    GET  /api/sync/pull   ?since=&limit=&cursor=             -> {changes, hasMore, nextCursor}
    GET  /api/auth/me                                         -> 2xx when the token is valid

push() and pull() never raise: network failures, exhausted retries and
non-2xx responses come back as results with success=False so the
orchestrator decides what to do with the cycle. An authentication
rejection is reported the same way.

Every request is retried on network errors, 5xx and 429 with exponential
backoff and ±20% jitter. Other 4xx responses are final.
"""
import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from domus.clock import format_timestamp
from domus.sync.session import NoSessionError
from domus.sync.types import ChangeRecord, PullResult, PushResult

logger = logging.getLogger(__name__)

PUSH_PATH = "/api/sync/push"
PULL_PATH = "/api/sync/pull"
SESSION_PATH = "/api/auth/me"


class TransportError(RuntimeError):
    """Raised internally when a request could not be completed after retries."""


class SyncTransport:
    """Push/pull ChangeRecords to the household sync server."""

    def __init__(
        self,
        base_url: str,
        identity_provider,
        *,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        push_chunk_size: int = 100,
        pull_page_size: int = 500,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            base_url: Server origin, e.g. "https://domus.example.com".
            identity_provider: Object with identity() -> Identity (SessionAuth).
            client: Preconfigured httpx.AsyncClient (tests inject MockTransport/ASGITransport).
            sleep: Awaitable used between retries.
        """
        self.base_url = base_url.rstrip("/")
        self.identity_provider = identity_provider
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.push_chunk_size = max(1, push_chunk_size)
        self.pull_page_size = max(1, pull_page_size)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, identity_provider, client=None) -> "SyncTransport":
        return cls(
            settings.sync_base_url,
            identity_provider,
            timeout=settings.sync_request_timeout_s,
            max_retries=settings.sync_max_retries,
            retry_base_delay=settings.sync_retry_base_delay_s,
            retry_max_delay=settings.sync_retry_max_delay_s,
            push_chunk_size=settings.sync_push_chunk_size,
            pull_page_size=settings.sync_pull_page_size,
            client=client,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ─── Protocol operations ──────────────────────────────────────────────────

    async def push(
        self,
        changes: List[ChangeRecord],
        on_chunk: Optional[Callable[[int, int, int], None]] = None,
    ) -> PushResult:
        """Send changes in chunks. Any failed chunk fails the whole push.

        on_chunk(chunks_done, total_chunks, pushed) runs after each accepted chunk.
        """
        if not changes:
            return PushResult(success=True, count=0)

        try:
            headers = self._auth_headers()
        except NoSessionError as exc:
            return PushResult(success=False, error=str(exc))

        chunks = [
            changes[i:i + self.push_chunk_size]
            for i in range(0, len(changes), self.push_chunk_size)
        ]
        pushed = 0
        for index, chunk in enumerate(chunks):
            body = {
                "changes": [c.to_wire() for c in chunk],
                "chunkIndex": index,
                "totalChunks": len(chunks),
            }
            try:
                response = await self._request("POST", PUSH_PATH, json=body, headers=headers)
            except TransportError as exc:
                logger.error("Push chunk %d/%d failed: %s", index + 1, len(chunks), exc)
                return PushResult(success=False, count=pushed, error=str(exc))

            if not response.is_success:
                error = _describe_failure(response)
                logger.error("Push chunk %d/%d rejected: %s", index + 1, len(chunks), error)
                return PushResult(success=False, count=pushed, error=error)

            pushed += _reported_count(response, "pushed", len(chunk))
            if on_chunk is not None:
                on_chunk(index + 1, len(chunks), pushed)

        logger.info("Pushed %d changes in %d chunks", pushed, len(chunks))
        return PushResult(success=True, count=pushed)

    async def pull(
        self,
        since: Optional[datetime],
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> PullResult:
        """Fetch every remote change after since (everything when None), page by page.

        on_page(pages_fetched, records_so_far) runs after each page.
        """
        try:
            headers = self._auth_headers()
        except NoSessionError as exc:
            return PullResult(success=False, error=str(exc))

        params: Dict[str, Any] = {"limit": self.pull_page_size}
        if since is not None:
            params["since"] = format_timestamp(since)

        changes: List[ChangeRecord] = []
        cursor: Optional[str] = None
        pages = 0
        while True:
            if cursor:
                params["cursor"] = cursor
            try:
                response = await self._request("GET", PULL_PATH, params=dict(params), headers=headers)
            except TransportError as exc:
                logger.error("Pull failed: %s", exc)
                return PullResult(success=False, error=str(exc))

            if not response.is_success:
                return PullResult(success=False, error=_describe_failure(response))

            try:
                payload = response.json()
            except ValueError as exc:
                return PullResult(success=False, error=f"Invalid JSON response: {exc}")
            if not isinstance(payload, dict):
                return PullResult(
                    success=False,
                    error=f"Invalid response format: expected object, got {type(payload).__name__}",
                )

            for raw in payload.get("changes") or []:
                try:
                    changes.append(ChangeRecord.model_validate(raw))
                except ValidationError as exc:
                    logger.warning("Skipping malformed remote change %r: %s", raw, exc)

            pages += 1
            if on_page is not None:
                on_page(pages, len(changes))
            next_cursor = payload.get("nextCursor")
            if not next_cursor or payload.get("hasMore") is False:
                break
            if next_cursor == cursor:
                return PullResult(success=False, error="Pull cursor did not advance")
            cursor = next_cursor

        logger.info("Pulled %d changes in %d pages", len(changes), pages)
        return PullResult(success=True, changes=changes)

    async def check_session(self) -> bool:
        """True if the server accepts the saved session."""
        try:
            response = await self._request("GET", SESSION_PATH, headers=self._auth_headers())
        except (NoSessionError, TransportError):
            return False
        return response.is_success

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _auth_headers(self) -> Dict[str, str]:
        return self.identity_provider.identity().auth_headers()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, retrying network errors, 5xx and 429.

        Returns the last response once it is final (2xx/4xx) or retries are
        exhausted on a retryable status.

        Raises:
            TransportError: if every attempt failed at the network level.
        """
        url = self.base_url + path
        attempts = self.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                last_error = exc
                logger.warning(
                    "Request error on %s %s: %s (attempt %d/%d)",
                    method, path, exc, attempt + 1, attempts,
                )
            else:
                if not _is_retryable(response.status_code) or attempt == attempts - 1:
                    return response
                logger.warning(
                    "%s %s returned %d (attempt %d/%d)",
                    method, path, response.status_code, attempt + 1, attempts,
                )

            if attempt < attempts - 1:
                await self._sleep(self._backoff_delay(attempt))

        raise TransportError(f"{method} {path} failed after {attempts} attempts: {last_error}")

    def _backoff_delay(self, attempt: int) -> float:
        base = self.retry_base_delay * (2 ** attempt)
        jitter = base * 0.2 * random.uniform(-1.0, 1.0)
        return max(0.0, min(base + jitter, self.retry_max_delay))


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def _describe_failure(response: httpx.Response) -> str:
    text = response.text.strip()
    if response.status_code in (401, 403):
        return f"Authentication rejected (HTTP {response.status_code}): {text}"
    return f"HTTP {response.status_code}: {text}"


def _reported_count(response: httpx.Response, key: str, default: int) -> int:
    try:
        value = response.json().get(key)
    except (ValueError, AttributeError):
        return default
    return value if isinstance(value, int) else default
