"""Slack Web API client.

Thin async wrapper over the handful of Web API methods the search core
needs. Every failure is mapped onto the application exception hierarchy so
callers can classify it (authentication / transient / malformed).
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from slacksearch.core.config import Settings
from slacksearch.core.exceptions import (
    AuthenticationError,
    MalformedResponseError,
    RateLimitedError,
    SlackAPIError,
    TransientFetchError,
)
from slacksearch.metrics.live_metrics import slack_api_calls_total

logger = logging.getLogger(__name__)

# Slack ``error`` codes that mean the token itself is unusable
AUTH_ERROR_CODES = frozenset(
    {
        "invalid_auth",
        "not_authed",
        "token_revoked",
        "token_expired",
        "account_inactive",
        "missing_scope",
    }
)

MAX_RETRY_AFTER_SECONDS = 30.0

_backoff = wait_exponential(multiplier=1, min=1, max=10)


def _wait_for_rate_limit(retry_state: RetryCallState) -> float:
    """Honour Slack's Retry-After header, falling back to exponential backoff."""
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        return min(error.retry_after, MAX_RETRY_AFTER_SECONDS)
    return _backoff(retry_state)


class SlackWebClient:
    """Async Slack Web API client with bounded concurrency."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.base_url = settings.SLACK_API_URL
        self.timeout = settings.SLACK_API_TIMEOUT
        self.max_retries = settings.SLACK_MAX_RETRIES
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._semaphore = asyncio.Semaphore(settings.SLACK_MAX_CONCURRENT_REQUESTS)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.settings.SLACK_TOKEN}"},
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.info("Slack HTTP client closed")

    async def api_call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict:
        """Call a Web API method, retrying only when rate limited.

        Raises:
            AuthenticationError: Token rejected
            RateLimitedError: Still rate limited after all attempts
            TransientFetchError: Network failure, timeout or 5xx
            MalformedResponseError: Body is not a Slack JSON envelope
            SlackAPIError: Any other ``ok: false`` answer
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=_wait_for_rate_limit,
            retry=retry_if_exception_type(RateLimitedError),
            reraise=True,
        ):
            with attempt:
                payload = await self._request(method, params or {})
        return payload

    async def _request(self, method: str, params: Dict[str, Any]) -> Dict:
        client = await self._get_client()
        query = {key: value for key, value in params.items() if value is not None}
        async with self._semaphore:
            try:
                response = await client.get(f"/{method}", params=query)
            except httpx.TimeoutException as e:
                slack_api_calls_total.labels(method=method, result="error").inc()
                raise TransientFetchError(f"{method} timed out: {e}") from e
            except httpx.TransportError as e:
                slack_api_calls_total.labels(method=method, result="error").inc()
                raise TransientFetchError(f"{method} connection failed: {e}") from e

        payload = self._check_response(method, response)
        slack_api_calls_total.labels(method=method, result="success").inc()
        return payload

    @staticmethod
    def _check_response(method: str, response: httpx.Response) -> Dict:
        status = response.status_code
        if status == 429:
            slack_api_calls_total.labels(method=method, result="rate_limited").inc()
            retry_after = response.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after is not None else None
            except ValueError:
                delay = None
            raise RateLimitedError(method, delay)
        if status in (401, 403):
            slack_api_calls_total.labels(method=method, result="auth_error").inc()
            raise AuthenticationError(
                f"Slack rejected credentials for {method} (HTTP {status})"
            )
        if status >= 500:
            slack_api_calls_total.labels(method=method, result="error").inc()
            raise TransientFetchError(f"{method} returned HTTP {status}")
        if status >= 400:
            slack_api_calls_total.labels(method=method, result="error").inc()
            raise SlackAPIError(method, f"http_{status}")

        try:
            payload = response.json()
        except ValueError as e:
            slack_api_calls_total.labels(method=method, result="error").inc()
            raise MalformedResponseError(method, "body is not JSON") from e
        if not isinstance(payload, dict) or "ok" not in payload:
            slack_api_calls_total.labels(method=method, result="error").inc()
            raise MalformedResponseError(method, "missing 'ok' envelope")

        if not payload["ok"]:
            error = str(payload.get("error") or "unknown_error")
            if error in AUTH_ERROR_CODES:
                slack_api_calls_total.labels(method=method, result="auth_error").inc()
                raise AuthenticationError(
                    f"Slack rejected credentials for {method}: {error}",
                    error_code=error.upper(),
                )
            if error == "ratelimited":
                slack_api_calls_total.labels(method=method, result="rate_limited").inc()
                raise RateLimitedError(method)
            slack_api_calls_total.labels(method=method, result="error").inc()
            raise SlackAPIError(method, error)
        return payload

    # =========================================================================
    # Web API methods
    # =========================================================================

    async def search_messages(self, query: str, count: int = 100, page: int = 1) -> Dict:
        return await self.api_call(
            "search.messages",
            {
                "query": query,
                "count": count,
                "page": page,
                "sort": "timestamp",
                "sort_dir": "desc",
            },
        )

    async def conversations_history(
        self,
        channel: str,
        oldest: Optional[str] = None,
        latest: Optional[str] = None,
        limit: int = 200,
        cursor: Optional[str] = None,
    ) -> Dict:
        return await self.api_call(
            "conversations.history",
            {
                "channel": channel,
                "oldest": oldest,
                "latest": latest,
                "limit": limit,
                "cursor": cursor,
                "inclusive": "true",
            },
        )

    async def conversations_replies(
        self,
        channel: str,
        ts: str,
        limit: int = 200,
        cursor: Optional[str] = None,
    ) -> Dict:
        return await self.api_call(
            "conversations.replies",
            {"channel": channel, "ts": ts, "limit": limit, "cursor": cursor},
        )

    async def reactions_get(self, channel: str, timestamp: str) -> List[Dict]:
        """Return the raw reaction list of one message (empty when none)."""
        try:
            payload = await self.api_call(
                "reactions.get",
                {"channel": channel, "timestamp": timestamp, "full": "true"},
            )
        except SlackAPIError as e:
            if e.error == "no_reaction":
                return []
            raise

        message = payload.get("message")
        if not isinstance(message, dict):
            raise MalformedResponseError("reactions.get", "missing 'message'")
        reactions = message.get("reactions", [])
        if not isinstance(reactions, list):
            raise MalformedResponseError("reactions.get", "'reactions' is not a list")
        return reactions

    async def users_info(self, user: str) -> Dict:
        payload = await self.api_call("users.info", {"user": user})
        user_info = payload.get("user")
        if not isinstance(user_info, dict):
            raise MalformedResponseError("users.info", "missing 'user'")
        return user_info

    async def users_list(self, cursor: Optional[str] = None, limit: int = 200) -> Dict:
        return await self.api_call("users.list", {"cursor": cursor, "limit": limit})

    async def conversations_list(
        self,
        cursor: Optional[str] = None,
        limit: int = 200,
        types: str = "public_channel,private_channel,mpim,im",
    ) -> Dict:
        return await self.api_call(
            "conversations.list",
            {
                "cursor": cursor,
                "limit": limit,
                "types": types,
                "exclude_archived": "true",
            },
        )


def next_cursor(payload: Dict) -> Optional[str]:
    """Extract the pagination cursor from a Web API envelope."""
    metadata = payload.get("response_metadata")
    if not isinstance(metadata, dict):
        return None
    cursor = metadata.get("next_cursor")
    return cursor or None
