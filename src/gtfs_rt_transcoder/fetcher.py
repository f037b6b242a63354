"""HTTP fetcher for the upstream GTFS-RT feed (single attempt, bounded wait)."""

import asyncio
import math
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from gtfs_rt_transcoder.errors import AuthError, NetworkError, UpstreamError

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CREDENTIAL_HEADER = "apiKey"

# Statuses that mean the credential itself was refused
AUTH_STATUS_CODES = {401, 403}


@dataclass
class FetchResult:
    """Result of a successful feed fetch."""

    content: bytes
    headers: dict[str, str]
    status_code: int
    fetch_timestamp: datetime
    duration_ms: float
    content_length: int

    @property
    def content_type(self) -> str | None:
        """Get the content-type header if present."""
        return self.headers.get("content-type")


async def fetch_feed(
    client: httpx.AsyncClient,
    endpoint: str,
    credential: str,
    *,
    header_name: str = DEFAULT_CREDENTIAL_HEADER,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> FetchResult:
    """Fetch the feed payload with one authenticated GET.

    No retries are performed; retry policy belongs to the caller. The whole
    exchange, body included, runs under a single deadline.

    Args:
        client: Async HTTP client to use for the request.
        endpoint: Upstream feed URL.
        credential: Credential sent in the ``header_name`` request header.
        header_name: Name of the credential header.
        timeout_seconds: Deadline for the whole request; must be finite.

    Returns:
        FetchResult containing the undecoded payload and metadata.

    Raises:
        ValueError: If timeout_seconds is not a finite positive number.
        AuthError: For 401/403 responses.
        UpstreamError: For any other non-2xx response.
        NetworkError: For timeouts, connection failures, redirect loops and
            undecodable response bodies.
    """
    if not math.isfinite(timeout_seconds) or timeout_seconds <= 0:
        raise ValueError(f"timeout_seconds must be finite and positive, got {timeout_seconds}")

    fetch_start = datetime.now(UTC)

    try:
        async with asyncio.timeout(timeout_seconds):
            response = await client.get(
                endpoint,
                headers={header_name: credential},
                timeout=timeout_seconds,
            )
    except (TimeoutError, httpx.TimeoutException) as e:
        raise NetworkError("timeout", f"no response within {timeout_seconds}s") from e
    except httpx.TransportError as e:
        raise NetworkError("transport", f"{type(e).__name__}: {e}") from e
    except httpx.RequestError as e:
        # Redirect loops and undecodable bodies
        raise NetworkError("request", f"{type(e).__name__}: {e}") from e

    duration_ms = (datetime.now(UTC) - fetch_start).total_seconds() * 1000

    if response.status_code in AUTH_STATUS_CODES:
        raise AuthError(response.status_code, "credential rejected by upstream")
    if not response.is_success:
        raise UpstreamError(response.status_code, response.reason_phrase)

    return FetchResult(
        content=response.content,
        headers=dict(response.headers),
        status_code=response.status_code,
        fetch_timestamp=fetch_start,
        duration_ms=duration_ms,
        content_length=len(response.content),
    )


def create_http_client(max_connections: int = 100) -> httpx.AsyncClient:
    """Create an async HTTP client with connection pooling.

    Args:
        max_connections: Maximum number of concurrent connections.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_connections // 2,
    )

    return httpx.AsyncClient(
        limits=limits,
        follow_redirects=True,
    )
