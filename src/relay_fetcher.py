"""
Origin fetcher.

One GET per admitted request, never retried. The whole exchange (connect,
headers and body) is bounded by ORIGIN_TIMEOUT and the body by ORIGIN_MAX_BYTES.
Every transport or content problem is raised as FetchFailure so callers
never see a raw httpx exception.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

import httpx

from config import settings
from errors import FetchFailure
from models import PlaylistEndpoint, RelayResult
from playlist_format import inject_monitoring_header, starts_with_marker, DEFAULT_CONTENT_TYPE

logger = logging.getLogger(__name__)

# Media types accepted as playlist text from the origin
TEXT_CONTENT_TYPES = (
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
    "application/mpegurl",
)
# Generic binary types some origins use for playlists; accepted only when the
# body actually starts with #EXTM3U
AMBIGUOUS_CONTENT_TYPES = (
    "application/octet-stream",
    "binary/octet-stream",
    "application/download",
    "application/force-download",
)


def classify_content_type(content_type: Optional[str]) -> str:
    """Returns 'text', 'ambiguous' or 'binary' for an origin Content-Type"""
    if not content_type:
        return "ambiguous"
    media_type = content_type.split(";")[0].strip().lower()
    if media_type.startswith("text/") or media_type in TEXT_CONTENT_TYPES:
        return "text"
    if media_type in AMBIGUOUS_CONTENT_TYPES:
        return "ambiguous"
    return "binary"


class RelayFetcher:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        # Per-phase limits; the whole fetch is bounded separately in relay()
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                settings.ORIGIN_TIMEOUT,
                connect=settings.ORIGIN_CONNECT_TIMEOUT,
            ),
            follow_redirects=True,
            max_redirects=10,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30.0
            )
        )

    def _user_agent(self, client_user_agent: Optional[str]) -> str:
        if settings.FORWARD_CLIENT_USER_AGENT and client_user_agent:
            return client_user_agent
        return settings.ORIGIN_USER_AGENT

    async def _download(self, url: str, headers: Dict[str, str]) -> Tuple[httpx.Response, bytes]:
        """Stream the origin body, giving up once it exceeds ORIGIN_MAX_BYTES"""
        async with self.http_client.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) > settings.ORIGIN_MAX_BYTES:
                    raise FetchFailure(
                        f"Origin playlist exceeds {settings.ORIGIN_MAX_BYTES} bytes")
            return response, bytes(body)

    async def relay(self, playlist: PlaylistEndpoint,
                    client_user_agent: Optional[str] = None) -> RelayResult:
        """Fetch the origin playlist and return it with the monitoring header."""
        headers = {"User-Agent": self._user_agent(client_user_agent)}

        try:
            response, raw = await asyncio.wait_for(
                self._download(playlist.origin_url, headers),
                timeout=settings.ORIGIN_TIMEOUT)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise FetchFailure(f"Origin timed out after {settings.ORIGIN_TIMEOUT:g}s", e)
        except httpx.HTTPStatusError as e:
            raise FetchFailure(f"Origin returned HTTP {e.response.status_code}", e)
        except httpx.HTTPError as e:
            raise FetchFailure(f"Origin unreachable: {type(e).__name__}", e)

        content_type = response.headers.get("content-type")
        kind = classify_content_type(content_type)
        if kind == "binary":
            raise FetchFailure(f"Origin returned non-playlist content ({content_type})")

        try:
            body = raw.decode(response.encoding or "utf-8", errors="replace")
        except LookupError as e:
            raise FetchFailure("Origin body is not valid text", e)

        if not body or not body.strip():
            raise FetchFailure("Origin returned an empty playlist")
        if kind == "ambiguous" and not starts_with_marker(body):
            raise FetchFailure(
                f"Origin returned {content_type or 'untyped'} content without a playlist header")

        logger.debug(
            f"Fetched {len(raw)} bytes for playlist {playlist.identifier} "
            f"(HTTP {response.status_code})")
        return RelayResult(
            content=inject_monitoring_header(body, playlist),
            content_type=DEFAULT_CONTENT_TYPE,
            origin_status=response.status_code,
        )

    async def close(self):
        await self.http_client.aclose()
