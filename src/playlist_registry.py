"""
Playlist lookup and registration.

The management side owns playlist records; this module is the seam the mirror
uses to read them and the single hook through which new records get a mirror
identifier.
"""

import logging
import time
from typing import Optional
from urllib.parse import urlparse

from config import settings
from identifier_allocator import IdentifierAllocator
from models import PlaylistEndpoint
from session_store import SessionStore

logger = logging.getLogger(__name__)


def validate_url(url: str) -> str:
    """Validate URL format and security"""
    if not url or not url.strip():
        raise ValueError("URL cannot be empty")

    url = url.strip()
    try:
        parsed = urlparse(url)
    except Exception:
        raise ValueError("Invalid URL format")

    if parsed.scheme.lower() not in ['http', 'https']:
        raise ValueError("URL must use HTTP or HTTPS protocol")

    if not parsed.netloc:
        raise ValueError("URL must have a valid domain")

    dangerous_patterns = ['<script', 'javascript:', 'data:', 'vbscript:']
    url_lower = url.lower()
    for pattern in dangerous_patterns:
        if pattern in url_lower:
            raise ValueError(f"URL contains dangerous pattern: {pattern}")

    return url


def validate_max_devices(value: int) -> int:
    if not settings.MIN_DEVICES <= value <= settings.MAX_DEVICES:
        raise ValueError(
            f"max_devices must be between {settings.MIN_DEVICES} and {settings.MAX_DEVICES}")
    return value


class PlaylistRegistry:
    def __init__(self, store: SessionStore, allocator: Optional[IdentifierAllocator] = None):
        self.store = store
        self.allocator = allocator or IdentifierAllocator(exists=store.playlist_exists)

    async def get(self, identifier: str) -> Optional[PlaylistEndpoint]:
        return await self.store.get_playlist(identifier)

    async def register(self, name: str, origin_url: str,
                       max_devices: Optional[int] = None) -> PlaylistEndpoint:
        """
        Persist a new playlist under a freshly allocated identifier.

        Raises ValueError for invalid input and AllocationExhausted when no
        unique identifier could be reserved.
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("name cannot be empty")
        origin_url = validate_url(origin_url)
        max_devices = validate_max_devices(
            settings.DEFAULT_MAX_DEVICES if max_devices is None else max_devices)

        created: dict = {}

        async def reserve(identifier: str) -> bool:
            now = time.time()
            playlist = PlaylistEndpoint(
                identifier=identifier,
                name=name,
                origin_url=origin_url,
                max_devices=max_devices,
                created_at=now,
                updated_at=now,
            )
            if await self.store.insert_playlist_if_absent(playlist):
                created["playlist"] = playlist
                return True
            return False

        identifier = await self.allocator.allocate(reserve)
        logger.info(f"Registered playlist {name!r} as {identifier} (max {max_devices} devices)")
        return created["playlist"]


def mirror_path(identifier: str, extension: str = "m3u") -> str:
    """Relative mirror URL path, honouring ROOT_PATH like the rest of the app"""
    root_path = (settings.ROOT_PATH or "").rstrip("/")
    prefix = settings.ROUTE_PREFIX.strip("/")
    return f"{root_path}/{prefix}/{identifier}.{extension}"
