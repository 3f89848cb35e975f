"""
Mirror request orchestration.

Resolving -> Classifying -> Admitting -> Fetching -> Responding. The first
failing stage ends the request with a playlist-format error body; a rejected
request never reaches the origin.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from config import settings
from access_limiter import AccessLimiter
from device_classifier import DeviceClassifier, default_classifier
from errors import FetchFailure, LimitExceeded, PlaylistNotFound
from models import AccessEvent, AdmissionDecision, ClientIdentity, DeviceCategory, PlaylistEndpoint, RequestStage
from playlist_format import (
    NO_CACHE_HEADERS,
    fetch_failure_playlist,
    get_content_type,
    limit_exceeded_playlist,
    not_found_playlist,
)
from playlist_registry import PlaylistRegistry
from relay_fetcher import RelayFetcher
from session_store import SessionStore

logger = logging.getLogger(__name__)

UNRELIABLE_ADDRESSES = {"", "unknown", "0.0.0.0", "::"}


def build_client_identity(
    remote_host: Optional[str],
    user_agent: Optional[str],
    forwarded_for: Optional[str] = None,
    accept_language: Optional[str] = None,
) -> ClientIdentity:
    """
    Derive the session key for a request.

    Uses the first X-Forwarded-For hop when trusted, then the socket peer.
    Without a usable address, falls back to a hash of the request signature.
    """
    address = None
    if forwarded_for and settings.TRUST_FORWARDED_FOR:
        # X-Forwarded-For can contain multiple IPs: "client, proxy1, proxy2"
        address = forwarded_for.split(",")[0].strip()
    if not address and remote_host:
        address = remote_host.strip()

    user_agent = user_agent or ""
    if not address or address.lower() in UNRELIABLE_ADDRESSES:
        digest = hashlib.md5(
            f"{user_agent}|{accept_language or ''}".encode()).hexdigest()[:16]
        address = f"anon-{digest}"

    return ClientIdentity(address=address, user_agent=user_agent)


def split_mirror_name(mirror_name: str) -> Tuple[str, Optional[str]]:
    """'abc123.m3u' -> ('abc123', 'm3u'); bare identifiers carry no extension"""
    identifier, dot, extension = mirror_name.rpartition(".")
    if not dot:
        return mirror_name, None
    return identifier, extension.lower()


@dataclass
class ProxyResponse:
    status_code: int
    content: str
    content_type: str
    stage: RequestStage
    headers: Dict[str, str] = field(default_factory=dict)
    category: DeviceCategory = DeviceCategory.UNKNOWN


class ProxyEndpoint:
    def __init__(
        self,
        registry: PlaylistRegistry,
        limiter: AccessLimiter,
        fetcher: RelayFetcher,
        store: Optional[SessionStore] = None,
        classifier: Optional[DeviceClassifier] = None,
    ):
        self.registry = registry
        self.limiter = limiter
        self.fetcher = fetcher
        self.store = store
        self.classifier = classifier or default_classifier

    def _response(self, status_code: int, content: str, extension: Optional[str],
                  stage: RequestStage, category: DeviceCategory = DeviceCategory.UNKNOWN) -> ProxyResponse:
        filename_ext = extension if extension in settings.PLAYLIST_EXTENSIONS else "m3u"
        headers = dict(NO_CACHE_HEADERS)
        headers["Content-Disposition"] = f'inline; filename="playlist.{filename_ext}"'
        return ProxyResponse(
            status_code=status_code,
            content=content,
            content_type=get_content_type(extension),
            stage=stage,
            headers=headers,
            category=category,
        )

    async def _record_access(self, playlist: PlaylistEndpoint, client: ClientIdentity,
                             category: DeviceCategory, admitted: bool):
        if not (self.store and settings.ACCESS_LOG_ENABLED):
            return
        try:
            await self.store.append_access_event(AccessEvent(
                playlist_id=playlist.identifier,
                client_key=client.address,
                user_agent=client.user_agent[:500],
                category=category,
                admitted=admitted,
            ))
        except Exception as e:
            # The audit trail is for reporting only; never fail a viewer over it
            logger.error(f"Failed to record access for {playlist.identifier}: {e}")

    async def _resolve(self, mirror_name: str) -> Tuple[PlaylistEndpoint, Optional[str]]:
        identifier, extension = split_mirror_name(mirror_name)
        if extension is not None and extension not in settings.PLAYLIST_EXTENSIONS:
            raise PlaylistNotFound(mirror_name)
        playlist = await self.registry.get(identifier)
        if playlist is None:
            raise PlaylistNotFound(identifier)
        return playlist, extension

    async def _admit(self, playlist: PlaylistEndpoint, client: ClientIdentity,
                     category: DeviceCategory) -> AdmissionDecision:
        decision = await self.limiter.admit(playlist, client, category)
        if not decision.admitted:
            raise LimitExceeded(playlist.identifier, decision.max_devices,
                                decision.active_devices)
        return decision

    async def handle(self, mirror_name: str, client: ClientIdentity) -> ProxyResponse:
        stage = RequestStage.RESOLVING
        _, extension = split_mirror_name(mirror_name)
        try:
            playlist, extension = await self._resolve(mirror_name)
        except PlaylistNotFound as e:
            logger.info(f"Unknown mirror identifier {e.identifier} requested by {client.address}")
            return self._response(404, not_found_playlist(e.identifier), extension, stage)

        stage = RequestStage.CLASSIFYING
        category = self.classifier.classify(client.user_agent)

        stage = RequestStage.ADMITTING
        try:
            decision = await self._admit(playlist, client, category)
        except LimitExceeded as e:
            await self._record_access(playlist, client, category, admitted=False)
            logger.info(
                f"Rejected {category.value} device {client.address} on {playlist.identifier}: "
                f"{e.active_devices}/{e.max_devices} devices active")
            return self._response(
                429, limit_exceeded_playlist(playlist, e.active_devices), extension, stage, category)

        await self._record_access(playlist, client, category, admitted=True)

        stage = RequestStage.FETCHING
        try:
            result = await self.fetcher.relay(playlist, client.user_agent)
        except FetchFailure as e:
            logger.warning(
                f"Origin fetch failed for {playlist.identifier} ({playlist.origin_url}): "
                f"{e.detail}" + (f" [{e.cause!r}]" if e.cause else ""))
            return self._response(
                502, fetch_failure_playlist(playlist, e.detail), extension, stage, category)

        stage = RequestStage.RESPONDING
        logger.info(
            f"Serving playlist {playlist.identifier} to {category.value} device {client.address} "
            f"({decision.active_devices}/{playlist.max_devices} active"
            f"{', returning' if decision.returning else ''})")
        return self._response(200, result.content, extension, stage, category)
