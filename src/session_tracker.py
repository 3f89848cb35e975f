"""
Device session tracking with heartbeat semantics.

A device is "active" for a playlist while its last heartbeat lies inside the
trailing TTL window. Activity is always computed from the heartbeat timestamp
at read time; the periodic sweep only keeps the stored ``active`` flag tidy
for reporting and never changes what active_count returns.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from config import settings
from models import ClientIdentity, DeviceCategory, DeviceSession, PlaylistEndpoint, TouchResult
from session_store import SessionStore
from device_classifier import classify

logger = logging.getLogger(__name__)


class SessionTracker:
    def __init__(
        self,
        store: SessionStore,
        ttl: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl = float(ttl if ttl is not None else settings.SESSION_TTL)
        self.sweep_interval = float(
            sweep_interval if sweep_interval is not None else settings.SESSION_SWEEP_INTERVAL)
        self.clock = clock
        self.retention_seconds = settings.ACCESS_LOG_RETENTION_DAYS * 86400

        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    def _ttl(self, ttl: Optional[float]) -> float:
        return self.ttl if ttl is None else float(ttl)

    async def touch(
        self,
        playlist: PlaylistEndpoint,
        client: ClientIdentity,
        category: Optional[DeviceCategory] = None,
    ) -> TouchResult:
        """Create or refresh the (playlist, client) session and mark it active."""
        is_new = await self.store.upsert_session(
            playlist.identifier,
            client.address,
            client.user_agent,
            category or classify(client.user_agent),
            self.clock(),
        )
        if is_new:
            logger.info(
                f"New device session {client.address} on playlist {playlist.identifier}")
        return TouchResult(is_new=is_new)

    async def active_count(self, playlist: PlaylistEndpoint, ttl: Optional[float] = None) -> int:
        cutoff = self.clock() - self._ttl(ttl)
        return await self.store.count_sessions_since(playlist.identifier, cutoff)

    async def is_currently_active(
        self,
        playlist: PlaylistEndpoint,
        client: ClientIdentity,
        ttl: Optional[float] = None,
    ) -> bool:
        session = await self.store.get_session(playlist.identifier, client.address)
        if session is None:
            return False
        return session.is_within(self._ttl(ttl), self.clock())

    async def active_sessions(
        self, playlist: PlaylistEndpoint, ttl: Optional[float] = None
    ) -> List[DeviceSession]:
        """Sessions inside the window, with the active flag recomputed."""
        now = self.clock()
        window = self._ttl(ttl)
        sessions = await self.store.list_sessions(playlist.identifier)
        active = []
        for session in sessions:
            session.active = session.is_within(window, now)
            if session.active:
                active.append(session)
        return active

    async def sweep(self) -> int:
        """Flip stale sessions to inactive and prune expired access events."""
        now = self.clock()
        flipped = await self.store.mark_inactive_before(now - self.ttl)
        pruned = await self.store.prune_access_events_before(now - self.retention_seconds)
        if flipped or pruned:
            logger.info(
                f"Session sweep: {flipped} sessions marked inactive, {pruned} access events pruned")
        return flipped

    async def start(self):
        """Start the background sweep"""
        self._running = True
        self._sweep_task = asyncio.create_task(self._periodic_sweep())
        logger.info(
            f"Session tracker started (ttl={self.ttl:.0f}s, sweep every {self.sweep_interval:.0f}s)")

    async def stop(self):
        """Stop the background sweep"""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Session tracker stopped")

    async def _periodic_sweep(self):
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in session sweep: {e}")
