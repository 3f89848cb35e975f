"""
Per-playlist concurrent device cap.

A device already active inside the window is always re-admitted (and its
heartbeat refreshed) without touching the cap. A new device is admitted only
if the active count, taken before it is registered, is below max_devices.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional

from models import AdmissionDecision, ClientIdentity, DeviceCategory, PlaylistEndpoint
from session_tracker import SessionTracker

logger = logging.getLogger(__name__)


class AccessLimiter:
    def __init__(self, tracker: SessionTracker):
        self.tracker = tracker
        # Serialises count-then-register for new devices of one playlist
        # within this worker. Never held while fetching the origin.
        self._admission_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _readmit(self, playlist: PlaylistEndpoint, client: ClientIdentity,
                       category: Optional[DeviceCategory]) -> Optional[AdmissionDecision]:
        """Heartbeat and admit a device that is already counted, else None."""
        if not await self.tracker.is_currently_active(playlist, client):
            return None
        await self.tracker.touch(playlist, client, category)
        return AdmissionDecision(
            admitted=True,
            max_devices=playlist.max_devices,
            active_devices=await self.tracker.active_count(playlist),
            returning=True,
        )

    async def admit(
        self,
        playlist: PlaylistEndpoint,
        client: ClientIdentity,
        category: Optional[DeviceCategory] = None,
    ) -> AdmissionDecision:
        decision = await self._readmit(playlist, client, category)
        if decision:
            return decision

        async with self._admission_locks[playlist.identifier]:
            # A concurrent request from the same device may have registered
            # it while we waited for the lock.
            decision = await self._readmit(playlist, client, category)
            if decision:
                return decision

            active = await self.tracker.active_count(playlist)
            if active >= playlist.max_devices:
                logger.warning(
                    f"Device limit reached for playlist {playlist.identifier}: "
                    f"{active}/{playlist.max_devices}, rejecting {client.address}")
                return AdmissionDecision(
                    admitted=False,
                    max_devices=playlist.max_devices,
                    active_devices=active,
                    reason="limit_exceeded",
                )

            await self.tracker.touch(playlist, client, category)

        return AdmissionDecision(
            admitted=True,
            max_devices=playlist.max_devices,
            active_devices=active + 1,
        )
