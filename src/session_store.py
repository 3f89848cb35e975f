"""
Persistence for playlists, device sessions and the access audit trail.

Two backends share one interface:

- InMemorySessionStore keeps everything in process memory behind an asyncio
  lock. Suitable for a single worker and for tests.
- RedisSessionStore keeps everything in Redis so several workers see the same
  sessions. Atomicity comes from Redis itself: HSETNX for identifier
  reservation, a MULTI/EXEC transaction around ZADD for session upserts and
  WATCH/MULTI for the sweep flipping stale sessions inactive.

Every mutation of a (playlist, client) session goes through upsert_session,
which is atomic in both backends.
"""

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from typing import Dict, List, Optional, Any

from redis.exceptions import WatchError

from models import PlaylistEndpoint, DeviceSession, AccessEvent, DeviceCategory

logger = logging.getLogger(__name__)


class SessionStore:
    """Interface implemented by the storage backends"""

    backend_name = "abstract"

    async def start(self):
        pass

    async def close(self):
        pass

    async def ping(self) -> bool:
        return True

    # Playlists
    async def insert_playlist_if_absent(self, playlist: PlaylistEndpoint) -> bool:
        raise NotImplementedError

    async def playlist_exists(self, identifier: str) -> bool:
        raise NotImplementedError

    async def get_playlist(self, identifier: str) -> Optional[PlaylistEndpoint]:
        raise NotImplementedError

    # Sessions
    async def upsert_session(
        self,
        playlist_id: str,
        client_key: str,
        user_agent: str,
        category: DeviceCategory,
        now: float,
    ) -> bool:
        """Create or refresh a session. Returns True if it did not exist before."""
        raise NotImplementedError

    async def get_session(self, playlist_id: str, client_key: str) -> Optional[DeviceSession]:
        raise NotImplementedError

    async def list_sessions(self, playlist_id: str) -> List[DeviceSession]:
        raise NotImplementedError

    async def count_sessions_since(self, playlist_id: str, cutoff: float) -> int:
        """Count sessions whose last heartbeat is at or after cutoff."""
        raise NotImplementedError

    async def mark_inactive_before(self, cutoff: float) -> int:
        """Flip the stored active flag on sessions with no heartbeat since cutoff."""
        raise NotImplementedError

    # Access audit trail
    async def append_access_event(self, event: AccessEvent):
        raise NotImplementedError

    async def list_access_events_since(self, playlist_id: str, cutoff: float) -> List[AccessEvent]:
        raise NotImplementedError

    async def prune_access_events_before(self, cutoff: float) -> int:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    """Single-worker store; all mutations run under one asyncio lock"""

    backend_name = "memory"

    def __init__(self):
        self._lock = asyncio.Lock()
        self._playlists: Dict[str, PlaylistEndpoint] = {}
        # playlist_id -> client_key -> session
        self._sessions: Dict[str, Dict[str, DeviceSession]] = defaultdict(dict)
        self._events: Dict[str, List[AccessEvent]] = defaultdict(list)

    async def insert_playlist_if_absent(self, playlist: PlaylistEndpoint) -> bool:
        async with self._lock:
            if playlist.identifier in self._playlists:
                return False
            self._playlists[playlist.identifier] = playlist
            return True

    async def playlist_exists(self, identifier: str) -> bool:
        return identifier in self._playlists

    async def get_playlist(self, identifier: str) -> Optional[PlaylistEndpoint]:
        return self._playlists.get(identifier)

    async def upsert_session(self, playlist_id, client_key, user_agent, category, now) -> bool:
        async with self._lock:
            sessions = self._sessions[playlist_id]
            session = sessions.get(client_key)
            if session is None:
                sessions[client_key] = DeviceSession(
                    playlist_id=playlist_id,
                    client_key=client_key,
                    first_seen=now,
                    last_heartbeat=now,
                    active=True,
                    user_agent=user_agent,
                    category=category,
                )
                return True
            session.last_heartbeat = max(session.last_heartbeat, now)
            session.active = True
            session.user_agent = user_agent
            session.category = category
            return False

    async def get_session(self, playlist_id: str, client_key: str) -> Optional[DeviceSession]:
        session = self._sessions.get(playlist_id, {}).get(client_key)
        if session is None:
            return None
        # Hand out a copy so callers never mutate the stored record
        return DeviceSession(**vars(session))

    async def list_sessions(self, playlist_id: str) -> List[DeviceSession]:
        return [DeviceSession(**vars(s)) for s in self._sessions.get(playlist_id, {}).values()]

    async def count_sessions_since(self, playlist_id: str, cutoff: float) -> int:
        return sum(
            1 for s in self._sessions.get(playlist_id, {}).values()
            if s.last_heartbeat >= cutoff
        )

    async def mark_inactive_before(self, cutoff: float) -> int:
        flipped = 0
        async with self._lock:
            for sessions in self._sessions.values():
                for session in sessions.values():
                    if session.active and session.last_heartbeat < cutoff:
                        session.active = False
                        flipped += 1
        return flipped

    async def append_access_event(self, event: AccessEvent):
        async with self._lock:
            self._events[event.playlist_id].append(event)

    async def list_access_events_since(self, playlist_id: str, cutoff: float) -> List[AccessEvent]:
        return [e for e in self._events.get(playlist_id, []) if e.timestamp >= cutoff]

    async def prune_access_events_before(self, cutoff: float) -> int:
        removed = 0
        async with self._lock:
            for playlist_id, events in self._events.items():
                kept = [e for e in events if e.timestamp >= cutoff]
                removed += len(events) - len(kept)
                self._events[playlist_id] = kept
        return removed


class RedisSessionStore(SessionStore):
    """Multi-worker store backed by Redis"""

    backend_name = "redis"

    def __init__(self, redis_url: str = "redis://localhost:6379/0",
                 key_prefix: str = "m3u-mirror", redis_client: Optional[Any] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis_client: Optional[Any] = redis_client

    async def start(self):
        if self.redis_client is None:
            import redis.asyncio as redis_async
            self.redis_client = redis_async.from_url(
                self.redis_url, decode_responses=True)
        await self.redis_client.ping()
        logger.info(f"Redis session store connected ({self.key_prefix})")

    async def close(self):
        if self.redis_client:
            await self.redis_client.close()
            self.redis_client = None
            logger.info("Redis session store closed")

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    # Key layout
    def _playlists_key(self) -> str:
        return f"{self.key_prefix}:playlists"

    def _heartbeats_key(self, playlist_id: str) -> str:
        return f"{self.key_prefix}:heartbeats:{playlist_id}"

    def _session_key(self, playlist_id: str, client_key: str) -> str:
        return f"{self.key_prefix}:session:{playlist_id}:{client_key}"

    def _session_index_key(self) -> str:
        return f"{self.key_prefix}:session_playlists"

    def _access_key(self, playlist_id: str) -> str:
        return f"{self.key_prefix}:access:{playlist_id}"

    def _access_index_key(self) -> str:
        return f"{self.key_prefix}:access_playlists"

    async def insert_playlist_if_absent(self, playlist: PlaylistEndpoint) -> bool:
        created = await self.redis_client.hsetnx(
            self._playlists_key(), playlist.identifier, json.dumps(playlist.to_dict()))
        return bool(created)

    async def playlist_exists(self, identifier: str) -> bool:
        return bool(await self.redis_client.hexists(self._playlists_key(), identifier))

    async def get_playlist(self, identifier: str) -> Optional[PlaylistEndpoint]:
        raw = await self.redis_client.hget(self._playlists_key(), identifier)
        if not raw:
            return None
        try:
            return PlaylistEndpoint.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt playlist record for {identifier}: {e}")
            return None

    async def upsert_session(self, playlist_id, client_key, user_agent, category, now) -> bool:
        session_key = self._session_key(playlist_id, client_key)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            # ZADD reports 1 only to the caller that inserted the member
            pipe.zadd(self._heartbeats_key(playlist_id), {client_key: now})
            pipe.hsetnx(session_key, "first_seen", now)
            pipe.hset(session_key, mapping={
                "last_heartbeat": now,
                "active": 1,
                "user_agent": user_agent,
                "category": category.value,
            })
            pipe.sadd(self._session_index_key(), playlist_id)
            results = await pipe.execute()
        return int(results[0]) == 1

    def _session_from_hash(self, playlist_id: str, client_key: str,
                           data: Dict[str, str]) -> DeviceSession:
        last_heartbeat = float(data.get("last_heartbeat", 0))
        return DeviceSession(
            playlist_id=playlist_id,
            client_key=client_key,
            first_seen=float(data.get("first_seen", last_heartbeat)),
            last_heartbeat=last_heartbeat,
            active=data.get("active") == "1",
            user_agent=data.get("user_agent", ""),
            category=DeviceCategory(data.get("category", "unknown")),
        )

    async def get_session(self, playlist_id: str, client_key: str) -> Optional[DeviceSession]:
        data = await self.redis_client.hgetall(self._session_key(playlist_id, client_key))
        if not data:
            return None
        return self._session_from_hash(playlist_id, client_key, data)

    async def list_sessions(self, playlist_id: str) -> List[DeviceSession]:
        client_keys = await self.redis_client.zrange(self._heartbeats_key(playlist_id), 0, -1)
        sessions = []
        for client_key in client_keys:
            session = await self.get_session(playlist_id, client_key)
            if session:
                sessions.append(session)
        return sessions

    async def count_sessions_since(self, playlist_id: str, cutoff: float) -> int:
        return int(await self.redis_client.zcount(
            self._heartbeats_key(playlist_id), cutoff, "+inf"))

    async def _flip_inactive(self, session_key: str, cutoff: float) -> bool:
        """Set active=0 unless a heartbeat at or after cutoff lands first."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(session_key)
                active, last_heartbeat = await pipe.hmget(
                    session_key, "active", "last_heartbeat")
                if active != "1" or float(last_heartbeat or 0) >= cutoff:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(session_key, "active", 0)
                await pipe.execute()
                return True
            except WatchError:
                # Touched while we looked; the session is fresh again
                return False

    async def mark_inactive_before(self, cutoff: float) -> int:
        flipped = 0
        playlist_ids = await self.redis_client.smembers(self._session_index_key())
        for playlist_id in playlist_ids:
            stale = await self.redis_client.zrangebyscore(
                self._heartbeats_key(playlist_id), "-inf", f"({cutoff}")
            for client_key in stale:
                if await self._flip_inactive(self._session_key(playlist_id, client_key), cutoff):
                    flipped += 1
        return flipped

    async def append_access_event(self, event: AccessEvent):
        member = dict(event.to_dict(), event_id=uuid.uuid4().hex)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.zadd(self._access_key(event.playlist_id),
                      {json.dumps(member): event.timestamp})
            pipe.sadd(self._access_index_key(), event.playlist_id)
            await pipe.execute()

    async def list_access_events_since(self, playlist_id: str, cutoff: float) -> List[AccessEvent]:
        raw_events = await self.redis_client.zrangebyscore(
            self._access_key(playlist_id), cutoff, "+inf")
        events = []
        for raw in raw_events:
            try:
                events.append(AccessEvent.from_dict(json.loads(raw)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed access event for {playlist_id}: {e}")
        return events

    async def prune_access_events_before(self, cutoff: float) -> int:
        removed = 0
        playlist_ids = await self.redis_client.smembers(self._access_index_key())
        for playlist_id in playlist_ids:
            removed += int(await self.redis_client.zremrangebyscore(
                self._access_key(playlist_id), "-inf", f"({cutoff}"))
        return removed


def create_session_store() -> SessionStore:
    """Pick the backend from settings"""
    from redis_config import get_redis_config, should_use_redis

    if should_use_redis():
        config = get_redis_config()
        logger.info("Using Redis session store")
        return RedisSessionStore(redis_url=config["redis_url"], key_prefix=config["key_prefix"])
    logger.info("Using in-memory session store (single-worker mode)")
    return InMemorySessionStore()
