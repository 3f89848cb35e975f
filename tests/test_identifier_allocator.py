import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pytest
from unittest.mock import AsyncMock, patch

from errors import AllocationExhausted
from identifier_allocator import IdentifierAllocator
from models import PlaylistEndpoint
from session_store import InMemorySessionStore


def make_reserver(store: InMemorySessionStore):
    async def reserve(identifier: str) -> bool:
        return await store.insert_playlist_if_absent(PlaylistEndpoint(
            identifier=identifier,
            name=f"playlist {identifier}",
            origin_url="http://origin.example.com/list.m3u",
            max_devices=1,
        ))
    return reserve


class TestGenerate:
    def test_length_and_alphabet(self):
        allocator = IdentifierAllocator(length=8, fallback_length=12, alphabet="abc123")
        token = allocator.generate(8)
        assert len(token) == 8
        assert set(token) <= set("abc123")

    def test_rejects_degenerate_alphabet(self):
        with pytest.raises(ValueError):
            IdentifierAllocator(alphabet="aaaa")

    def test_rejects_shorter_fallback(self):
        with pytest.raises(ValueError):
            IdentifierAllocator(length=10, fallback_length=6)


class TestAllocate:
    @pytest.mark.asyncio
    async def test_first_draw_is_reserved(self):
        store = InMemorySessionStore()
        allocator = IdentifierAllocator(exists=store.playlist_exists, length=8)
        identifier = await allocator.allocate(make_reserver(store))
        assert len(identifier) == 8
        assert await store.playlist_exists(identifier)

    @pytest.mark.asyncio
    async def test_existing_identifier_triggers_retry(self):
        allocator = IdentifierAllocator(length=4, fallback_length=8, max_attempts=3)
        reserve = AsyncMock(return_value=True)
        exists = AsyncMock(side_effect=[True, False])
        allocator.exists = exists

        with patch.object(allocator, "generate", side_effect=["aaaa", "bbbb"]):
            identifier = await allocator.allocate(reserve)

        assert identifier == "bbbb"
        # The taken identifier is never offered for reservation
        reserve.assert_awaited_once_with("bbbb")

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_a_retry_not_an_error(self):
        allocator = IdentifierAllocator(length=4, fallback_length=8, max_attempts=3)
        # Existence check passes but another allocator inserts first
        allocator.exists = AsyncMock(return_value=False)
        reserve = AsyncMock(side_effect=[False, True])

        with patch.object(allocator, "generate", side_effect=["race", "free"]):
            identifier = await allocator.allocate(reserve)

        assert identifier == "free"
        assert reserve.await_count == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_longer_identifier(self):
        allocator = IdentifierAllocator(length=4, fallback_length=10, max_attempts=2)
        lengths = []

        async def reserve(identifier):
            lengths.append(len(identifier))
            return len(identifier) == 10

        identifier = await allocator.allocate(reserve)
        assert len(identifier) == 10
        assert lengths == [4, 4, 10]

    @pytest.mark.asyncio
    async def test_exhaustion_raises(self):
        allocator = IdentifierAllocator(length=4, fallback_length=6, max_attempts=3)
        reserve = AsyncMock(return_value=False)

        with pytest.raises(AllocationExhausted) as exc_info:
            await allocator.allocate(reserve)

        assert exc_info.value.attempts == 6
        assert reserve.await_count == 6

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_unique(self):
        store = InMemorySessionStore()
        allocator = IdentifierAllocator(exists=store.playlist_exists)
        reserve = make_reserver(store)

        identifiers = await asyncio.gather(
            *(allocator.allocate(reserve) for _ in range(10000)))

        assert len(set(identifiers)) == 10000
        assert len(store._playlists) == 10000

    @pytest.mark.asyncio
    async def test_tiny_space_stays_unique_under_concurrency(self):
        # 2 characters from a 2-letter alphabet: only 4 identifiers exist
        store = InMemorySessionStore()
        allocator = IdentifierAllocator(
            exists=store.playlist_exists, length=2, fallback_length=2,
            max_attempts=50, alphabet="ab")
        reserve = make_reserver(store)

        results = await asyncio.gather(
            *(allocator.allocate(reserve) for _ in range(6)), return_exceptions=True)

        identifiers = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, AllocationExhausted)]
        assert len(identifiers) == len(set(identifiers))
        assert len(identifiers) <= 4
        assert len(identifiers) + len(failures) == 6
