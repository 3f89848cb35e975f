"""
Mirror identifier allocation.

Identifiers are short random tokens drawn from a restricted alphabet. The
existence check only avoids wasted work: uniqueness is decided by the
caller-supplied ``reserve`` coroutine, which must be an atomic
insert-if-absent (HSETNX in Redis, a locked dict insert in memory). A
reservation that loses a race counts as a collision and triggers a retry.
"""

import logging
import secrets
from typing import Awaitable, Callable, Optional

from config import settings
from errors import AllocationExhausted

logger = logging.getLogger(__name__)

ExistsCheck = Callable[[str], Awaitable[bool]]
Reserve = Callable[[str], Awaitable[bool]]


class IdentifierAllocator:
    def __init__(
        self,
        exists: Optional[ExistsCheck] = None,
        length: Optional[int] = None,
        fallback_length: Optional[int] = None,
        max_attempts: Optional[int] = None,
        alphabet: Optional[str] = None,
    ):
        self.exists = exists
        self.length = length or settings.IDENTIFIER_LENGTH
        self.fallback_length = fallback_length or settings.IDENTIFIER_FALLBACK_LENGTH
        self.max_attempts = max_attempts or settings.IDENTIFIER_MAX_ATTEMPTS
        self.alphabet = alphabet or settings.IDENTIFIER_ALPHABET
        if len(set(self.alphabet)) < 2:
            raise ValueError("Identifier alphabet needs at least two distinct characters")
        if self.fallback_length < self.length:
            raise ValueError("Fallback identifier length must not be shorter than the primary length")

    def generate(self, length: int) -> str:
        return "".join(secrets.choice(self.alphabet) for _ in range(length))

    async def allocate(self, reserve: Reserve) -> str:
        """
        Draw identifiers until ``reserve`` accepts one.

        Tries ``max_attempts`` tokens at the primary length, then the same
        number at the fallback length. Raises AllocationExhausted when every
        draw collided.
        """
        attempts = 0
        for length in (self.length, self.fallback_length):
            for _ in range(self.max_attempts):
                attempts += 1
                candidate = self.generate(length)

                if self.exists and await self.exists(candidate):
                    logger.debug(f"Identifier {candidate} already taken, retrying")
                    continue

                if await reserve(candidate):
                    if attempts > 1:
                        logger.info(
                            f"Allocated identifier {candidate} after {attempts} attempts")
                    return candidate

                # Lost the race between the check and the insert
                logger.debug(f"Identifier {candidate} claimed concurrently, retrying")

            if length != self.fallback_length:
                logger.warning(
                    f"{self.max_attempts} identifier collisions at length {length}, "
                    f"falling back to length {self.fallback_length}")

        logger.error(f"Identifier allocation exhausted after {attempts} attempts")
        raise AllocationExhausted(attempts)
