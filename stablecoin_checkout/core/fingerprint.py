"""
Amount fingerprint allocation.

A pending order is identified by the exact amount the customer sends: the
order total plus a random sub-cent offset of 1-999 micro-units. Allocation
samples an offset, pre-checks it against the live pending set and then tries to
claim it; the storage-level unique index on pending fingerprints is the final
arbiter, and losing that race counts as one more collision.
"""
import random
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from ..database.ledger import FingerprintCollisionError
from ..monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MIN_OFFSET_MICROS = 1
MAX_OFFSET_MICROS = 999
DEFAULT_MAX_ATTEMPTS = 50

T = TypeVar("T")


class AllocationExhaustedError(Exception):
    """Raised when no free fingerprint was found; the caller may resubmit."""

    def __init__(self, total_micros: int, attempts: int):
        super().__init__(
            f"Unable to allocate a unique payment amount after {attempts} attempts, try again"
        )
        self.total_micros = total_micros
        self.attempts = attempts


class FingerprintAllocator:
    """Turns an order total into a collision-free deposit amount."""

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ):
        self.max_attempts = max_attempts
        self.rng = rng or random.SystemRandom()

    def sample(self, total_micros: int) -> int:
        """Return ``total + offset`` for a uniformly drawn offset."""
        return total_micros + self.rng.randint(MIN_OFFSET_MICROS, MAX_OFFSET_MICROS)

    async def allocate(
        self,
        total_micros: int,
        is_taken: Callable[[int], Awaitable[bool]],
        claim: Callable[[int], Awaitable[T]],
    ) -> T:
        """
        Find a free fingerprint and claim it.

        Args:
            total_micros: Order total in micro-units
            is_taken: Pre-check against the pending set
            claim: Persists the order with the candidate fingerprint; raises
                FingerprintCollisionError if another order won the race

        Returns:
            Whatever ``claim`` returns for the winning fingerprint

        Raises:
            AllocationExhaustedError: after ``max_attempts`` collisions
        """
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.sample(total_micros)

            if await is_taken(candidate):
                metrics.record_fingerprint_collision("precheck")
                logger.debug(
                    "fingerprint_collision",
                    candidate=candidate,
                    attempt=attempt,
                    stage="precheck",
                )
                continue

            try:
                claimed = await claim(candidate)
            except FingerprintCollisionError:
                metrics.record_fingerprint_collision("insert")
                logger.info(
                    "fingerprint_collision",
                    candidate=candidate,
                    attempt=attempt,
                    stage="insert",
                )
                continue

            logger.debug("fingerprint_allocated", fingerprint=candidate, attempts=attempt)
            return claimed

        logger.warning(
            "fingerprint_allocation_exhausted",
            total_micros=total_micros,
            attempts=self.max_attempts,
        )
        raise AllocationExhaustedError(total_micros, self.max_attempts)
