"""
Human-readable report references: PREFIX-YYYY-NNNNN.

One strategy, one documented fallback:

1. a per-year atomic counter in Redis (INCR), unique without a lookup;
2. if the counter is unreachable, time+random candidates checked against
   persisted references, then UUID-derived candidates, all bounded.

Every candidate is checked against `exists` before being returned, so a reset
counter cannot hand out a reference that is already taken.
"""
from __future__ import annotations

import logging
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Protocol

import redis

from analysis_jobs.core.errors import ReferenceGenerationError

logger = logging.getLogger(__name__)

SEQUENCE_ATTEMPTS = 5
RANDOM_ATTEMPTS = 5
TOKEN_ATTEMPTS = 5


class Sequence(Protocol):
    def next(self, year: int) -> int: ...


class RedisSequence:
    def __init__(self, client: redis.Redis, key_prefix: str = "analysis-ref:seq:") -> None:
        self._client = client
        self.key_prefix = key_prefix

    def next(self, year: int) -> int:
        return int(self._client.incr(f"{self.key_prefix}{year}"))


def _uuid_token() -> str:
    return uuid.uuid4().hex[:5].upper()


class ReferenceGenerator:
    def __init__(
        self,
        exists: Callable[[str], bool],
        sequence: Sequence | None = None,
        *,
        prefix: str = "BAC",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        epoch_ms: Callable[[], int] = lambda: int(time.time() * 1000),
        rng: random.Random | None = None,
        token_factory: Callable[[], str] = _uuid_token,
    ) -> None:
        self._exists = exists
        self._sequence = sequence
        self.prefix = prefix
        self._clock = clock
        self._epoch_ms = epoch_ms
        self._rng = rng or random.Random()
        self._token_factory = token_factory

    def format(self, year: int, suffix: int | str) -> str:
        if isinstance(suffix, int):
            suffix = f"{suffix:05d}"
        return f"{self.prefix}-{year}-{suffix}"

    def generate(self) -> str:
        year = self._clock().year

        if self._sequence is not None:
            try:
                ref = self._from_sequence(year)
            except redis.RedisError as e:
                logger.warning("Reference counter unavailable (%s); using fallback", e)
            else:
                if ref is not None:
                    return ref

        return self._from_fallback(year)

    def _from_sequence(self, year: int) -> str | None:
        for _ in range(SEQUENCE_ATTEMPTS):
            ref = self.format(year, self._sequence.next(year))
            if not self._exists(ref):
                return ref
            # counter was reset or seeded behind existing data
            logger.warning("Reference %s already taken; advancing counter", ref)
        logger.warning("Counter produced %d taken references in a row; using fallback", SEQUENCE_ATTEMPTS)
        return None

    def _from_fallback(self, year: int) -> str:
        for _ in range(RANDOM_ATTEMPTS):
            n = (self._epoch_ms() + self._rng.randrange(1000)) % 100_000
            ref = self.format(year, n)
            if not self._exists(ref):
                return ref

        for _ in range(TOKEN_ATTEMPTS):
            ref = self.format(year, self._token_factory())
            if not self._exists(ref):
                return ref

        raise ReferenceGenerationError(
            f"No free reference for {year} after {RANDOM_ATTEMPTS + TOKEN_ATTEMPTS} fallback attempts"
        )
