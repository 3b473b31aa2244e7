"""Pessimistic in-process locks for structural and ledger mutations.

Structural mutations lock the materialized path of every subtree root they
touch. Two requests conflict when one path is a prefix of the other, i.e.
when the subtrees overlap. Categorization updates lock per question id.

Database row locks (``SELECT ... FOR UPDATE``) still guard against writers in
other processes; this manager only orders coroutines of one process so they do
not queue on row locks inside open transactions.
"""

import asyncio
from collections import Counter
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from qbank.config import settings
from qbank.core.errors import LockTimeoutError
from qbank.core.paths import prefixes_overlap
from qbank.infra.logging import get_logger

logger = get_logger(__name__)

# Every materialized path starts with "/", so this key covers the whole tree.
WHOLE_TREE = "/"


def question_key(question_id: int) -> str:
    # Trailing colon keeps question:1: from prefixing question:10:
    return f"question:{question_id}:"


class LockManager:
    """Grants keyed locks, waiting while any overlapping key is held."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds or settings.lock_timeout_seconds
        self._held: Counter[str] = Counter()
        self._condition = asyncio.Condition()

    def _conflicts(self, keys: list[str]) -> bool:
        return any(
            prefixes_overlap(key, held)
            for key in keys
            for held in self._held
        )

    def held_keys(self) -> list[str]:
        return sorted(self._held)

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncGenerator[None, None]:
        """Hold all ``keys`` for the duration of the block.

        Raises:
            LockTimeoutError: If the keys could not be obtained in time
        """
        wanted = sorted(set(keys))
        if not wanted:
            yield
            return

        async with self._condition:
            try:
                await asyncio.wait_for(
                    self._condition.wait_for(lambda: not self._conflicts(wanted)),
                    timeout=self._timeout,
                )
            except asyncio.TimeoutError as e:
                logger.error("Lock wait timed out", keys=wanted, held=self.held_keys())
                raise LockTimeoutError(f"Timed out waiting for lock on {wanted}") from e
            self._held.update(wanted)

        logger.debug("Locks acquired", keys=wanted)
        try:
            yield
        finally:
            async with self._condition:
                self._held.subtract(wanted)
                self._held += Counter()  # drop zero counts
                self._condition.notify_all()
            logger.debug("Locks released", keys=wanted)

    def subtrees(self, *paths: str | None) -> AbstractAsyncContextManager[None]:
        """Lock the subtrees rooted at ``paths`` (``None`` entries are ignored)."""
        return self.hold(path for path in paths if path)

    def questions(self, question_ids: Iterable[int]) -> AbstractAsyncContextManager[None]:
        return self.hold(question_key(question_id) for question_id in question_ids)


@lru_cache
def get_lock_manager() -> LockManager:
    """Process-wide lock manager."""
    return LockManager()
