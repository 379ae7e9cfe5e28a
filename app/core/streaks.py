"""
Per-user win streaks and the escalating streak multiplier.

A win moves streak N to N+1 with multiplier 2^(N+1); a loss resets the
streak to 0 and the multiplier to 1. max_streak never decreases.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from app.config import settings
from app.core.logger import get_logger

logger = get_logger("streaks")

LOCK_STRIPES = 64


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    max_streak: int = 0
    current_multiplier: Decimal = Decimal("1")

    def next(self, won: bool) -> "StreakState":
        if won:
            streak = self.current_streak + 1
            return StreakState(
                current_streak=streak,
                max_streak=max(self.max_streak, streak),
                current_multiplier=Decimal(2) ** streak,
            )
        return StreakState(0, self.max_streak, Decimal("1"))

    @classmethod
    def from_row(cls, row: Optional[Dict]) -> "StreakState":
        if not row:
            return cls()
        return cls(
            current_streak=row["current_streak"],
            max_streak=row["max_streak"],
            current_multiplier=Decimal(row["current_multiplier"]),
        )


class StreakTracker:
    """
    Owns StreakState for every user. Updates for one user are serialized by
    that user's lock so concurrent rounds cannot read the same streak twice.

    Locks come from a fixed pool keyed by user id, so memory stays bounded
    however many users play. Users sharing a stripe simply wait on each other.
    """

    def __init__(self, storage, lock_stripes: int = LOCK_STRIPES):
        self.storage = storage
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(lock_stripes)]

    def _lock_for(self, user_id: str) -> threading.Lock:
        return self._locks[hash(user_id) % len(self._locks)]

    @contextmanager
    def locked(self, user_id: str):
        lock = self._lock_for(user_id)
        with lock:
            yield

    def get_state(self, user_id: str) -> StreakState:
        return StreakState.from_row(self.storage.get_user_streak(user_id))

    def record(
        self,
        user_id: str,
        won: bool,
        persist_round: Callable = None,
    ) -> StreakState:
        """
        Apply one round's result to the user's streak.

        persist_round(cursor), when given, runs inside the same storage
        transaction as the streak write: both land or neither does.
        """
        with self.locked(user_id):
            with self.storage.transaction() as cursor:
                if persist_round is not None:
                    persist_round(cursor)

                current = StreakState.from_row(self.storage.get_user_streak(user_id, cursor=cursor))
                updated = current.next(won)
                self.storage.save_user_streak(
                    user_id,
                    updated.current_streak,
                    updated.max_streak,
                    updated.current_multiplier,
                    cursor=cursor,
                )

        logger.debug(
            f"Streak for {user_id}: {current.current_streak} -> {updated.current_streak} "
            f"(x{updated.current_multiplier})"
        )
        return updated

    def get_stats(self, user_id: str) -> Dict:
        return self.to_stats(self.get_state(user_id))

    @staticmethod
    def to_stats(state: StreakState) -> Dict:
        return {
            "currentStreak": state.current_streak,
            "maxStreak": state.max_streak,
            "currentMultiplier": str(state.current_multiplier),
            "maxWin": settings.fairness.max_win,
            "houseEdge": str(settings.fairness.house_edge * 100),
        }
