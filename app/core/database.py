"""
Database module for persistent storage.
Uses SQLite for users, coinflip rounds, win streaks and fairness proofs.

Amounts are stored as TEXT holding exact decimal strings. Every write can
join an outer transaction by passing the cursor from `transaction()`, so a
round's completion and its streak update commit or roll back together.
"""

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional, List, Dict

from app.core.exceptions import PersistenceFailure, RoundStateError
from app.core.logger import get_logger
from app.config import settings

# Get logger for this module
logger = get_logger("database")

LEADERBOARD_PERIODS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
    "all": None,
}


class Database:
    """Thread-safe SQLite storage for SolFlip rounds, streaks and proofs."""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path) if db_path is not None else settings.paths.get_db_path()
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing database at {self.db_path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path), check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    def _init_db(self):
        with self.transaction() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    wallet_address TEXT UNIQUE NOT NULL,
                    public_key TEXT,
                    username TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS games (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    game_type TEXT NOT NULL DEFAULT 'coinflip',
                    bet_amount TEXT NOT NULL,
                    selected_side TEXT NOT NULL,
                    result TEXT,
                    won INTEGER,
                    multiplier TEXT,
                    win_amount TEXT,
                    vrf_proof TEXT,
                    vrf_seed TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    public_key TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
            """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_games_user ON games(user_id, created_at)"
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS game_streaks (
                    user_id TEXT PRIMARY KEY,
                    current_streak INTEGER NOT NULL DEFAULT 0,
                    max_streak INTEGER NOT NULL DEFAULT 0,
                    current_multiplier TEXT NOT NULL DEFAULT '1',
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS vrf_proofs (
                    game_id TEXT PRIMARY KEY,
                    proof TEXT NOT NULL,
                    seed TEXT NOT NULL,
                    committed_side TEXT NOT NULL,
                    message TEXT NOT NULL,
                    verified INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    verified_at TEXT,
                    FOREIGN KEY (game_id) REFERENCES games(id)
                )
            """
            )

    @contextmanager
    def transaction(self):
        """
        Yield a cursor; commit when the block exits cleanly, roll back on any
        exception. SQLite errors surface as PersistenceFailure.
        """
        with self._lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceFailure(f"Database error: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def _cursor(self, cursor=None):
        if cursor is not None:
            yield cursor
        else:
            with self.transaction() as own:
                yield own

    def close(self):
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # ==================== Users ====================

    def get_user_by_id(self, user_id: str) -> Optional[Dict]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        return dict(row) if row else None

    def get_user_by_wallet(self, wallet_address: str) -> Optional[Dict]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM users WHERE wallet_address = ?", (wallet_address,)
            )
            row = cursor.fetchone()
        return dict(row) if row else None

    def create_or_get_user(self, wallet_address: str, public_key: str = None) -> Dict:
        """Return the user for a wallet, creating it on first sight."""
        with self.transaction() as cursor:
            cursor.execute(
                "SELECT * FROM users WHERE wallet_address = ?", (wallet_address,)
            )
            row = cursor.fetchone()
            if row:
                return dict(row)

            user = {
                "id": str(uuid.uuid4()),
                "wallet_address": wallet_address,
                "public_key": public_key,
                "username": f"user_{wallet_address[-8:]}",
                "created_at": datetime.now().isoformat(),
            }
            cursor.execute(
                """
                INSERT INTO users (id, wallet_address, public_key, username, created_at)
                VALUES (:id, :wallet_address, :public_key, :username, :created_at)
            """,
                user,
            )

        logger.info(f"Created new user: {user['username']}")
        return user

    # ==================== Games ====================

    def create_game(
        self,
        user_id: str,
        bet_amount: Decimal,
        selected_side: str,
        public_key: str = None,
        game_type: str = "coinflip",
        game_id: str = None,
    ) -> Dict:
        """Create a round in 'pending' status. A caller-supplied game_id must be unused."""
        game = {
            "id": game_id or str(uuid.uuid4()),
            "user_id": user_id,
            "game_type": game_type,
            "bet_amount": str(bet_amount),
            "selected_side": selected_side,
            "status": "pending",
            "public_key": public_key,
            "created_at": datetime.now().isoformat(),
        }
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO games (id, user_id, game_type, bet_amount, selected_side,
                                   status, public_key, created_at)
                VALUES (:id, :user_id, :game_type, :bet_amount, :selected_side,
                        :status, :public_key, :created_at)
            """,
                game,
            )
        return self.get_game(game["id"])

    def get_game(self, game_id: str) -> Optional[Dict]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM games WHERE id = ?", (game_id,))
            row = cursor.fetchone()
        return _game_row(row) if row else None

    def complete_game(
        self,
        game_id: str,
        result: str,
        won: bool,
        multiplier: Decimal,
        win_amount: Decimal,
        proof: str,
        seed: str,
        cursor=None,
    ):
        """Move a round from 'pending' to 'completed'. The transition happens once."""
        with self._cursor(cursor) as cur:
            cur.execute(
                """
                UPDATE games SET
                    result = ?, won = ?, multiplier = ?, win_amount = ?,
                    vrf_proof = ?, vrf_seed = ?, status = 'completed', completed_at = ?
                WHERE id = ? AND status = 'pending'
            """,
                (
                    result,
                    1 if won else 0,
                    str(multiplier),
                    str(win_amount),
                    proof,
                    seed,
                    datetime.now().isoformat(),
                    game_id,
                ),
            )
            if cur.rowcount != 1:
                raise RoundStateError(f"Game {game_id} is not pending")

    def get_game_history(self, user_id: str, limit: int = 20, offset: int = 0) -> List[Dict]:
        """Rounds for a user, newest first."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM games WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ? OFFSET ?
            """,
                (user_id, limit, offset),
            )
            rows = cursor.fetchall()
        return [_game_row(row) for row in rows]

    # ==================== Streaks ====================

    def get_user_streak(self, user_id: str, cursor=None) -> Optional[Dict]:
        with self._cursor(cursor) as cur:
            cur.execute("SELECT * FROM game_streaks WHERE user_id = ?", (user_id,))
            row = cur.fetchone()
        return dict(row) if row else None

    def save_user_streak(
        self,
        user_id: str,
        current_streak: int,
        max_streak: int,
        current_multiplier: Decimal,
        cursor=None,
    ):
        with self._cursor(cursor) as cur:
            cur.execute(
                """
                INSERT INTO game_streaks (user_id, current_streak, max_streak, current_multiplier, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    current_streak = excluded.current_streak,
                    max_streak = excluded.max_streak,
                    current_multiplier = excluded.current_multiplier,
                    updated_at = excluded.updated_at
            """,
                (
                    user_id,
                    current_streak,
                    max_streak,
                    str(current_multiplier),
                    datetime.now().isoformat(),
                ),
            )

    # ==================== Proofs ====================

    def create_vrf_proof(
        self,
        game_id: str,
        proof: str,
        seed: str,
        committed_side: str,
        message: str,
        cursor=None,
    ):
        with self._cursor(cursor) as cur:
            cur.execute(
                """
                INSERT INTO vrf_proofs (game_id, proof, seed, committed_side, message, verified, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
            """,
                (game_id, proof, seed, committed_side, message, datetime.now().isoformat()),
            )

    def get_vrf_proof(self, game_id: str) -> Optional[Dict]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM vrf_proofs WHERE game_id = ?", (game_id,))
            row = cursor.fetchone()
        if not row:
            return None
        record = dict(row)
        record["verified"] = bool(record["verified"])
        return record

    def mark_proof_verified(self, game_id: str, proof: str) -> bool:
        """Set the verified flag, only for the proof that was actually recomputed."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE vrf_proofs SET verified = 1, verified_at = ?
                WHERE game_id = ? AND proof = ?
            """,
                (datetime.now().isoformat(), game_id, proof.lower()),
            )
            return cursor.rowcount == 1

    # ==================== Stats ====================

    def get_user_stats(self, user_id: str) -> Dict:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT win_amount FROM games WHERE user_id = ? AND status = 'completed'",
                (user_id,),
            )
            rows = cursor.fetchall()

        total_winnings = sum((Decimal(row["win_amount"] or "0") for row in rows), Decimal("0"))
        return {"total_games": len(rows), "total_winnings": total_winnings}

    def get_leaderboard(self, period: str = "daily", limit: int = 10) -> List[Dict]:
        """Users ranked by winnings over the period ('daily', 'weekly', 'monthly', 'all')."""
        if period not in LEADERBOARD_PERIODS:
            raise ValueError(f"Unknown leaderboard period: {period}")

        window = LEADERBOARD_PERIODS[period]
        query = """
            SELECT u.id AS user_id, u.username, g.win_amount FROM games g
            JOIN users u ON u.id = g.user_id
            WHERE g.status = 'completed' AND g.won = 1
        """
        params = ()
        if window is not None:
            query += " AND g.completed_at >= ?"
            params = ((datetime.now() - window).isoformat(),)

        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()

        # keyed by user id; usernames are not unique
        totals: Dict[str, Decimal] = {}
        usernames: Dict[str, str] = {}
        for row in rows:
            user_id = row["user_id"]
            usernames[user_id] = row["username"]
            totals[user_id] = totals.get(user_id, Decimal("0")) + Decimal(row["win_amount"])

        ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            {"username": _mask_username(usernames[user_id]), "total_winnings": total, "position": i + 1}
            for i, (user_id, total) in enumerate(ranked)
        ]


def _game_row(row) -> Dict:
    game = dict(row)
    if game.get("won") is not None:
        game["won"] = bool(game["won"])
    return game


def _mask_username(username: str) -> str:
    if len(username) <= 6:
        return username[:2] + "**"
    return f"{username[:4]}**{username[-4:]}"

