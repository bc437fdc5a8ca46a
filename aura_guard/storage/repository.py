"""
Repository pattern for data access.

Handles the durable tier: conversation turns and usage snapshots.
"""

from datetime import date, datetime, timedelta
from typing import Dict, List

from .db import DEFAULT_DB_PATH, get_connection
from .models import ConversationTurn, UsageSnapshot


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the durable tables if they don't exist.

    ``conversation_turn`` is append-only; ``usage_snapshot`` holds one row
    per (date, api_type) that is overwritten as the day's count grows.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversation_turn (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_conversation_turn_scope
            ON conversation_turn (user_id, platform, chat_id, timestamp)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_snapshot (
                date TEXT NOT NULL,
                api_type TEXT NOT NULL,
                count INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (date, api_type)
            )
        """)
        conn.commit()
    finally:
        conn.close()


class ConversationRepository:
    """Durable, authoritative store of conversation turns."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append_turn(self, turn: ConversationTurn) -> None:
        """Append a single turn.

        Args:
            turn: The turn to persist
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO conversation_turn
                (user_id, platform, chat_id, role, content, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                turn.user_id,
                turn.platform,
                turn.chat_id,
                turn.role,
                turn.content,
                turn.timestamp.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()

    def append_turns(self, turns: List[ConversationTurn]) -> None:
        """Append several turns in one transaction."""
        if not turns:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany("""
                INSERT INTO conversation_turn
                (user_id, platform, chat_id, role, content, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (t.user_id, t.platform, t.chat_id, t.role, t.content, t.timestamp.isoformat())
                for t in turns
            ])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def recent_turns(
        self,
        user_id: str,
        platform: str,
        chat_id: str,
        limit: int = 10
    ) -> List[ConversationTurn]:
        """Get the most recent turns of a conversation.

        Args:
            user_id: Platform user identifier
            platform: Platform name
            chat_id: Chat/channel identifier
            limit: Maximum number of turns to return

        Returns:
            Turns in chronological order (oldest first)
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT user_id, platform, chat_id, role, content, timestamp
                FROM conversation_turn
                WHERE user_id = ? AND platform = ? AND chat_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (user_id, platform, chat_id, limit))
            turns = [
                ConversationTurn(
                    user_id=row[0],
                    platform=row[1],
                    chat_id=row[2],
                    role=row[3],
                    content=row[4],
                    timestamp=datetime.fromisoformat(row[5]),
                )
                for row in cursor.fetchall()
            ]
            turns.reverse()
            return turns
        finally:
            conn.close()


class UsageRepository:
    """Durable snapshots of global daily usage."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def save_snapshot(self, day: str, counts: Dict[str, int]) -> None:
        """Upsert the counts of ``day`` atomically.

        Args:
            day: ISO date (YYYY-MM-DD)
            counts: Global count per api type
        """
        if not counts:
            return

        now = datetime.now().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany("""
                INSERT INTO usage_snapshot (date, api_type, count, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(date, api_type)
                DO UPDATE SET count = excluded.count, updated_at = excluded.updated_at
            """, [(day, api_type, count, now) for api_type, count in counts.items()])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_snapshot(self, day: str) -> Dict[str, int]:
        """Get the saved counts of ``day`` (empty if none)."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT api_type, count FROM usage_snapshot WHERE date = ?",
                (day,)
            )
            return {row[0]: row[1] for row in cursor.fetchall()}
        finally:
            conn.close()

    def history(self, days: int = 7) -> List[UsageSnapshot]:
        """Get snapshots of the last ``days`` days, newest first.

        Args:
            days: Number of days to look back, today included

        Returns:
            List of snapshots ordered by date (newest first), then api type
        """
        cutoff = (date.today() - timedelta(days=days - 1)).isoformat()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT date, api_type, count, updated_at
                FROM usage_snapshot
                WHERE date >= ?
                ORDER BY date DESC, api_type ASC
            """, (cutoff,))
            return [
                UsageSnapshot(
                    date=row[0],
                    api_type=row[1],
                    count=row[2],
                    updated_at=datetime.fromisoformat(row[3]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
