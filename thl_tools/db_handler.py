import sqlite3
from pathlib import Path
from typing import List, Optional, Tuple
import os

DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".thl_tools", "thl_tools.db")


class DbHandler:
    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Open the settings database, creating it and its tables if needed."""
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.cursor = self.conn.cursor()
        self._create_tables()

    def _create_tables(self):
        """Create necessary tables if they don't exist."""
        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS game_config (
                id INTEGER PRIMARY KEY,
                game_path TEXT NOT NULL
            )
        """)

        self.cursor.execute("""
            CREATE TABLE IF NOT EXISTS backups (
                id INTEGER PRIMARY KEY,
                original_path TEXT NOT NULL,
                backup_path TEXT NOT NULL UNIQUE,
                created TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self.conn.commit()

    def set_game_path(self, path: str) -> None:
        """Set or update the game path."""
        self.cursor.execute("DELETE FROM game_config")
        self.cursor.execute("INSERT INTO game_config (game_path) VALUES (?)", (path,))
        self.conn.commit()

    def get_game_path(self) -> Optional[str]:
        """Get the configured game path."""
        self.cursor.execute("SELECT game_path FROM game_config LIMIT 1")
        result = self.cursor.fetchone()
        return result[0] if result else None

    def add_backup(self, original_path: str, backup_path: str) -> None:
        """Remember that `original_path` was moved aside to `backup_path`."""
        self.cursor.execute("""
            INSERT OR REPLACE INTO backups (original_path, backup_path)
            VALUES (?, ?)
        """, (original_path, backup_path))
        self.conn.commit()

    def get_backups(self) -> List[Tuple[str, str]]:
        """All recorded (original, backup) pairs, oldest first."""
        self.cursor.execute("""
            SELECT original_path, backup_path
            FROM backups
            ORDER BY id
        """)
        return self.cursor.fetchall()

    def get_latest_backup(self, original_path: str) -> Optional[str]:
        self.cursor.execute("""
            SELECT backup_path
            FROM backups
            WHERE original_path = ?
            ORDER BY id DESC
            LIMIT 1
        """, (original_path,))
        result = self.cursor.fetchone()
        return result[0] if result else None

    def remove_backup(self, backup_path: str) -> None:
        self.cursor.execute("DELETE FROM backups WHERE backup_path = ?", (backup_path,))
        self.conn.commit()

    def close(self):
        """Close the database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
