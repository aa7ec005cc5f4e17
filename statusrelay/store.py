"""
Destination store.

Persists registered destinations in a single sqlite3 table. Each call
opens its own connection so the store can be used from worker threads
(``asyncio.to_thread``) without sharing a connection between them.
"""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List

from statusrelay.models import DestinationRecord, MentionPolicy

_SCHEMA = """
CREATE TABLE IF NOT EXISTS statushooks (
    url          TEXT PRIMARY KEY,
    page         TEXT NOT NULL,
    gid          TEXT NOT NULL,
    cid          TEXT NOT NULL,
    uid          TEXT NOT NULL,
    rid          TEXT,
    pingonupdate INTEGER NOT NULL DEFAULT 0
)
"""


class StoreError(Exception):
    """The destination table could not be read or written."""


class DestinationStore:
    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._execute(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> int:
        try:
            with closing(self._connect()) as conn, conn:
                return conn.execute(sql, params).rowcount
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def load(self) -> List[DestinationRecord]:
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute("SELECT * FROM statushooks").fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return [
            DestinationRecord(
                hook=row["url"],
                page=row["page"],
                guild_id=row["gid"],
                channel_id=row["cid"],
                user_id=row["uid"],
                role_id=row["rid"],
                mention_policy=MentionPolicy.EVERY_UPDATE
                if row["pingonupdate"]
                else MentionPolicy.FIRST_UPDATE,
            )
            for row in rows
        ]

    def insert(self, record: DestinationRecord) -> bool:
        """Insert a record. False when the webhook is already stored."""
        try:
            return self._execute(
                "INSERT INTO statushooks (url, page, gid, cid, uid, rid, pingonupdate) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.hook,
                    record.page,
                    record.guild_id,
                    record.channel_id,
                    record.user_id,
                    record.role_id,
                    int(record.mention_policy is MentionPolicy.EVERY_UPDATE),
                ),
            ) == 1
        except StoreError as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                return False
            raise

    def delete(self, hook: str) -> bool:
        return self._execute("DELETE FROM statushooks WHERE url = ?", (hook,)) > 0
