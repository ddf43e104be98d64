# SQLite metadata store: one row per indexed question.
#
#   qna(id INTEGER PRIMARY KEY AUTOINCREMENT, group_id, question, answer, created_at, updated_at)
#
# The file lives inside the index directory so it is pushed to / pulled from
# the object store together with the index files it describes.

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .errors import NotFoundError, TransientIOError

logger = logging.getLogger(__name__)

DB_FILENAME = "metadata.sqlite3"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS qna (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id    TEXT NOT NULL,
    question    TEXT NOT NULL,
    answer      TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_qna_group ON qna(group_id);
CREATE INDEX IF NOT EXISTS idx_qna_question ON qna(question);
"""


@dataclass
class MetadataRow:
    id: int
    group_id: str
    question: str
    answer: str
    created_at: str
    updated_at: str


class MetadataStore:
    def __init__(self, db_path: str | os.PathLike, timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

    # -------------------------
    # Connection
    # -------------------------
    def open(self) -> "MetadataStore":
        with self._lock:
            if self._conn is None:
                os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
                conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.executescript(_SCHEMA)
                conn.commit()
                self._conn = conn
                logger.info("DB:%s opened", self.db_path)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def reopen(self) -> None:
        """Re-read the file after it was replaced on disk (e.g. by a pull)."""
        with self._lock:
            self.close()
            self.open()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    def _execute(self, sql: str, params: Sequence = (), retries: int = 8, delay: float = 0.25):
        """Execute SQL with brief retries on 'database is locked'."""
        conn = self._get_conn()
        for attempt in range(retries):
            try:
                return conn.execute(sql, params)
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "database is locked" in msg or "database is busy" in msg:
                    if attempt == retries - 1:
                        raise TransientIOError(f"SQLite busy: {self.db_path}") from e
                    time.sleep(delay)
                    continue
                raise

    # -------------------------
    # Rows
    # -------------------------
    def insert(self, group_id: str, question: str, answer: str) -> int:
        with self._lock:
            cur = self._execute(
                """
                INSERT INTO qna (group_id, question, answer, created_at, updated_at)
                VALUES (?, ?, ?, DATETIME('now'), DATETIME('now'))
                """,
                (group_id, question, answer),
            )
            self._get_conn().commit()
            return int(cur.lastrowid)

    def insert_many(self, group_id: str, pairs: Sequence[Tuple[str, str]]) -> list[int]:
        """Insert (question, answer) pairs in one transaction; ids come back in order."""
        ids: list[int] = []
        with self._lock:
            conn = self._get_conn()
            try:
                for question, answer in pairs:
                    cur = self._execute(
                        """
                        INSERT INTO qna (group_id, question, answer, created_at, updated_at)
                        VALUES (?, ?, ?, DATETIME('now'), DATETIME('now'))
                        """,
                        (group_id, question, answer),
                    )
                    ids.append(int(cur.lastrowid))
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
        return ids

    def get_by_id(self, row_id: int) -> MetadataRow:
        with self._lock:
            row = self._execute(
                "SELECT id, group_id, question, answer, created_at, updated_at FROM qna WHERE id = ?",
                (int(row_id),),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"No metadata row with id {row_id}")
        return MetadataRow(**dict(row))

    def find_by_question(self, question: str, group_id: Optional[str] = None) -> Optional[MetadataRow]:
        sql = "SELECT id, group_id, question, answer, created_at, updated_at FROM qna WHERE question = ?"
        params: list = [question]
        if group_id is not None:
            sql += " AND group_id = ?"
            params.append(group_id)
        with self._lock:
            row = self._execute(sql + " ORDER BY id LIMIT 1", params).fetchone()
        return MetadataRow(**dict(row)) if row else None

    def delete_by_question(self, question: str, group_id: Optional[str] = None) -> int:
        """Delete the oldest row with this question and return its id."""
        with self._lock:
            row = self.find_by_question(question, group_id)
            if row is None:
                raise NotFoundError(f"No metadata row for question {question!r}")
            self._execute("DELETE FROM qna WHERE id = ?", (row.id,))
            self._get_conn().commit()
            return row.id

    def delete_by_id(self, row_id: int) -> None:
        with self._lock:
            cur = self._execute("DELETE FROM qna WHERE id = ?", (int(row_id),))
            self._get_conn().commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"No metadata row with id {row_id}")

    def delete_many(self, row_ids: Sequence[int]) -> None:
        with self._lock:
            self._get_conn().executemany("DELETE FROM qna WHERE id = ?", [(int(i),) for i in row_ids])
            self._get_conn().commit()

    def count(self, group_id: Optional[str] = None) -> int:
        with self._lock:
            if group_id is None:
                row = self._execute("SELECT COUNT(*) FROM qna").fetchone()
            else:
                row = self._execute("SELECT COUNT(*) FROM qna WHERE group_id = ?", (group_id,)).fetchone()
        return int(row[0]) if row else 0
