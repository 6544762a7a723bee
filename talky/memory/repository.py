# talky/memory/repository.py

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Union

from talky.memory.db import get_connection, init_db
from talky.memory.models import Modification, PromptRecord, StoredModification, now_iso
from talky.utils.logging import get_logger

logger = get_logger(__name__)


class StoreError(RuntimeError):
    """A persistence call failed; the current turn must not be recorded."""


def _row_to_modification(row: sqlite3.Row) -> StoredModification:
    return StoredModification(
        id=row["id"],
        created_at=row["created_at"],
        type=row["type"],
        description=row["description"],
        pending=bool(row["pending"]),
        consumed_at=row["consumed_at"],
    )


class PromptRepository:
    """
    Durable per-user prompt records backed by SQLite.

    Every call takes the user id explicitly. A record is created lazily the
    first time a user id is touched and is never deleted. Pending
    modifications are a flagged subset of the history table, so appending to
    history and prepending to the pending list is a single INSERT.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = str(db_path)
        try:
            init_db(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize prompt store at {self.db_path}") from e

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreError("Could not open the prompt store.") from e
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(f"Prompt store operation failed: {e}") from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @staticmethod
    def _ensure_record(conn: sqlite3.Connection, user_id: str) -> None:
        ts = now_iso()
        conn.execute(
            """
            INSERT OR IGNORE INTO prompt_records (user_id, prompt, created_at, updated_at)
            VALUES (?, '', ?, ?)
            """,
            (user_id, ts, ts),
        )

    # ---------- reads ----------

    def get_record(self, user_id: str) -> PromptRecord:
        """
        Read the full record, creating an empty one if the user id is new.
        """
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            rec = conn.execute(
                """
                SELECT user_id, prompt, flush_failures, last_flush_size
                FROM prompt_records
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
            rows = conn.execute(
                """
                SELECT id, created_at, type, description, pending, consumed_at
                FROM modifications
                WHERE user_id = ?
                ORDER BY id ASC
                """,
                (user_id,),
            ).fetchall()

        history = [_row_to_modification(r) for r in rows]
        pending = [m for m in reversed(history) if m.pending]
        return PromptRecord(
            user_id=rec["user_id"],
            prompt=rec["prompt"] or "",
            pending_modifications=pending,
            history=history,
            flush_failures=int(rec["flush_failures"] or 0),
            last_flush_size=int(rec["last_flush_size"] or 0),
        )

    def get_prompt(self, user_id: str) -> str:
        return self.get_record(user_id).prompt

    def get_pending_modifications(self, user_id: str) -> List[StoredModification]:
        return self.get_record(user_id).pending_modifications

    def get_history(self, user_id: str) -> List[StoredModification]:
        return self.get_record(user_id).history

    # ---------- writes ----------

    def save_modification(self, user_id: str, modification: Modification) -> StoredModification:
        """
        Record a modification as both the newest pending entry and the newest
        history entry, atomically.
        """
        created_at = now_iso()
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            cur = conn.execute(
                """
                INSERT INTO modifications (user_id, created_at, type, description, pending)
                VALUES (?, ?, ?, ?, 1)
                """,
                (user_id, created_at, modification.type, modification.description),
            )
            mod_id = cur.lastrowid
            conn.execute(
                "UPDATE prompt_records SET updated_at = ? WHERE user_id = ?",
                (created_at, user_id),
            )

        logger.info("[store] user_id=%s saved modification id=%s type=%r", user_id, mod_id, modification.type)
        return StoredModification(
            id=mod_id,
            created_at=created_at,
            type=modification.type,
            description=modification.description,
            pending=True,
        )

    def update_prompt(self, user_id: str, prompt: str) -> None:
        ts = now_iso()
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            conn.execute(
                "UPDATE prompt_records SET prompt = ?, updated_at = ? WHERE user_id = ?",
                (prompt, ts, user_id),
            )
        logger.info("[store] user_id=%s prompt updated chars=%d", user_id, len(prompt))

    def clear_pending_modifications(
        self,
        user_id: str,
        ids: Optional[Sequence[int]] = None,
    ) -> int:
        """
        Mark pending modifications as consumed (history keeps them).
        With `ids`, only those entries are cleared; otherwise all pending ones.
        Returns the number of entries cleared.
        """
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            return self._clear_pending(conn, user_id, ids, now_iso())

    def replace_pending_modifications(self, user_id: str, ids: Sequence[int]) -> List[StoredModification]:
        """
        Make exactly `ids` the pending set. Pending entries always live in
        history, so this flips flags and never adds or removes history rows;
        ids that are not in this user's history are ignored.
        Returns the new pending list (newest first).
        """
        ts = now_iso()
        wanted = set(ids)
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            rows = conn.execute(
                "SELECT id, pending FROM modifications WHERE user_id = ?",
                (user_id,),
            ).fetchall()
            for row in rows:
                keep = row["id"] in wanted
                if keep and not row["pending"]:
                    conn.execute(
                        "UPDATE modifications SET pending = 1, consumed_at = NULL WHERE id = ?",
                        (row["id"],),
                    )
                elif not keep and row["pending"]:
                    conn.execute(
                        "UPDATE modifications SET pending = 0, consumed_at = ? WHERE id = ?",
                        (ts, row["id"]),
                    )
        return self.get_pending_modifications(user_id)

    @staticmethod
    def _clear_pending(
        conn: sqlite3.Connection,
        user_id: str,
        ids: Optional[Sequence[int]],
        ts: str,
    ) -> int:
        if ids is None:
            cur = conn.execute(
                """
                UPDATE modifications SET pending = 0, consumed_at = ?
                WHERE user_id = ? AND pending = 1
                """,
                (ts, user_id),
            )
            return cur.rowcount

        cleared = 0
        for mod_id in ids:
            cur = conn.execute(
                """
                UPDATE modifications SET pending = 0, consumed_at = ?
                WHERE user_id = ? AND id = ? AND pending = 1
                """,
                (ts, user_id, mod_id),
            )
            cleared += cur.rowcount
        return cleared

    def commit_regeneration(self, user_id: str, prompt: str, consumed_ids: Sequence[int]) -> int:
        """
        Store a regenerated prompt and clear the modifications it consumed, in
        one transaction. Flush failure counters are reset.
        """
        ts = now_iso()
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            conn.execute(
                """
                UPDATE prompt_records
                SET prompt = ?, flush_failures = 0, last_flush_size = 0, updated_at = ?
                WHERE user_id = ?
                """,
                (prompt, ts, user_id),
            )
            cleared = self._clear_pending(conn, user_id, list(consumed_ids), ts)

        logger.info("[store] user_id=%s regeneration committed cleared=%d prompt_chars=%d",
                    user_id, cleared, len(prompt))
        return cleared

    def record_flush_failure(self, user_id: str, attempted_size: int) -> int:
        """
        Count a failed regeneration attempt. Returns the consecutive failure count.
        """
        with self._transaction() as conn:
            self._ensure_record(conn, user_id)
            conn.execute(
                """
                UPDATE prompt_records
                SET flush_failures = flush_failures + 1, last_flush_size = ?, updated_at = ?
                WHERE user_id = ?
                """,
                (attempted_size, now_iso(), user_id),
            )
            row = conn.execute(
                "SELECT flush_failures FROM prompt_records WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return int(row["flush_failures"])
