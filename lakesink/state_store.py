from __future__ import annotations
from contextlib import contextmanager
from typing import Dict, List, Optional
import os, sqlite3, time

from lakesink.models import SinkState

SCHEMA = """
PRAGMA journal_mode=WAL;

-- one row per writer state snapshot
CREATE TABLE IF NOT EXISTS sink_state (
  job_id TEXT NOT NULL,
  writer_index INTEGER NOT NULL,
  checkpoint_id INTEGER NOT NULL,
  seq INTEGER NOT NULL,           -- position within the writer's state list
  commit_user TEXT NOT NULL,
  payload BLOB NOT NULL,          -- SinkState as JSON
  updated_at INTEGER NOT NULL,    -- unix epoch seconds
  PRIMARY KEY (job_id, writer_index, checkpoint_id, seq)
);
"""

class StateStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def connect(self):
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def save(self, job_id: str, writer_index: int, states: List[SinkState]) -> None:
        self.save_all(job_id, {writer_index: states})

    def save_all(self, job_id: str, states_by_writer: Dict[int, List[SinkState]]) -> None:
        """Store the states of several writers in one transaction: all of them or none."""
        now = int(time.time())
        with self.connect() as conn:
            for writer_index, states in sorted(states_by_writer.items()):
                for seq, st in enumerate(states):
                    conn.execute(
                        """
                        INSERT INTO sink_state(job_id, writer_index, checkpoint_id, seq, commit_user, payload, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(job_id, writer_index, checkpoint_id, seq) DO UPDATE SET
                          commit_user=excluded.commit_user,
                          payload=excluded.payload,
                          updated_at=excluded.updated_at
                        """,
                        (job_id, writer_index, st.checkpoint_id, seq, st.commit_user, st.to_bytes(), now)
                    )
            conn.commit()

    def latest_checkpoint_id(self, job_id: str) -> Optional[int]:
        with self.connect() as conn:
            row = conn.execute("SELECT MAX(checkpoint_id) FROM sink_state WHERE job_id=?", (job_id,)).fetchone()
        return int(row[0]) if row and row[0] is not None else None

    def load_latest(self, job_id: str, writer_index: int) -> List[SinkState]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT payload FROM sink_state
                WHERE job_id=? AND writer_index=?
                  AND checkpoint_id = (SELECT MAX(checkpoint_id) FROM sink_state WHERE job_id=? AND writer_index=?)
                ORDER BY seq ASC
                """,
                (job_id, writer_index, job_id, writer_index)
            ).fetchall()
        return [SinkState.from_bytes(r[0]) for r in rows]

    def prune(self, job_id: str, writer_index: int, keep_checkpoint_id: int) -> int:
        with self.connect() as conn:
            cur = conn.execute(
                "DELETE FROM sink_state WHERE job_id=? AND writer_index=? AND checkpoint_id < ?",
                (job_id, writer_index, keep_checkpoint_id)
            )
            conn.commit()
            return cur.rowcount

    def clear(self, job_id: str) -> int:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM sink_state WHERE job_id=?", (job_id,))
            conn.commit()
            return cur.rowcount
