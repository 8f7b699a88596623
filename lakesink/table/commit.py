from __future__ import annotations
from typing import List, Sequence
import logging, time

from lakesink.models import CommitMessage, Snapshot
from lakesink.options import BATCH_COMMIT_IDENTIFIER

log = logging.getLogger(__name__)

class TableCommit:
    """Appends snapshots for one commit user.

    Identifiers already committed by the same user are skipped, so replaying
    a commit after a restart never produces a second snapshot for it.
    """

    def __init__(self, table, commit_user: str, max_attempts: int = 100):
        self.table = table
        self.commit_user = commit_user
        self.max_attempts = max_attempts

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self) -> None:
        pass

    def filter_committed(self, identifiers: Sequence[int]) -> List[int]:
        last = self.table.snapshot_manager.latest_snapshot_of_user(self.commit_user)
        if last is None:
            return list(identifiers)
        return [i for i in identifiers if i > last.commit_identifier]

    def commit_terminal(self, messages: Sequence[CommitMessage]) -> bool:
        return self._commit(BATCH_COMMIT_IDENTIFIER, messages)

    def commit_at_checkpoint(self, checkpoint_id: int, messages: Sequence[CommitMessage]) -> bool:
        return self._commit(checkpoint_id, messages)

    def _commit(self, identifier: int, messages: Sequence[CommitMessage]) -> bool:
        delta = [m for m in messages if not m.is_empty()]
        if not delta:
            log.debug("nothing to commit for %s identifier=%s", self.commit_user, identifier)
            return False
        if not self.filter_committed([identifier]):
            log.info("identifier %s of %s is already committed, skipping", identifier, self.commit_user)
            return False

        sm = self.table.snapshot_manager
        for _ in range(self.max_attempts):
            latest = sm.latest_snapshot_id() or 0
            snap = Snapshot(
                id=latest + 1,
                schema_id=self.table.schema.id,
                commit_user=self.commit_user,
                commit_identifier=identifier,
                time_millis=int(time.time() * 1000),
                delta=list(delta),
            )
            if sm.try_commit(snap):
                log.info("committed snapshot %s (user=%s identifier=%s files=%s)", snap.id, self.commit_user,
                         identifier, sum(len(m.new_files) for m in delta))
                return True
        raise RuntimeError(f"could not claim a snapshot id after {self.max_attempts} attempts")
