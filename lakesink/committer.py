from __future__ import annotations
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from lakesink.errors import CommitFailure
from lakesink.models import CommitInfo, CommitMessage
from lakesink.options import WriteMode
from lakesink.table.commit import TableCommit
from lakesink.table.file_store import FileStoreTable

log = logging.getLogger(__name__)

class SinkCommitter:
    """Applies the commit infos collected from all writers once a checkpoint completes."""

    def __init__(self, table: FileStoreTable, write_mode: WriteMode):
        self.table = table
        self.write_mode = write_mode

    def commit(self, commit_infos: Sequence[Optional[CommitInfo]]) -> int:
        grouped: Dict[Tuple[int, str], List[CommitMessage]] = {}
        for info in commit_infos:
            if info is None:
                continue
            cid = -1
            if self.write_mode == WriteMode.STREAMING and info.checkpoint_id is not None:
                cid = info.checkpoint_id
            grouped.setdefault((cid, info.commit_user), []).extend(info.commit_messages)

        committed = 0
        for (cid, user), messages in sorted(grouped.items()):
            try:
                with TableCommit(self.table, user) as table_commit:
                    if self.write_mode == WriteMode.BATCH:
                        ok = table_commit.commit_terminal(messages)
                    else:
                        ok = table_commit.commit_at_checkpoint(cid, messages)
            except Exception as exc:
                raise CommitFailure(f"commit of checkpoint {cid} for {user} failed") from exc
            committed += int(ok)
        log.info("committed %s snapshots from %s commit infos", committed, len(commit_infos))
        return committed
