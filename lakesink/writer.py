"""Sink writer: the per-subtask side of the two-phase commit.

Lifecycle per checkpoint, driven by one thread:

    write(record)*  ->  prepare_commit(cid)  ->  snapshot_state(cid)

prepare_commit() flushes the write session and appends the resulting commit
messages to the pending buffer; snapshot_state() moves the buffer into the
returned SinkState. A writer built from recovered states re-commits their
messages before accepting rows; the table skips identifiers the same
commit user already committed, so the replay is idempotent.
"""

from __future__ import annotations
from typing import Callable, List, Optional
import logging
import pyarrow as pa

from lakesink.bucket import BucketAssigner
from lakesink.config import SinkConfig
from lakesink.converter import convert_row
from lakesink.errors import CommitReplayError, PreCommitFailure, RecordWriteError, WriterCloseError
from lakesink.identity import IdentitySource, RandomIdentitySource
from lakesink.models import CommitInfo, CommitMessage, InternalRow, Record, SinkState, WriterContext
from lakesink.options import BucketMode, WriteMode
from lakesink.table.file_store import FileStoreTable, TableSchema
from lakesink.table.io_manager import IOManager
from lakesink.table.write import TableWriteSession

log = logging.getLogger(__name__)

RowConverter = Callable[[Record, pa.Schema, TableSchema], InternalRow]

class SinkWriter:
    def __init__(
        self,
        context: WriterContext,
        table: FileStoreTable,
        row_type: pa.Schema,
        write_mode: WriteMode,
        sink_config: Optional[SinkConfig] = None,
        states: Optional[List[SinkState]] = None,
        identity_source: Optional[IdentitySource] = None,
        converter: RowConverter = convert_row,
    ):
        sink_config = sink_config or SinkConfig()
        self.context = context
        self.table = table
        self.row_type = row_type
        self.write_mode = write_mode
        self.table_schema = table.schema
        self._convert = converter
        self._committables: List[CommitMessage] = []
        self._closed = False

        self.changelog_producer = table.options.changelog_producer
        if sink_config.changelog_producer is not None and sink_config.changelog_producer != self.changelog_producer:
            log.warning("configured changelog-producer %r does not match table %s (%r); using the table's setting",
                        sink_config.changelog_producer.value, table.name, self.changelog_producer.value)

        identity_source = identity_source or RandomIdentitySource(table.options.commit_user_prefix)
        self.commit_user = identity_source.new_identity()
        self.checkpoint_id: Optional[int] = None
        if states:
            self.commit_user = states[0].commit_user
            self.checkpoint_id = states[0].checkpoint_id

        self.bucket_mode = table.bucket_mode()
        if self.bucket_mode == BucketMode.BUCKET_UNAWARE and table.options.bucket == -1:
            log.warning("append-only table %s does not support dynamic buckets; writing without a bucket assigner", table.name)
        self.bucket_assigner: Optional[BucketAssigner] = None
        if self.bucket_mode.dynamic:
            self.bucket_assigner = BucketAssigner(table, context.parallelism, context.index)

        self.session = TableWriteSession(table, self.commit_user, write_mode, IOManager.create(sink_config.changelog_tmp_path))

        if states:
            self._recommit(states)

    @property
    def dynamic_bucket(self) -> bool:
        return self.bucket_assigner is not None

    @property
    def pending_committables(self) -> List[CommitMessage]:
        return list(self._committables)

    def _recommit(self, states: List[SinkState]) -> None:
        messages = [m for s in states for m in s.committables]
        log.info("writer %s re-committing %s messages from %s recovered states (user=%s checkpoint=%s)",
                 self.context.index, len(messages), len(states), self.commit_user, self.checkpoint_id)
        try:
            with self.session.new_commit() as table_commit:
                if self.write_mode == WriteMode.BATCH:
                    table_commit.commit_terminal(messages)
                else:
                    table_commit.commit_at_checkpoint(self.checkpoint_id, messages)
        except Exception as exc:
            try:
                self.session.close()
            except Exception:
                log.error("failed to close write session of writer %s after a failed re-commit", self.context.index, exc_info=True)
            raise CommitReplayError(f"failed to re-commit recovered state of {self.commit_user}") from exc

    def write(self, record: Record) -> None:
        try:
            row = self._convert(record, self.row_type, self.table_schema)
            if self.bucket_assigner is not None:
                self.session.write(row, self.bucket_assigner.assign(row))
            else:
                self.session.write(row)
        except Exception as exc:
            raise RecordWriteError(f"record {record.fields!r} failed to be written", record=record) from exc

    def prepare_commit(self, checkpoint_id: Optional[int] = None) -> Optional[CommitInfo]:
        if checkpoint_id is None:
            return None
        try:
            if self.write_mode == WriteMode.BATCH:
                messages = self.session.flush(wait_compaction=True)
            else:
                messages = self.session.flush(wait_compaction=self.wait_compaction())
        except Exception as exc:
            raise PreCommitFailure(f"pre-commit of checkpoint {checkpoint_id} failed", checkpoint_id=checkpoint_id) from exc
        self._committables.extend(messages)
        return CommitInfo(commit_messages=list(messages), checkpoint_id=checkpoint_id, commit_user=self.commit_user)

    def wait_compaction(self) -> bool:
        return self.changelog_producer.requires_compaction

    def snapshot_state(self, checkpoint_id: int) -> List[SinkState]:
        state = SinkState(commit_user=self.commit_user, checkpoint_id=checkpoint_id, committables=list(self._committables))
        self._committables.clear()
        return [state]

    def abort_prepare(self) -> None:
        pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.session.close()
        except Exception as exc:
            log.error("failed to close table write session of writer %s", self.context.index, exc_info=True)
            raise WriterCloseError(f"failed to close writer {self.context.index} of {self.table.name}") from exc
        finally:
            self._committables.clear()
            if self.bucket_assigner is not None:
                log.debug("bucket assigner stats: %s", self.bucket_assigner.stats())
