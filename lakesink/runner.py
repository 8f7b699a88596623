from __future__ import annotations
from typing import Iterable, List, Optional
import logging
import pyarrow as pa

from lakesink.committer import SinkCommitter
from lakesink.config import SinkConfig
from lakesink.converter import convert_row
from lakesink.errors import RecordWriteError, WriterCloseError
from lakesink.identity import IdentitySource
from lakesink.keys import key_hash
from lakesink.models import Record, WriterContext
from lakesink.options import BucketMode, WriteMode
from lakesink.state_store import StateStore
from lakesink.table.file_store import FileStoreTable
from lakesink.writer import SinkWriter

log = logging.getLogger(__name__)

class SinkRunner:
    """Drives `parallelism` writers through checkpoints the way a stream job would.

    A checkpoint flushes every writer, persists their states, then commits.
    A run that dies between persisting and committing is completed by the
    re-commit the restarted writers do on construction.

    Rows of a primary-key table are routed by the hash of their key (the same
    key the bucket assigner owns by), so every version of a key goes through
    one writer and gets increasing sequence numbers. Append-only rows are
    spread round-robin.
    """

    def __init__(self, table: FileStoreTable, row_type: pa.Schema, write_mode: WriteMode,
                 sink_config: Optional[SinkConfig] = None, parallelism: int = 1, checkpoint_interval: int = 1000,
                 state_store: Optional[StateStore] = None, job_id: str = "lakesink",
                 identity_source: Optional[IdentitySource] = None):
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self.table = table
        self.row_type = row_type
        self.write_mode = write_mode
        self.sink_config = sink_config or SinkConfig()
        self.parallelism = parallelism
        self.checkpoint_interval = checkpoint_interval
        self.state_store = state_store
        self.job_id = job_id
        self.identity_source = identity_source
        self.committer = SinkCommitter(table, write_mode)

        schema = table.schema
        route_keys: List[str] = []
        if table.primary_key_table:
            if table.bucket_mode() == BucketMode.CROSS_PARTITION:
                route_keys = list(schema.primary_keys)
            else:
                route_keys = schema.trimmed_primary_keys() or list(schema.primary_keys)
        self._route_idx = [schema.index_of(k) for k in route_keys]

        self.writers: List[SinkWriter] = []
        self.checkpoint_id = 0
        self.records_written = 0
        self._since_checkpoint = 0

    def start(self) -> None:
        if self.state_store is not None:
            self.checkpoint_id = self.state_store.latest_checkpoint_id(self.job_id) or 0
        for i in range(self.parallelism):
            states = self.state_store.load_latest(self.job_id, i) if self.state_store is not None else []
            ctx = WriterContext(index=i, parallelism=self.parallelism)
            self.writers.append(SinkWriter(ctx, self.table, self.row_type, self.write_mode, self.sink_config,
                                           states=states or None, identity_source=self.identity_source))
        log.info("started %s writers for %s (%s, resuming after checkpoint %s)", self.parallelism, self.table.name,
                 self.write_mode.value, self.checkpoint_id)

    def _route(self, record: Record) -> SinkWriter:
        if not self._route_idx or self.parallelism == 1:
            return self.writers[self.records_written % self.parallelism]
        try:
            row = convert_row(record, self.row_type, self.table.schema)
        except ValueError as exc:
            raise RecordWriteError(f"record {record.fields!r} cannot be routed", record=record) from exc
        return self.writers[key_hash([row.values[i] for i in self._route_idx]) % self.parallelism]

    def write(self, record: Record) -> None:
        self._route(record).write(record)
        self.records_written += 1
        self._since_checkpoint += 1
        if (self.write_mode == WriteMode.STREAMING and self.checkpoint_interval
                and self._since_checkpoint >= self.checkpoint_interval):
            self.checkpoint()

    def run(self, records: Iterable[Record]) -> int:
        self.start()
        try:
            for r in records:
                self.write(r)
            self.finish()
        finally:
            self.close()
        return self.records_written

    def checkpoint(self) -> int:
        cid = self.checkpoint_id + 1
        infos = [w.prepare_commit(cid) for w in self.writers]
        states = {w.context.index: w.snapshot_state(cid) for w in self.writers}
        # a checkpoint exists for recovery only once every writer's state is stored
        if self.state_store is not None:
            self.state_store.save_all(self.job_id, states)
        committed = self.committer.commit(infos)
        if self.state_store is not None:
            for w in self.writers:
                self.state_store.prune(self.job_id, w.context.index, cid)
        self.checkpoint_id = cid
        self._since_checkpoint = 0
        log.info("checkpoint %s complete: %s snapshots", cid, committed)
        return committed

    def finish(self) -> None:
        self.checkpoint()
        if self.write_mode == WriteMode.BATCH and self.state_store is not None:
            self.state_store.clear(self.job_id)

    def close(self) -> None:
        failed = 0
        for w in self.writers:
            try:
                w.close()
            except WriterCloseError:
                failed += 1
        if failed:
            log.warning("%s of %s writers failed to close cleanly", failed, len(self.writers))
