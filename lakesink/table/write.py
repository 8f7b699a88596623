"""Write session over a FileStoreTable.

Rows are buffered per (partition, bucket). Each row gets a sequence number
that grows per bucket, starting after the bucket's highest committed number,
so later rows win when primary-key rows are merged. When the buffered row
count reaches `write-buffer-rows` the largest bucket buffer is spilled to a
Parquet run under the session's IOManager.

flush() turns every buffer into one data file and returns one CommitMessage
per touched bucket. With changelog-producer `lookup` or `full-compaction`,
the changelog of a flushed file is derived on a worker thread by comparing it
against the bucket's earlier files; flush(wait_compaction=True) blocks until
every such task is done, otherwise unfinished tasks are reported by a later
flush. A BATCH session flushes once, so its flush always waits.
"""

from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Tuple
import logging, os, uuid
import pyarrow as pa
import pyarrow.parquet as pq

from lakesink.keys import key_hash, partition_value
from lakesink.models import CommitMessage, DataFileMeta, InternalRow
from lakesink.options import BucketMode, ChangelogProducer, RowKind, WriteMode
from lakesink.table.commit import TableCommit
from lakesink.table.file_store import KIND_COLUMN, SEQUENCE_COLUMN, BucketId, FileStoreTable
from lakesink.table.io_manager import IOManager

log = logging.getLogger(__name__)

# (kind, sequence_number, values)
BufferedRow = Tuple[int, int, Tuple[Any, ...]]

class _BucketBuffer:
    def __init__(self, partition: Dict[str, str], bucket: int):
        self.partition = partition
        self.bucket = bucket
        self.rows: List[BufferedRow] = []
        self.spills: List[str] = []

def _sort_key(values: Tuple[Any, ...]) -> tuple:
    return tuple((0, "") if v is None else (1, v) for v in values)

class TableWriteSession:
    def __init__(self, table: FileStoreTable, commit_user: str, write_mode: WriteMode, io_manager: IOManager):
        self.table = table
        self.schema = table.schema
        self.options = table.options
        self.commit_user = commit_user
        self.write_mode = write_mode
        self.io_manager = io_manager
        self.bucket_mode = table.bucket_mode()

        names = self.schema.fields.names
        self._names = names
        self._file_schema = self.schema.file_schema()
        self._partition_idx = [self.schema.index_of(k) for k in self.schema.partition_keys]
        self._pk_idx = [self.schema.index_of(k) for k in self.schema.primary_keys]
        bucket_keys = (self.options.bucket_keys() or self.schema.trimmed_primary_keys()
                       or [n for n in names if n not in self.schema.partition_keys])
        self._bucket_key_idx = [self.schema.index_of(k) for k in bucket_keys]

        self._buffers: Dict[BucketId, _BucketBuffer] = {}
        self._buffered_rows = 0
        self._sequence: Dict[BucketId, int] = {}
        # files flushed by this session, visible to changelog lookups before they are committed
        self._flushed: Dict[BucketId, List[DataFileMeta]] = {}

        self._pool: Optional[ThreadPoolExecutor] = None
        if self.options.changelog_producer.requires_compaction:
            self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"changelog-{table.name}")
        self._pending: List[Tuple[BucketId, Dict[str, str], Future]] = []

        self._finished = False
        self._closed = False

    # -- write -----------------------------------------------------------

    def write(self, row: InternalRow, bucket: Optional[int] = None) -> None:
        self._check_writable()
        if not self.table.primary_key_table and row.kind != RowKind.INSERT:
            raise ValueError(f"append-only table {self.table.name} only accepts {RowKind.INSERT.short_string} rows, got {row.kind.short_string}")
        if len(row.values) != len(self._names):
            raise ValueError(f"row has {len(row.values)} values, table has {len(self._names)} fields")

        partition = {self.schema.partition_keys[i]: partition_value(row.values[idx]) for i, idx in enumerate(self._partition_idx)}
        bucket = self._resolve_bucket(row, bucket)
        key = (tuple(partition.items()), bucket)

        buf = self._buffers.get(key)
        if buf is None:
            buf = _BucketBuffer(partition, bucket)
            self._buffers[key] = buf
        buf.rows.append((int(row.kind), self._next_sequence(key, partition, bucket), tuple(row.values)))
        self._buffered_rows += 1
        if self._buffered_rows >= self.options.write_buffer_rows:
            self._spill_largest()

    def _resolve_bucket(self, row: InternalRow, bucket: Optional[int]) -> int:
        if bucket is None:
            if self.bucket_mode.dynamic:
                raise ValueError(f"table {self.table.name} uses {self.bucket_mode.value} bucketing; rows must carry an assigned bucket")
            if self.bucket_mode == BucketMode.BUCKET_UNAWARE:
                return 0
            return key_hash([row.values[i] for i in self._bucket_key_idx]) % self.options.bucket
        if bucket < 0:
            raise ValueError(f"bucket must be >= 0, got {bucket}")
        if self.bucket_mode == BucketMode.HASH_FIXED and bucket >= self.options.bucket:
            raise ValueError(f"bucket {bucket} is out of range for a table with {self.options.bucket} buckets")
        return bucket

    def _next_sequence(self, key: BucketId, partition: Dict[str, str], bucket: int) -> int:
        seq = self._sequence.get(key)
        if seq is None:
            seq = self.table.max_sequence_number(partition, bucket) + 1
        self._sequence[key] = seq + 1
        return seq

    def _spill_largest(self) -> None:
        buf = max(self._buffers.values(), key=lambda b: len(b.rows))
        if not buf.rows:
            return
        path = self.io_manager.new_spill_file()
        pq.write_table(self._to_arrow(buf.rows), path)
        buf.spills.append(path)
        log.debug("spilled %s rows of %s bucket-%s to %s", len(buf.rows), buf.partition, buf.bucket, path)
        self._buffered_rows -= len(buf.rows)
        buf.rows = []

    # -- flush -----------------------------------------------------------

    def flush(self, wait_compaction: bool = False) -> List[CommitMessage]:
        self._check_writable()
        if self.write_mode == WriteMode.BATCH:
            # no later flush can report unfinished changelog tasks
            self._finished = True
            wait_compaction = True

        new_files: Dict[BucketId, List[DataFileMeta]] = {}
        changelog_files: Dict[BucketId, List[DataFileMeta]] = {}
        partitions: Dict[BucketId, Dict[str, str]] = {}

        for key in sorted(self._buffers):
            buf = self._buffers[key]
            rows = self._drain(buf)
            if not rows:
                continue
            partitions[key] = buf.partition
            merged = self._merge(rows) if self.table.primary_key_table else rows
            meta = self._write_file(buf.partition, buf.bucket, merged, "data")
            new_files.setdefault(key, []).append(meta)

            producer = self.options.changelog_producer
            if producer == ChangelogProducer.INPUT:
                changelog_files.setdefault(key, []).append(self._write_file(buf.partition, buf.bucket, rows, "changelog"))
            elif producer.requires_compaction:
                earlier = list(self._flushed.get(key, []))
                fut = self._pool.submit(self._derive_changelog, buf.partition, buf.bucket, meta, earlier)
                self._pending.append((key, buf.partition, fut))
            self._flushed.setdefault(key, []).append(meta)

        self._buffers.clear()
        self._buffered_rows = 0

        if wait_compaction and self._pending:
            wait([f for _, _, f in self._pending])
        still_pending = []
        for key, partition, fut in self._pending:
            if not fut.done():
                still_pending.append((key, partition, fut))
                continue
            meta = fut.result()
            partitions.setdefault(key, partition)
            if meta is not None:
                changelog_files.setdefault(key, []).append(meta)
        self._pending = still_pending

        total_buckets = self.options.bucket if self.bucket_mode == BucketMode.HASH_FIXED else None
        messages = []
        for key in sorted(partitions):
            msg = CommitMessage(
                partition=partitions[key],
                bucket=key[1],
                total_buckets=total_buckets,
                new_files=new_files.get(key, []),
                changelog_files=changelog_files.get(key, []),
            )
            if not msg.is_empty():
                messages.append(msg)
        log.debug("flushed %s buckets of %s (%s changelog tasks pending)", len(messages), self.table.name, len(self._pending))
        return messages

    def _drain(self, buf: _BucketBuffer) -> List[BufferedRow]:
        rows: List[BufferedRow] = []
        for path in buf.spills:
            rows.extend(self._from_arrow(pq.read_table(path)))
            os.remove(path)
        buf.spills = []
        rows.extend(buf.rows)
        buf.rows = []
        return rows

    def _pk(self, values: Tuple[Any, ...]) -> Tuple[Any, ...]:
        return tuple(values[i] for i in self._pk_idx)

    def _merge(self, rows: List[BufferedRow]) -> List[BufferedRow]:
        latest: Dict[Tuple[Any, ...], BufferedRow] = {}
        for r in rows:
            latest[self._pk(r[2])] = r
        return sorted(latest.values(), key=lambda r: _sort_key(self._pk(r[2])))

    def _derive_changelog(self, partition: Dict[str, str], bucket: int, meta: DataFileMeta,
                          earlier: List[DataFileMeta]) -> Optional[DataFileMeta]:
        new_rows = self._from_arrow(self.table.read_file(partition, bucket, meta))
        if not self.table.primary_key_table:
            out = [(int(RowKind.INSERT), seq, values) for _, seq, values in new_rows]
        else:
            previous: Dict[Tuple[Any, ...], BufferedRow] = {}
            files = self.table.snapshot_manager.live_files().get((tuple(partition.items()), bucket), [])
            seen = {f.file_name for f in files}
            files = files + [f for f in earlier if f.file_name not in seen]
            for f in files:
                for r in self._from_arrow(self.table.read_file(partition, bucket, f)):
                    k = self._pk(r[2])
                    if k not in previous or previous[k][1] < r[1]:
                        previous[k] = r
            out = []
            for kind, seq, values in new_rows:
                old = previous.get(self._pk(values))
                old_live = old is not None and old[0] in (RowKind.INSERT, RowKind.UPDATE_AFTER)
                if kind in (RowKind.INSERT, RowKind.UPDATE_AFTER):
                    if old_live:
                        out.append((int(RowKind.UPDATE_BEFORE), seq, old[2]))
                        out.append((int(RowKind.UPDATE_AFTER), seq, values))
                    else:
                        out.append((int(RowKind.INSERT), seq, values))
                elif old_live:
                    out.append((int(RowKind.DELETE), seq, old[2]))
        if not out:
            return None
        return self._write_file(partition, bucket, out, "changelog")

    def _write_file(self, partition: Dict[str, str], bucket: int, rows: List[BufferedRow], prefix: str) -> DataFileMeta:
        d = self.table.bucket_path(partition, bucket)
        os.makedirs(d, exist_ok=True)
        name = f"{prefix}-{uuid.uuid4()}-0.parquet"
        path = os.path.join(d, name)
        pq.write_table(self._to_arrow(rows), path, compression=self.options.file_compression)
        seqs = [r[1] for r in rows]
        return DataFileMeta(file_name=name, file_size=os.path.getsize(path), row_count=len(rows),
                            min_sequence_number=min(seqs), max_sequence_number=max(seqs))

    def _to_arrow(self, rows: List[BufferedRow]) -> pa.Table:
        records = []
        for kind, seq, values in rows:
            d = {KIND_COLUMN: kind, SEQUENCE_COLUMN: seq}
            d.update(zip(self._names, values))
            records.append(d)
        return pa.Table.from_pylist(records, schema=self._file_schema)

    def _from_arrow(self, table: pa.Table) -> List[BufferedRow]:
        return [(d[KIND_COLUMN], d[SEQUENCE_COLUMN], tuple(d[n] for n in self._names)) for d in table.to_pylist()]

    # -- lifecycle -------------------------------------------------------

    def new_commit(self) -> TableCommit:
        return TableCommit(self.table, self.commit_user)

    def _check_writable(self) -> None:
        if self._closed:
            raise RuntimeError("write session is closed")
        if self._finished:
            raise RuntimeError("batch write session was already flushed")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffers.clear()
        self._buffered_rows = 0
        try:
            if self._pool is not None:
                for _, _, fut in self._pending:
                    fut.cancel()
                self._pool.shutdown(wait=True)
        finally:
            self._pending = []
            self.io_manager.close()
