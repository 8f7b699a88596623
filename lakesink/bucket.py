"""Bucket assignment for dynamic-bucket tables.

A key keeps the bucket it was first given: committed keys are bootstrapped
from the table, each assigner loading only the share it owns
(key_hash % num_assigners == assign_id). Keys the table has never seen get
key_hash % dynamic-bucket.initial-buckets, which every assigner computes the
same way, so parallel writers agree on where a row goes.
"""

from __future__ import annotations
from typing import Any, Dict, Tuple
import logging

from lakesink.errors import TableError
from lakesink.keys import key_hash, partition_value
from lakesink.models import InternalRow
from lakesink.options import BucketMode
from lakesink.table.file_store import FileStoreTable

log = logging.getLogger(__name__)

PartitionKey = Tuple[Tuple[str, str], ...]

class BucketAssigner:
    def __init__(self, table: FileStoreTable, num_assigners: int, assign_id: int):
        if num_assigners < 1:
            raise ValueError(f"num_assigners must be >= 1, got {num_assigners}")
        if not 0 <= assign_id < num_assigners:
            raise ValueError(f"assign_id {assign_id} is out of range for {num_assigners} assigners")
        self.mode = table.bucket_mode()
        if not self.mode.dynamic:
            raise TableError(f"table {table.name} uses {self.mode.value} bucketing, no assigner needed")

        self.table = table
        self.num_assigners = num_assigners
        self.assign_id = assign_id
        self.initial_buckets = table.options.dynamic_bucket_initial_buckets

        schema = table.schema
        self._partition_keys = list(schema.partition_keys)
        self._partition_idx = [schema.index_of(k) for k in schema.partition_keys]
        key_fields = schema.primary_keys if self.mode == BucketMode.CROSS_PARTITION else schema.trimmed_primary_keys()
        self._key_fields = list(key_fields)
        self._key_idx = [schema.index_of(k) for k in key_fields]

        # partition -> key hash -> bucket; cross-partition tables use one global index under ()
        self._index: Dict[PartitionKey, Dict[int, int]] = {}
        self._bootstrap()

    def _scope(self, partition: Dict[str, str]) -> PartitionKey:
        if self.mode == BucketMode.CROSS_PARTITION:
            return ()
        return tuple(partition.items())

    def owns(self, h: int) -> bool:
        return h % self.num_assigners == self.assign_id

    def _bootstrap(self) -> None:
        loaded = 0
        for (partition_items, bucket), files in self.table.snapshot_manager.live_files().items():
            partition = dict(partition_items)
            index = self._index.setdefault(self._scope(partition), {})
            for meta in files:
                data = self.table.read_file(partition, bucket, meta, columns=self._key_fields)
                for values in zip(*[data.column(n).to_pylist() for n in self._key_fields]):
                    h = key_hash(values)
                    if self.owns(h):
                        index[h] = bucket
                        loaded += 1
        if loaded:
            log.info("assigner %s/%s bootstrapped %s keys of %s", self.assign_id, self.num_assigners, loaded, self.table.name)

    def assign(self, row: InternalRow) -> int:
        partition = {k: partition_value(row.values[idx]) for k, idx in zip(self._partition_keys, self._partition_idx)}
        h = key_hash([row.values[i] for i in self._key_idx])
        index = self._index.setdefault(self._scope(partition), {})
        bucket = index.get(h)
        if bucket is None:
            bucket = h % self.initial_buckets
            index[h] = bucket
        return bucket

    def stats(self) -> Dict[str, Any]:
        return {
            "assign_id": self.assign_id,
            "num_assigners": self.num_assigners,
            "keys": sum(len(v) for v in self._index.values()),
            "partitions": len(self._index),
        }
