"""Filesystem-backed table handle.

Layout under the table directory:

    schema/schema-0.json
    snapshot/snapshot-<id>.json     one per commit, never rewritten
    snapshot/LATEST                 hint, may lag behind the newest snapshot
    <k=v>/.../bucket-<n>/data-*.parquet, changelog-*.parquet
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import base64, os, time
import orjson
import pyarrow as pa
import pyarrow.parquet as pq
from pydantic import ValidationError

from lakesink.errors import TableError
from lakesink.keys import bucket_dir
from lakesink.models import DataFileMeta, Snapshot
from lakesink.options import BucketMode, CoreOptions

KIND_COLUMN = "_KIND"
SEQUENCE_COLUMN = "_SEQUENCE_NUMBER"

BucketId = Tuple[Tuple[Tuple[str, str], ...], int]

@dataclass
class TableSchema:
    fields: pa.Schema
    partition_keys: List[str] = field(default_factory=list)
    primary_keys: List[str] = field(default_factory=list)
    options: Dict[str, str] = field(default_factory=dict)
    id: int = 0

    def __post_init__(self):
        names = set(self.fields.names)
        for k in list(self.partition_keys) + list(self.primary_keys):
            if k not in names:
                raise TableError(f"key field {k!r} is not in the table schema {self.fields.names}")
        try:
            options = CoreOptions.from_map(self.options)
        except ValidationError as exc:
            raise TableError(f"invalid table options: {exc}") from exc
        for k in options.bucket_keys():
            if k not in names:
                raise TableError(f"bucket-key field {k!r} is not in the table schema")

    def index_of(self, name: str) -> int:
        return self.fields.get_field_index(name)

    def trimmed_primary_keys(self) -> List[str]:
        return [k for k in self.primary_keys if k not in self.partition_keys]

    def cross_partition_update(self) -> bool:
        if not self.primary_keys or not self.partition_keys:
            return False
        return not all(p in self.primary_keys for p in self.partition_keys)

    def file_schema(self) -> pa.Schema:
        system = [pa.field(KIND_COLUMN, pa.int8(), nullable=False), pa.field(SEQUENCE_COLUMN, pa.int64(), nullable=False)]
        return pa.schema(system + list(self.fields))

    def to_json(self) -> bytes:
        return orjson.dumps({
            "id": self.id,
            "fields": base64.b64encode(self.fields.serialize().to_pybytes()).decode("ascii"),
            "field_names": self.fields.names,
            "partition_keys": self.partition_keys,
            "primary_keys": self.primary_keys,
            "options": self.options,
        }, option=orjson.OPT_INDENT_2)

    @classmethod
    def from_json(cls, raw: bytes) -> "TableSchema":
        d = orjson.loads(raw)
        fields = pa.ipc.read_schema(pa.py_buffer(base64.b64decode(d["fields"])))
        return cls(fields=fields, partition_keys=list(d.get("partition_keys") or []),
                   primary_keys=list(d.get("primary_keys") or []), options=dict(d.get("options") or {}),
                   id=int(d.get("id", 0)))

class SnapshotManager:
    def __init__(self, table_path: str):
        self.snapshot_dir = os.path.join(table_path, "snapshot")

    def snapshot_path(self, snapshot_id: int) -> str:
        return os.path.join(self.snapshot_dir, f"snapshot-{snapshot_id}.json")

    def _latest_hint(self) -> int:
        try:
            with open(os.path.join(self.snapshot_dir, "LATEST"), "r", encoding="utf-8") as f:
                return int(f.read().strip() or 0)
        except (FileNotFoundError, ValueError):
            return 0

    def latest_snapshot_id(self) -> Optional[int]:
        sid = self._latest_hint()
        while os.path.exists(self.snapshot_path(sid + 1)):
            sid += 1
        if sid == 0:
            return None
        return sid

    def snapshot(self, snapshot_id: int) -> Snapshot:
        with open(self.snapshot_path(snapshot_id), "rb") as f:
            return Snapshot.model_validate(orjson.loads(f.read()))

    def latest_snapshot(self) -> Optional[Snapshot]:
        sid = self.latest_snapshot_id()
        return self.snapshot(sid) if sid is not None else None

    def snapshots(self) -> List[Snapshot]:
        latest = self.latest_snapshot_id() or 0
        return [self.snapshot(i) for i in range(1, latest + 1)]

    def latest_snapshot_of_user(self, commit_user: str) -> Optional[Snapshot]:
        sid = self.latest_snapshot_id() or 0
        while sid > 0:
            snap = self.snapshot(sid)
            if snap.commit_user == commit_user:
                return snap
            sid -= 1
        return None

    def try_commit(self, snapshot: Snapshot) -> bool:
        """Claim snapshot.id; False if another committer already holds it."""
        os.makedirs(self.snapshot_dir, exist_ok=True)
        try:
            with open(self.snapshot_path(snapshot.id), "xb") as f:
                f.write(orjson.dumps(snapshot.model_dump(mode="json"), option=orjson.OPT_INDENT_2))
        except FileExistsError:
            return False
        hint = os.path.join(self.snapshot_dir, "LATEST")
        tmp = hint + f".{snapshot.id}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(str(snapshot.id))
        os.replace(tmp, hint)
        return True

    def live_files(self) -> Dict[BucketId, List[DataFileMeta]]:
        files: Dict[BucketId, List[DataFileMeta]] = {}
        for snap in self.snapshots():
            for msg in snap.delta:
                key = (tuple(msg.partition.items()), msg.bucket)
                files.setdefault(key, []).extend(msg.new_files)
        return files

class FileStoreTable:
    def __init__(self, path: str, schema: TableSchema):
        self.path = path
        self.schema = schema
        self.options = CoreOptions.from_map(schema.options)
        self.snapshot_manager = SnapshotManager(path)

    @property
    def name(self) -> str:
        return os.path.basename(os.path.normpath(self.path))

    @property
    def primary_key_table(self) -> bool:
        return bool(self.schema.primary_keys)

    def bucket_mode(self) -> BucketMode:
        if self.primary_key_table:
            if self.schema.cross_partition_update():
                return BucketMode.CROSS_PARTITION
            if self.options.bucket == -1:
                return BucketMode.HASH_DYNAMIC
            return BucketMode.HASH_FIXED
        if self.options.bucket == -1:
            return BucketMode.BUCKET_UNAWARE
        return BucketMode.HASH_FIXED

    def bucket_path(self, partition: Dict[str, str], bucket: int) -> str:
        return os.path.join(self.path, bucket_dir(partition, bucket))

    def read_file(self, partition: Dict[str, str], bucket: int, meta: DataFileMeta, columns: Optional[Sequence[str]] = None) -> pa.Table:
        return pq.read_table(os.path.join(self.bucket_path(partition, bucket), meta.file_name), columns=columns)

    def max_sequence_number(self, partition: Dict[str, str], bucket: int) -> int:
        files = self.snapshot_manager.live_files().get((tuple(partition.items()), bucket), [])
        return max((f.max_sequence_number for f in files), default=-1)

def table_path(warehouse: str, identifier: str) -> str:
    if "." not in identifier:
        raise TableError(f"table identifier must be '<database>.<table>', got {identifier!r}")
    database, name = identifier.split(".", 1)
    return os.path.join(warehouse, f"{database}.db", name)

def create_table(path: str, fields: pa.Schema, partition_keys: Sequence[str] = (), primary_keys: Sequence[str] = (),
                 options: Optional[Dict[str, str]] = None) -> FileStoreTable:
    schema_file = os.path.join(path, "schema", "schema-0.json")
    if os.path.exists(schema_file):
        raise TableError(f"table already exists at {path}")
    schema = TableSchema(fields=fields, partition_keys=list(partition_keys), primary_keys=list(primary_keys),
                         options={k: str(v) for k, v in (options or {}).items()})
    os.makedirs(os.path.dirname(schema_file), exist_ok=True)
    tmp = schema_file + f".{int(time.time() * 1000)}.tmp"
    with open(tmp, "wb") as f:
        f.write(schema.to_json())
    os.replace(tmp, schema_file)
    return FileStoreTable(path, schema)

def load_table(path: str) -> FileStoreTable:
    schema_file = os.path.join(path, "schema", "schema-0.json")
    try:
        with open(schema_file, "rb") as f:
            schema = TableSchema.from_json(f.read())
    except FileNotFoundError as exc:
        raise TableError(f"no table at {path}") from exc
    return FileStoreTable(path, schema)
