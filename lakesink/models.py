from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, field_validator
import orjson

from lakesink.options import RowKind

class Record(BaseModel):
    fields: List[Any]
    kind: RowKind = RowKind.INSERT

    @field_validator("kind", mode="before")
    @classmethod
    def _parse_kind(cls, v):
        if isinstance(v, str):
            return RowKind.from_short_string(v)
        return v

@dataclass
class InternalRow:
    kind: RowKind
    values: Tuple[Any, ...]

class WriterContext(BaseModel):
    index: int = Field(0, ge=0)
    parallelism: int = Field(1, ge=1)

class DataFileMeta(BaseModel):
    file_name: str
    file_size: int
    row_count: int
    min_sequence_number: int
    max_sequence_number: int
    level: int = 0

class CommitMessage(BaseModel):
    partition: Dict[str, str] = Field(default_factory=dict)
    bucket: int
    total_buckets: Optional[int] = None
    new_files: List[DataFileMeta] = Field(default_factory=list)
    changelog_files: List[DataFileMeta] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.new_files and not self.changelog_files

class CommitInfo(BaseModel):
    commit_messages: List[CommitMessage]
    checkpoint_id: Optional[int] = None
    commit_user: str

class SinkState(BaseModel):
    commit_user: str
    checkpoint_id: int
    committables: List[CommitMessage] = Field(default_factory=list)

    def to_bytes(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_bytes(cls, raw: bytes) -> "SinkState":
        return cls.model_validate(orjson.loads(raw))

class Snapshot(BaseModel):
    id: int
    schema_id: int = 0
    commit_user: str
    commit_identifier: int
    time_millis: int
    delta: List[CommitMessage] = Field(default_factory=list)

def record_from_json(obj: Any, field_names: List[str]) -> Record:
    """Accept {"fields": [...], "kind": "+I"} or a flat {name: value} object."""
    if isinstance(obj, dict) and "fields" in obj:
        return Record.model_validate(obj)
    if isinstance(obj, dict):
        payload = dict(obj)
        kind = payload.pop("_kind", "+I")
        return Record(fields=[payload.get(n) for n in field_names], kind=kind)
    if isinstance(obj, list):
        return Record(fields=obj)
    raise ValueError(f"cannot build a record from {type(obj).__name__}")
