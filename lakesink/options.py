from __future__ import annotations
from enum import Enum, IntEnum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

BATCH_COMMIT_IDENTIFIER = 2**63 - 1
DEFAULT_PARTITION_NAME = "__DEFAULT_PARTITION__"

class WriteMode(str, Enum):
    BATCH = "batch"
    STREAMING = "streaming"

class BucketMode(str, Enum):
    HASH_FIXED = "hash-fixed"
    HASH_DYNAMIC = "hash-dynamic"
    CROSS_PARTITION = "cross-partition"
    BUCKET_UNAWARE = "bucket-unaware"

    @property
    def dynamic(self) -> bool:
        return self in (BucketMode.HASH_DYNAMIC, BucketMode.CROSS_PARTITION)

class ChangelogProducer(str, Enum):
    NONE = "none"
    INPUT = "input"
    LOOKUP = "lookup"
    FULL_COMPACTION = "full-compaction"

    @property
    def requires_compaction(self) -> bool:
        return self in (ChangelogProducer.LOOKUP, ChangelogProducer.FULL_COMPACTION)

class RowKind(IntEnum):
    INSERT = 0
    UPDATE_BEFORE = 1
    UPDATE_AFTER = 2
    DELETE = 3

    @property
    def short_string(self) -> str:
        return _SHORT[self]

    @classmethod
    def from_short_string(cls, s: str) -> "RowKind":
        for kind, short in _SHORT.items():
            if short == s:
                return kind
        raise ValueError(f"unknown row kind: {s!r}")

_SHORT = {
    RowKind.INSERT: "+I",
    RowKind.UPDATE_BEFORE: "-U",
    RowKind.UPDATE_AFTER: "+U",
    RowKind.DELETE: "-D",
}

class CoreOptions(BaseModel):
    """Typed view over a table's string option map."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    bucket: int = -1
    bucket_key: Optional[str] = Field(default=None, alias="bucket-key")
    changelog_producer: ChangelogProducer = Field(default=ChangelogProducer.NONE, alias="changelog-producer")
    dynamic_bucket_initial_buckets: int = Field(default=4, alias="dynamic-bucket.initial-buckets", ge=1)
    write_buffer_rows: int = Field(default=100_000, alias="write-buffer-rows", ge=1)
    file_compression: str = Field(default="zstd", alias="file.compression")
    commit_user_prefix: Optional[str] = Field(default=None, alias="commit.user-prefix")

    @classmethod
    def from_map(cls, options: Dict[str, str]) -> "CoreOptions":
        return cls.model_validate(dict(options))

    def bucket_keys(self) -> List[str]:
        if not self.bucket_key:
            return []
        return [k.strip() for k in self.bucket_key.split(",") if k.strip()]
