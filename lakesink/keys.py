from __future__ import annotations
from typing import Any, Dict, Sequence
import hashlib, os
import orjson

from lakesink.options import DEFAULT_PARTITION_NAME

def key_hash(values: Sequence[Any]) -> int:
    """Stable across processes, unlike the builtin hash()."""
    payload = orjson.dumps(list(values), default=str, option=orjson.OPT_NON_STR_KEYS)
    return int.from_bytes(hashlib.sha256(payload).digest()[:4], "big")

def partition_value(v: Any) -> str:
    if v is None:
        return DEFAULT_PARTITION_NAME
    s = v.isoformat() if hasattr(v, "isoformat") else str(v)
    return s if s.strip() else DEFAULT_PARTITION_NAME

def partition_path(spec: Dict[str, str]) -> str:
    if not spec:
        return ""
    return os.path.join(*[f"{k}={v}" for k, v in spec.items()])

def bucket_dir(partition: Dict[str, str], bucket: int) -> str:
    p = partition_path(partition)
    b = f"bucket-{bucket}"
    return os.path.join(p, b) if p else b
