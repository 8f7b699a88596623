from __future__ import annotations
from typing import List
import itertools, logging, os, shutil, uuid

log = logging.getLogger(__name__)

def split_paths(spec: str) -> List[str]:
    parts = []
    for chunk in spec.split(","):
        parts.extend(p for p in chunk.split(os.pathsep) if p.strip())
    return [p.strip() for p in parts]

class IOManager:
    """Spill directories for one write session, removed on close."""

    def __init__(self, tmp_dirs: List[str]):
        if not tmp_dirs:
            raise ValueError("at least one temp directory is required")
        self.dirs = []
        for base in tmp_dirs:
            d = os.path.join(base, f"lakesink-io-{uuid.uuid4()}")
            os.makedirs(d, exist_ok=True)
            self.dirs.append(d)
        self._next = itertools.cycle(self.dirs)
        self._closed = False

    @classmethod
    def create(cls, spec: str) -> "IOManager":
        return cls(split_paths(spec))

    def new_spill_file(self, suffix: str = ".parquet") -> str:
        if self._closed:
            raise RuntimeError("io manager is closed")
        return os.path.join(next(self._next), f"spill-{uuid.uuid4()}{suffix}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for d in self.dirs:
            shutil.rmtree(d, ignore_errors=True)
        log.debug("removed spill directories %s", self.dirs)
