from __future__ import annotations
from typing import Any, Optional

class SinkError(Exception):
    pass

class TableError(SinkError):
    """Table layout or options cannot be used for writing."""

class CommitReplayError(SinkError):
    """Re-committing recovered state failed; the writer cannot start."""

class RecordWriteError(SinkError):
    def __init__(self, message: str, record: Any = None):
        super().__init__(message)
        self.record = record

class PreCommitFailure(SinkError):
    """Flushing for a checkpoint failed; the checkpoint must fail."""

    def __init__(self, message: str, checkpoint_id: Optional[int] = None):
        super().__init__(message)
        self.checkpoint_id = checkpoint_id

class WriterCloseError(SinkError):
    pass

class CommitFailure(SinkError):
    pass
