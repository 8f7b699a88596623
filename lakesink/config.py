from __future__ import annotations
import os, tempfile
from typing import Optional
from pydantic import BaseModel

from lakesink.options import ChangelogProducer

class Settings(BaseModel):
    warehouse: str = os.getenv("LAKESINK_WAREHOUSE", "warehouse")
    state_db_path: str = os.getenv("LAKESINK_STATE_DB", "warehouse/sink_state.sqlite3")
    job_id: str = os.getenv("LAKESINK_JOB_ID", "lakesink")

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "localhost:9092")
    topic: str = os.getenv("LAKESINK_TOPIC", "lakesink.rows")
    group: str = os.getenv("LAKESINK_GROUP", "lakesink")

    parallelism: int = int(os.getenv("LAKESINK_PARALLELISM", "1"))
    checkpoint_interval: int = int(os.getenv("LAKESINK_CHECKPOINT_INTERVAL", "1000"))

    # comma separated; spill files are spread across the directories
    changelog_tmp_path: str = os.getenv("LAKESINK_CHANGELOG_TMP_PATH", tempfile.gettempdir())

    log_level: str = os.getenv("LAKESINK_LOG_LEVEL", "INFO")

settings = Settings()

class SinkConfig(BaseModel):
    # the table's own changelog-producer always wins; this is only compared against it
    changelog_producer: Optional[ChangelogProducer] = None
    changelog_tmp_path: str = settings.changelog_tmp_path
