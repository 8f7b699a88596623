import pyarrow as pa
import pytest

from lakesink.config import SinkConfig
from lakesink.table.file_store import create_table

ROW_TYPE = pa.schema([
    pa.field("id", pa.int64(), nullable=False),
    pa.field("name", pa.string()),
    pa.field("dt", pa.string()),
])

class FixedIdentity:
    def __init__(self, *ids):
        self.ids = list(ids)
        self.issued = []

    def new_identity(self):
        ident = self.ids.pop(0) if self.ids else f"user-{len(self.issued)}"
        self.issued.append(ident)
        return ident

@pytest.fixture
def make_table(tmp_path):
    def _make(name="t", primary_keys=(), partition_keys=(), options=None, fields=ROW_TYPE):
        return create_table(str(tmp_path / "warehouse" / "db.db" / name), fields,
                            partition_keys=partition_keys, primary_keys=primary_keys, options=options or {})
    return _make

@pytest.fixture
def sink_config(tmp_path):
    return SinkConfig(changelog_tmp_path=str(tmp_path / "io"))

def live_rows(table):
    rows = []
    for (partition, bucket), files in table.snapshot_manager.live_files().items():
        for meta in files:
            rows.extend(table.read_file(dict(partition), bucket, meta).to_pylist())
    return rows
