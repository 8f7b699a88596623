import logging
import time

import pytest

from conftest import ROW_TYPE, FixedIdentity
from lakesink.config import SinkConfig
from lakesink.errors import CommitReplayError, PreCommitFailure, RecordWriteError, WriterCloseError
from lakesink.models import Record, WriterContext
from lakesink.options import ChangelogProducer, RowKind, WriteMode
from lakesink.table.commit import TableCommit
from lakesink.table.write import TableWriteSession
from lakesink.writer import SinkWriter

def _writer(table, sink_config, mode=WriteMode.STREAMING, states=None, index=0, parallelism=1, identity=None):
    return SinkWriter(WriterContext(index=index, parallelism=parallelism), table, ROW_TYPE, mode, sink_config,
                      states=states, identity_source=identity or FixedIdentity())

def _spy_commits(monkeypatch):
    calls = []
    orig_cp = TableCommit.commit_at_checkpoint
    orig_term = TableCommit.commit_terminal

    def at_checkpoint(self, checkpoint_id, messages):
        calls.append(("checkpoint", checkpoint_id, list(messages)))
        return orig_cp(self, checkpoint_id, messages)

    def terminal(self, messages):
        calls.append(("terminal", None, list(messages)))
        return orig_term(self, messages)

    monkeypatch.setattr(TableCommit, "commit_at_checkpoint", at_checkpoint)
    monkeypatch.setattr(TableCommit, "commit_terminal", terminal)
    return calls

def _uncommitted_state(table, sink_config, checkpoint_id, mode=WriteMode.STREAMING):
    """A state holding two committables (one per partition) that never reached the table."""
    w = _writer(table, sink_config, mode=mode, identity=FixedIdentity("recovered-user"))
    w.write(Record(fields=[1, "a", "2026-01-01"]))
    w.write(Record(fields=[2, "b", "2026-01-02"]))
    w.prepare_commit(checkpoint_id)
    [state] = w.snapshot_state(checkpoint_id)
    w.close()
    return state

def test_fresh_writer_flush_and_snapshot(make_table, sink_config):
    table = make_table(primary_keys=["id"], options={"bucket": "2"})
    w = _writer(table, sink_config)
    for i in range(3):
        w.write(Record(fields=[i, f"n{i}", "2026-01-01"]))

    info = w.prepare_commit(7)
    assert info.checkpoint_id == 7
    assert info.commit_user == w.commit_user
    assert sum(f.row_count for m in info.commit_messages for f in m.new_files) == 3

    [state] = w.snapshot_state(7)
    assert state.checkpoint_id == 7
    assert state.commit_user == w.commit_user
    assert state.committables == info.commit_messages
    assert w.pending_committables == []

    assert w.prepare_commit(8).commit_messages == []
    w.close()

def test_snapshot_state_captures_only_its_checkpoint(make_table, sink_config):
    table = make_table()
    w = _writer(table, sink_config)
    w.write(Record(fields=[1, "a", None]))
    first = w.prepare_commit(1)
    [s1] = w.snapshot_state(1)

    w.write(Record(fields=[2, "b", None]))
    second = w.prepare_commit(2)
    [s2] = w.snapshot_state(2)

    old = {f.file_name for m in s1.committables for f in m.new_files}
    new = {f.file_name for m in second.commit_messages for f in m.new_files}
    assert old and new and not (old & new)
    assert s2.committables == second.commit_messages
    assert s1.committables == first.commit_messages
    w.close()

def test_prepare_commit_returns_a_copy(make_table, sink_config):
    w = _writer(make_table(), sink_config)
    w.write(Record(fields=[1, "a", None]))
    info = w.prepare_commit(1)
    info.commit_messages.clear()
    assert len(w.pending_committables) == 1
    w.close()

def test_prepare_commit_without_checkpoint_is_a_noop(make_table, sink_config):
    w = _writer(make_table(), sink_config)
    w.write(Record(fields=[1, "a", None]))
    assert w.prepare_commit() is None
    assert w.pending_committables == []
    assert len(w.prepare_commit(1).commit_messages) == 1
    w.close()

def test_recovery_recommits_once_before_writes(make_table, sink_config, monkeypatch):
    table = make_table(partition_keys=["dt"])
    state = _uncommitted_state(table, sink_config, 5)
    assert len(state.committables) == 2
    calls = _spy_commits(monkeypatch)

    w = _writer(table, sink_config, states=[state])
    assert calls == [("checkpoint", 5, state.committables)]
    assert w.commit_user == "recovered-user"
    assert w.checkpoint_id == 5

    snap = table.snapshot_manager.latest_snapshot()
    assert snap.commit_user == "recovered-user"
    assert snap.commit_identifier == 5
    assert snap.delta == state.committables
    w.close()

def test_recovery_is_idempotent(make_table, sink_config):
    table = make_table(partition_keys=["dt"])
    state = _uncommitted_state(table, sink_config, 3)

    _writer(table, sink_config, states=[state]).close()
    _writer(table, sink_config, states=[state]).close()
    assert table.snapshot_manager.latest_snapshot_id() == 1

def test_recovery_concatenates_states_in_order(make_table, sink_config, monkeypatch):
    table = make_table(partition_keys=["dt"])
    s1 = _uncommitted_state(table, sink_config, 4)
    s2 = _uncommitted_state(table, sink_config, 5)
    calls = _spy_commits(monkeypatch)

    _writer(table, sink_config, states=[s1, s2]).close()
    assert len(calls) == 1
    kind, cid, messages = calls[0]
    assert cid == 4
    assert messages == s1.committables + s2.committables

def test_batch_recovery_commits_terminal(make_table, sink_config, monkeypatch):
    table = make_table(partition_keys=["dt"])
    state = _uncommitted_state(table, sink_config, 1, mode=WriteMode.BATCH)
    calls = _spy_commits(monkeypatch)

    _writer(table, sink_config, mode=WriteMode.BATCH, states=[state]).close()
    assert [c[0] for c in calls] == ["terminal"]

def test_fresh_writer_commits_nothing(make_table, sink_config, monkeypatch):
    calls = _spy_commits(monkeypatch)
    _writer(make_table(), sink_config).close()
    _writer(make_table("t2"), sink_config, states=[]).close()
    assert calls == []

def test_recovery_failure_is_fatal(make_table, sink_config, monkeypatch):
    table = make_table(partition_keys=["dt"])
    state = _uncommitted_state(table, sink_config, 2)

    def boom(self, checkpoint_id, messages):
        raise OSError("metadata store unavailable")

    monkeypatch.setattr(TableCommit, "commit_at_checkpoint", boom)
    with pytest.raises(CommitReplayError) as ei:
        _writer(table, sink_config, states=[state])
    assert isinstance(ei.value.__cause__, OSError)

def test_dynamic_bucket_is_deterministic_across_writers(make_table, sink_config):
    table = make_table(primary_keys=["id"], options={"dynamic-bucket.initial-buckets": "4"})
    w0 = _writer(table, sink_config, index=0, parallelism=2)
    w1 = _writer(table, sink_config, index=1, parallelism=2)
    assert w0.dynamic_bucket and w1.dynamic_bucket

    buckets = set()
    for i in range(20):
        rec = Record(fields=[i, "x", "2026-01-01"])
        row = w0._convert(rec, ROW_TYPE, table.schema)
        b0 = w0.bucket_assigner.assign(row)
        assert b0 == w1.bucket_assigner.assign(row)
        buckets.add(b0)
    assert len(buckets) > 1

    w0.write(Record(fields=[7, "x", None]))
    w1.write(Record(fields=[7, "y", None]))
    [m0] = w0.prepare_commit(1).commit_messages
    [m1] = w1.prepare_commit(1).commit_messages
    assert m0.bucket == m1.bucket
    w0.close()
    w1.close()

def test_non_dynamic_tables_have_no_assigner(make_table, sink_config, caplog):
    with caplog.at_level(logging.WARNING):
        w = _writer(make_table(), sink_config)
    assert w.bucket_assigner is None
    assert "does not support dynamic buckets" in caplog.text
    w.close()

    w = _writer(make_table("fixed", primary_keys=["id"], options={"bucket": "3"}), sink_config)
    assert w.bucket_assigner is None
    w.close()

def test_table_changelog_producer_wins(make_table, tmp_path, caplog):
    table = make_table(primary_keys=["id"], options={"changelog-producer": "input"})
    cfg = SinkConfig(changelog_producer=ChangelogProducer.LOOKUP, changelog_tmp_path=str(tmp_path / "io"))
    with caplog.at_level(logging.WARNING):
        w = _writer(table, cfg)
    assert "changelog-producer" in caplog.text
    assert w.changelog_producer == ChangelogProducer.INPUT
    assert not w.wait_compaction()
    w.close()

@pytest.mark.parametrize("producer,expected", [
    ("lookup", True),
    ("full-compaction", True),
    ("input", False),
    ("none", False),
])
def test_flush_waits_only_for_compacting_producers(make_table, sink_config, monkeypatch, producer, expected):
    seen = []
    orig = TableWriteSession.flush

    def flush(self, wait_compaction=False):
        seen.append(wait_compaction)
        return orig(self, wait_compaction=wait_compaction)

    monkeypatch.setattr(TableWriteSession, "flush", flush)
    w = _writer(make_table(primary_keys=["id"], options={"bucket": "1", "changelog-producer": producer}), sink_config)
    w.write(Record(fields=[1, "a", None]))
    w.prepare_commit(1)
    assert seen == [expected]
    w.close()

def test_lookup_prepare_commit_waits_for_changelog(make_table, sink_config, monkeypatch):
    table = make_table(primary_keys=["id"], options={"bucket": "1", "changelog-producer": "lookup"})
    orig = TableWriteSession._derive_changelog

    def slow(self, *args):
        time.sleep(0.2)
        return orig(self, *args)

    monkeypatch.setattr(TableWriteSession, "_derive_changelog", slow)
    w = _writer(table, sink_config)
    w.write(Record(fields=[1, "a", None]))
    [first] = w.prepare_commit(1).commit_messages
    assert len(first.changelog_files) == 1

    w.write(Record(fields=[1, "b", None]))
    [second] = w.prepare_commit(2).commit_messages
    [cl] = second.changelog_files
    rows = table.read_file(second.partition, second.bucket, cl).to_pylist()
    assert [(r["_KIND"], r["name"]) for r in rows] == [(RowKind.UPDATE_BEFORE, "a"), (RowKind.UPDATE_AFTER, "b")]
    w.close()

def test_write_failure_carries_record(make_table, sink_config):
    w = _writer(make_table(), sink_config)
    bad = Record(fields=[1, "too few"])
    with pytest.raises(RecordWriteError) as ei:
        w.write(bad)
    assert ei.value.record is bad

    with pytest.raises(RecordWriteError):
        w.write(Record(fields=[2, "x", None], kind="-D"))
    assert w.prepare_commit(1).commit_messages == []
    w.close()

def test_close_after_failed_prepare_commit(make_table, sink_config, monkeypatch):
    w = _writer(make_table(), sink_config)
    w.write(Record(fields=[1, "a", None]))
    w.prepare_commit(1)

    def boom(wait_compaction=False):
        raise OSError("disk full")

    monkeypatch.setattr(w.session, "flush", boom)
    with pytest.raises(PreCommitFailure) as ei:
        w.prepare_commit(2)
    assert ei.value.checkpoint_id == 2
    assert len(w.pending_committables) == 1

    w.close()
    w.close()
    assert w.pending_committables == []

def test_close_failure_still_clears_buffer(make_table, sink_config, monkeypatch):
    w = _writer(make_table(), sink_config)
    w.write(Record(fields=[1, "a", None]))
    w.prepare_commit(1)

    def boom():
        raise OSError("cannot close")

    monkeypatch.setattr(w.session, "close", boom)
    with pytest.raises(WriterCloseError):
        w.close()
    assert w.pending_committables == []
    w.close()

def test_batch_writer_flushes_once(make_table, sink_config):
    w = _writer(make_table(), sink_config, mode=WriteMode.BATCH)
    w.write(Record(fields=[1, "a", None]))
    assert len(w.prepare_commit(1).commit_messages) == 1
    with pytest.raises(RecordWriteError):
        w.write(Record(fields=[2, "b", None]))
    with pytest.raises(PreCommitFailure):
        w.prepare_commit(2)
    w.close()

@pytest.mark.parametrize("producer", ["lookup", "full-compaction"])
def test_batch_prepare_commit_includes_derived_changelog(make_table, sink_config, monkeypatch, producer):
    table = make_table(primary_keys=["id"], options={"bucket": "1", "changelog-producer": producer})
    orig = TableWriteSession._derive_changelog

    def slow(self, *args):
        time.sleep(0.2)
        return orig(self, *args)

    monkeypatch.setattr(TableWriteSession, "_derive_changelog", slow)
    w = _writer(table, sink_config, mode=WriteMode.BATCH)
    w.write(Record(fields=[1, "a", None]))
    [msg] = w.prepare_commit(1).commit_messages
    assert len(msg.new_files) == 1
    [cl] = msg.changelog_files
    rows = table.read_file(msg.partition, msg.bucket, cl).to_pylist()
    assert [(r["_KIND"], r["id"]) for r in rows] == [(RowKind.INSERT, 1)]
    w.close()

def test_recovery_failure_survives_close_failure(make_table, sink_config, monkeypatch):
    table = make_table(partition_keys=["dt"])
    state = _uncommitted_state(table, sink_config, 2)

    def commit_boom(self, checkpoint_id, messages):
        raise OSError("metadata store unavailable")

    def close_boom(self):
        raise OSError("cannot close")

    monkeypatch.setattr(TableCommit, "commit_at_checkpoint", commit_boom)
    monkeypatch.setattr(TableWriteSession, "close", close_boom)
    with pytest.raises(CommitReplayError) as ei:
        _writer(table, sink_config, states=[state])
    assert "metadata store unavailable" in str(ei.value.__cause__)
