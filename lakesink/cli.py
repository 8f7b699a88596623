from __future__ import annotations
import argparse, json
from typing import Dict, Iterator, List
import orjson
import pyarrow as pa

from lakesink.config import settings, SinkConfig
from lakesink.log import setup_logging
from lakesink.models import Record, record_from_json
from lakesink.options import ChangelogProducer, WriteMode
from lakesink.runner import SinkRunner
from lakesink.state_store import StateStore
from lakesink.table.file_store import create_table, load_table, table_path

def parse_fields(spec: str) -> pa.Schema:
    """`id:int64!,name:string` -> schema; a trailing `!` marks NOT NULL."""
    fields = []
    for part in spec.split(","):
        name, _, typ = part.strip().partition(":")
        if not name or not typ:
            raise argparse.ArgumentTypeError(f"bad field spec {part!r}, expected name:type")
        nullable = not typ.endswith("!")
        fields.append(pa.field(name, pa.type_for_alias(typ.rstrip("!")), nullable=nullable))
    return pa.schema(fields)

def _split(s: str | None) -> List[str]:
    return [x.strip() for x in (s or "").split(",") if x.strip()]

def _options(pairs: List[str]) -> Dict[str, str]:
    out = {}
    for p in pairs or []:
        k, _, v = p.partition("=")
        out[k.strip()] = v.strip()
    return out

def _read_jsonl(path: str, names: List[str]) -> Iterator[Record]:
    with open(path, "rb") as f:
        for line in f:
            line = line.strip()
            if line:
                yield record_from_json(orjson.loads(line), names)

def _sink_config(args) -> SinkConfig:
    cp = ChangelogProducer(args.changelog_producer) if args.changelog_producer else None
    return SinkConfig(changelog_producer=cp, changelog_tmp_path=args.tmp_path or settings.changelog_tmp_path)

def cmd_create_table(args):
    t = create_table(
        table_path(args.warehouse, args.table),
        parse_fields(args.fields),
        partition_keys=_split(args.partition_keys),
        primary_keys=_split(args.primary_keys),
        options=_options(args.option),
    )
    print({"created": t.path, "bucket_mode": t.bucket_mode().value})

def cmd_ingest(args):
    table = load_table(table_path(args.warehouse, args.table))
    runner = SinkRunner(
        table, table.schema.fields, WriteMode(args.mode), _sink_config(args),
        parallelism=args.parallelism, checkpoint_interval=args.checkpoint_interval,
        state_store=StateStore(args.state_db), job_id=args.job_id,
    )
    n = runner.run(_read_jsonl(args.jsonl, table.schema.fields.names))
    print({"written": n, "checkpoint_id": runner.checkpoint_id, "table": table.path})

def cmd_consume(args):
    from lakesink.consumer import consume_to_table
    table = load_table(table_path(args.warehouse, args.table))
    runner = SinkRunner(
        table, table.schema.fields, WriteMode.STREAMING, _sink_config(args),
        parallelism=args.parallelism, state_store=StateStore(args.state_db), job_id=args.job_id,
    )
    res = consume_to_table(runner, topic=args.topic, group=args.group, max_messages=args.max_messages,
                           checkpoint_every=args.checkpoint_interval)
    print(res)

def cmd_snapshots(args):
    table = load_table(table_path(args.warehouse, args.table))
    for snap in table.snapshot_manager.snapshots():
        print(json.dumps({
            "id": snap.id,
            "commit_user": snap.commit_user,
            "commit_identifier": snap.commit_identifier,
            "buckets": len(snap.delta),
            "rows": sum(f.row_count for m in snap.delta for f in m.new_files),
        }))

def main(argv=None):
    p = argparse.ArgumentParser(prog="lakesink")
    p.add_argument("--warehouse", default=settings.warehouse)
    p.add_argument("--log-level", default=settings.log_level)
    p.add_argument("--log-dir")
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("create-table")
    c.add_argument("--table", required=True, help="<database>.<table>")
    c.add_argument("--fields", required=True, help="id:int64!,name:string,...")
    c.add_argument("--primary-keys")
    c.add_argument("--partition-keys")
    c.add_argument("--option", action="append", help="key=value, repeatable")
    c.set_defaults(fn=cmd_create_table)

    def _writer_args(sp):
        sp.add_argument("--table", required=True)
        sp.add_argument("--parallelism", type=int, default=settings.parallelism)
        sp.add_argument("--checkpoint-interval", type=int, default=settings.checkpoint_interval)
        sp.add_argument("--state-db", default=settings.state_db_path)
        sp.add_argument("--job-id", default=settings.job_id)
        sp.add_argument("--changelog-producer", choices=[c.value for c in ChangelogProducer])
        sp.add_argument("--tmp-path")

    i = sub.add_parser("ingest")
    _writer_args(i)
    i.add_argument("--jsonl", required=True)
    i.add_argument("--mode", choices=[m.value for m in WriteMode], default=WriteMode.BATCH.value)
    i.set_defaults(fn=cmd_ingest)

    k = sub.add_parser("consume")
    _writer_args(k)
    k.add_argument("--topic", default=settings.topic)
    k.add_argument("--group", default=settings.group)
    k.add_argument("--max-messages", type=int, default=0, help="0=run forever")
    k.set_defaults(fn=cmd_consume)

    s = sub.add_parser("snapshots")
    s.add_argument("--table", required=True)
    s.set_defaults(fn=cmd_snapshots)

    args = p.parse_args(argv)
    setup_logging(args.log_level, args.log_dir)
    args.fn(args)

if __name__ == "__main__":
    main()
