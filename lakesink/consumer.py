from __future__ import annotations
from typing import Any, Dict
import logging
import orjson
from confluent_kafka import Consumer

from lakesink.config import settings
from lakesink.errors import RecordWriteError
from lakesink.models import record_from_json
from lakesink.runner import SinkRunner

log = logging.getLogger(__name__)

def consume_to_table(runner: SinkRunner, topic: str | None = None, group: str | None = None,
                     max_messages: int = 0, checkpoint_every: int | None = None) -> Dict[str, Any]:
    """Stream JSON rows from Kafka into the table.

    Offsets are committed only after the checkpoint covering them is committed
    to the table. Delivery is at-least-once: a crash between the table commit
    and the offset commit replays the rows of that checkpoint, which land again
    in an append-only table and overwrite themselves in a primary-key table.
    """
    topic = topic or settings.topic
    group = group or settings.group
    checkpoint_every = checkpoint_every or settings.checkpoint_interval
    runner.checkpoint_interval = 0

    consumer = Consumer({
        "bootstrap.servers": settings.kafka_bootstrap,
        "group.id": group,
        "auto.offset.reset": "earliest",
        "enable.auto.commit": False,
    })
    consumer.subscribe([topic])

    names = runner.row_type.names
    processed = 0
    bad = 0
    since = 0
    runner.start()
    try:
        while True:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                log.warning("kafka error on %s: %s", topic, msg.error())
                continue

            processed += 1
            try:
                record = record_from_json(orjson.loads(msg.value()), names)
                runner.write(record)
            except (orjson.JSONDecodeError, ValueError, RecordWriteError):
                bad += 1
                log.warning("dropping message %s:%s@%s", msg.topic(), msg.partition(), msg.offset(), exc_info=True)
            since += 1

            if since >= checkpoint_every:
                runner.checkpoint()
                consumer.commit(asynchronous=False)
                since = 0

            if max_messages and processed >= max_messages:
                break

        if since:
            runner.checkpoint()
            consumer.commit(asynchronous=False)
    finally:
        consumer.close()
        runner.close()

    return {"processed": processed, "bad": bad, "checkpoint_id": runner.checkpoint_id, "table": runner.table.path}
