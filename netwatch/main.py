"""Detection service: reads packet records, runs the engine, produces alerts.

Consumes JSON packet records from raw-packets, pushes them through a bounded
channel into the detection engine, and publishes every alert that survives
the pipeline (validate, dedup, persist) to the alerts topic.  Batch analysis,
tracker eviction and the daily counter reset run on their own timers.

Usage:
    python -m netwatch.main
    python -m netwatch.main --bootstrap-servers kafka-1:29092 --config config/netwatch.yml
"""

import argparse
import json
import signal
import sys

import structlog
from confluent_kafka import Consumer, Producer, KafkaError, KafkaException
from confluent_kafka.admin import AdminClient, NewTopic

from netwatch.channel import PacketChannel
from netwatch.config import load_config
from netwatch.engine import DetectionEngine
from netwatch.errors import PersistenceError
from netwatch.logs import configure_logging
from netwatch.metrics import start_metrics_server
from netwatch.models import AlertRecord
from netwatch.notify import ConsoleNotifier
from netwatch.pipeline import AlertDispatcher, AlertPipeline
from netwatch.scheduler import PeriodicTask
from netwatch.sinks import RecentPacketBuffer, new_alert_id
from netwatch.sweeper import EvictionSweeper

log = structlog.get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down detection service...")
    running = False


def _ensure_topic(bootstrap_servers, topic):
    """Create the output topic if it doesn't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    fs = admin.create_topics([NewTopic(topic, num_partitions=3, replication_factor=3)])
    for t, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{t}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{t}' already exists")
            else:
                raise


class KafkaAlertSink:
    """Persistence collaborator that publishes alerts to a Kafka topic.

    ``save()`` enqueues the record on the producer; a local buffer error
    (queue full, bad config) surfaces as PersistenceError so the pipeline
    rolls back its dedup reservation.
    """

    def __init__(self, producer: Producer, topic: str):
        self.producer = producer
        self.topic = topic
        self.produced = 0

    def save(self, candidate) -> AlertRecord:
        record = AlertRecord(alert_id=new_alert_id(), candidate=candidate)
        try:
            self.producer.produce(
                self.topic,
                key=(candidate.source_ip or "unknown").encode(),
                value=json.dumps(record.to_dict()).encode("utf-8"),
                on_delivery=self._on_delivery,
            )
            self.producer.poll(0)
        except (BufferError, KafkaException) as e:
            raise PersistenceError(f"could not produce alert to '{self.topic}': {e}") from e
        self.produced += 1
        return record

    @staticmethod
    def _on_delivery(err, msg):
        if err is not None:
            log.error("alert_delivery_failed", error=str(err))


def build_tasks(engine, sweeper, pipeline, config):
    """Timers the service runs next to the ingest path (not started)."""
    return [
        PeriodicTask("batch-analysis", config.analysis_interval_seconds,
                     engine.periodic_analysis),
        PeriodicTask("eviction-sweep", config.sweep_interval_seconds, sweeper),
        PeriodicTask("daily-reset", DAY_SECONDS, pipeline.stats.reset_critical_today),
    ]


def _decode(msg):
    try:
        return json.loads(msg.value().decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        log.debug("packet_undecodable", error=str(e), offset=msg.offset())
        return None


def main():
    parser = argparse.ArgumentParser(description="Network threat detection service")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--input-topic", default="raw-packets")
    parser.add_argument("--output-topic", default="alerts")
    parser.add_argument("--group-id", default="netwatch-detector")
    parser.add_argument("--config", default=None, help="YAML detection settings")
    parser.add_argument("--metrics-port", type=int, default=8000)
    parser.add_argument("--workers", type=int, default=2, help="Ingest worker threads")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-json", action="store_true")
    args = parser.parse_args()

    configure_logging(args.log_level, json=args.log_json)
    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    config = load_config(args.config)

    _ensure_topic(args.bootstrap_servers, args.output_topic)
    start_metrics_server(args.metrics_port)

    consumer = Consumer({
        "bootstrap.servers": args.bootstrap_servers,
        "group.id": args.group_id,
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
    })
    consumer.subscribe([args.input_topic])

    producer = Producer({"bootstrap.servers": args.bootstrap_servers})
    alert_sink = KafkaAlertSink(producer, args.output_topic)

    pipeline = AlertPipeline(alert_sink, ConsoleNotifier(), config=config)
    dispatcher = AlertDispatcher(pipeline).start()

    recent = RecentPacketBuffer(max_age_seconds=config.analysis_window_minutes * 60 * 2)
    engine = DetectionEngine(config, alert_sink=dispatcher, packet_source=recent)
    sweeper = EvictionSweeper(engine.registry, pipeline.dedup, config)

    def handle(packet):
        recent.append(packet)
        engine.ingest(packet)

    channel = PacketChannel(handle, workers=args.workers).start()
    tasks = [task.start() for task in build_tasks(engine, sweeper, pipeline, config)]

    consumed = 0
    malformed = 0

    print(f"Detection service started  input={args.input_topic}  "
          f"output={args.output_topic}  rules={len(engine.rules)}  "
          f"workers={args.workers}  metrics=:{args.metrics_port}")

    try:
        while running:
            msg = consumer.poll(1.0)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                print(f"Consumer error: {msg.error()}", file=sys.stderr)
                continue

            raw = _decode(msg)
            packet = engine.decode(raw) if raw is not None else None
            consumed += 1
            if packet is None:
                malformed += 1
                continue
            channel.offer(packet)

            if consumed % 1000 == 0:
                stats = pipeline.stats.snapshot()
                print(f"  ... {consumed} packets consumed, {stats['created']} alerts, "
                      f"{stats['suppressed']} suppressed, {malformed} malformed")
    finally:
        # Stop intake first, then drain: channel -> engine -> dispatcher -> producer.
        consumer.close()
        channel.close(timeout=10)
        for task in tasks:
            task.stop(timeout=10)
        dispatcher.close(timeout=10)
        producer.flush()
        stats = pipeline.stats.snapshot()
        print(f"Done. {consumed} packets consumed, {stats['created']} alerts produced, "
              f"{stats['suppressed']} suppressed, {channel.dropped} dropped.")


if __name__ == "__main__":
    main()
