"""Network packet simulator.

Publishes a mix of normal traffic and attack scenarios to the packet topic so
the detection service has something to chew on without a live capture.
Records use the same JSON shape as PacketRecord.to_dict().

Usage:
    python producer.py
    python producer.py --pps 20 --topic raw-packets
    python producer.py --only port_scan --pps 50
"""

import argparse
import json
import random
import signal
import time
from dataclasses import dataclass
from typing import Callable

from confluent_kafka import Producer
from confluent_kafka.admin import AdminClient, NewTopic

from netwatch.models import PacketRecord, Protocol

running = True


def _shutdown(sig, frame):
    global running
    print("\nShutting down simulator...")
    running = False


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

NORMAL_CLIENTS = ["192.168.1.10", "192.168.1.15", "192.168.1.20"]
WEB_SERVERS = ["8.8.8.8", "1.1.1.1", "74.125.224.72"]
SCAN_PORTS = [22, 23, 21, 80, 443, 3389, 1433, 3306]
DB_PORTS = [1433, 3306, 5432, 6379, 27017]


def normal_traffic(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip=rng.choice(NORMAL_CLIENTS), dest_ip=rng.choice(WEB_SERVERS),
        source_port=rng.randint(49152, 65151), dest_port=rng.choice([80, 443, 53]),
        protocol=Protocol.TCP, size_bytes=rng.randint(200, 999),
        payload_bytes=rng.randint(100, 699), flags=frozenset({"ACK"}),
    )


def port_scan(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip="203.0.113.50", dest_ip="192.168.1.100",
        source_port=12345, dest_port=rng.choice(SCAN_PORTS),
        protocol=Protocol.TCP, size_bytes=64, payload_bytes=0,
        flags=frozenset({"SYN"}),
    )


def brute_force(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip="198.51.100.75", dest_ip="192.168.1.200",
        source_port=54321, dest_port=22,
        protocol=Protocol.TCP, size_bytes=128, payload_bytes=64,
        flags=frozenset({"PSH", "ACK"}),
    )


def smurf(rng: random.Random) -> PacketRecord:
    # Spoofed victim address pinging the broadcast address.
    return PacketRecord(
        source_ip="192.168.1.100", dest_ip="192.168.1.255",
        source_port=0, dest_port=0,
        protocol=Protocol.ICMP, size_bytes=84, payload_bytes=56,
        flags=frozenset({"ECHO_REQUEST"}),
    )


def ping_flood(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip="203.0.113.45", dest_ip="192.168.1.1",
        source_port=0, dest_port=0,
        protocol=Protocol.ICMP, size_bytes=1500, payload_bytes=1472,
        flags=frozenset({"ECHO_REQUEST"}),
    )


def ping_of_death(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip="198.51.100.33", dest_ip="192.168.1.100",
        source_port=0, dest_port=0,
        protocol=Protocol.ICMP, size_bytes=65536, payload_bytes=65508,
        flags=frozenset({"ECHO_REQUEST"}),
    )


def large_packet(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip="172.16.0.50", dest_ip="192.168.1.100",
        source_port=8080, dest_port=80,
        protocol=Protocol.TCP, size_bytes=8000, payload_bytes=7800,
        flags=frozenset({"PSH", "ACK"}),
    )


def db_probe(rng: random.Random) -> PacketRecord:
    return PacketRecord(
        source_ip="10.0.0.99", dest_ip="192.168.1.150",
        source_port=33333, dest_port=rng.choice(DB_PORTS),
        protocol=Protocol.TCP, size_bytes=256, payload_bytes=128,
        flags=frozenset({"SYN"}),
    )


@dataclass
class Scenario:
    name: str
    weight: float
    make: Callable[[random.Random], PacketRecord]


SCENARIOS = [
    Scenario("normal", 0.60, normal_traffic),
    Scenario("port_scan", 0.10, port_scan),
    Scenario("brute_force", 0.05, brute_force),
    Scenario("smurf", 0.05, smurf),
    Scenario("ping_flood", 0.05, ping_flood),
    Scenario("ping_of_death", 0.05, ping_of_death),
    Scenario("large_packet", 0.05, large_packet),
    Scenario("db_probe", 0.05, db_probe),
]


def pick_scenario(rng: random.Random, scenarios=SCENARIOS) -> Scenario:
    return rng.choices(scenarios, weights=[s.weight for s in scenarios], k=1)[0]


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

def _ensure_topics(bootstrap_servers, topics):
    """Create Kafka topics if they don't already exist."""
    admin = AdminClient({"bootstrap.servers": bootstrap_servers})
    new_topics = [NewTopic(t, num_partitions=3, replication_factor=3) for t in topics]
    fs = admin.create_topics(new_topics)
    for topic, f in fs.items():
        try:
            f.result()
            print(f"Created topic '{topic}'")
        except Exception as e:
            if "TOPIC_ALREADY_EXISTS" in str(e):
                print(f"Topic '{topic}' already exists")
            else:
                raise


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Network packet simulator")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="raw-packets")
    parser.add_argument("--pps", type=float, default=2, help="Target packets/sec")
    parser.add_argument("--only", choices=[s.name for s in SCENARIOS],
                        help="Emit a single scenario instead of the mix")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _shutdown)   # Ctrl+C (local dev)
    signal.signal(signal.SIGTERM, _shutdown)  # docker stop / k8s pod termination

    rng = random.Random(args.seed)
    scenarios = [s for s in SCENARIOS if args.only in (None, s.name)]

    print(f"Simulating to topic '{args.topic}' at ~{args.pps} packets/sec")
    for s in scenarios:
        print(f"  {s.name:<14s} weight={s.weight:.2f}")

    _ensure_topics(args.bootstrap_servers, [args.topic])

    producer = Producer({
        "bootstrap.servers": args.bootstrap_servers,
        "acks": "all",
        "client.id": "packet-simulator",
    })

    count = 0
    by_scenario = {s.name: 0 for s in scenarios}
    delay = 1.0 / args.pps

    while running:
        scenario = pick_scenario(rng, scenarios)
        packet = scenario.make(rng)

        producer.produce(
            topic=args.topic,
            key=packet.source_ip.encode(),
            value=json.dumps(packet.to_dict()),
        )
        producer.poll(0)

        count += 1
        by_scenario[scenario.name] += 1
        if count % 100 == 0:
            mix = "  ".join(f"{k}={v}" for k, v in by_scenario.items() if v)
            print(f"  ... {count} packets produced  {mix}")

        time.sleep(delay)

    producer.flush()
    print(f"Done. {count} packets produced.")


if __name__ == "__main__":
    main()
