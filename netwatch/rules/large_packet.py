"""Large packet: a single packet above the MTU-sized threshold.

Oversized packets show up in buffer-overflow attempts, bulk exfiltration and
some flood tooling.  Stateless: the packet alone decides.
"""

from netwatch.models import AlertKind
from netwatch.rules import Rule


class LargePacket(Rule):
    id = "large_packet"
    name = "Large Packet"
    kind = AlertKind.LARGE_PACKET

    def evaluate(self, packet, registry, config, now):
        if packet.size_bytes is None:
            return None

        threshold = config.large_packet_threshold
        if packet.size_bytes <= threshold:
            return None

        return self.candidate(
            packet,
            f"Abnormally large packet: {packet.size_bytes} bytes "
            f"(normal range: up to {threshold} bytes)\n"
            f"Source: {packet.source_ip}:{packet.source_port} -> "
            f"Destination: {packet.dest_ip}:{packet.dest_port}",
            now,
            evidence={
                "size_bytes": packet.size_bytes,
                "payload_bytes": packet.payload_bytes,
                "threshold": threshold,
                "protocol": packet.protocol.value,
            },
        )
