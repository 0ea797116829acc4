"""Suspicious port access: one source touching several sensitive services.

A single SSH or database connection is ordinary.  The same source reaching
three or more distinct administrative/database ports (SSH, RDP, SMB, MySQL,
Redis, ...) is reconnaissance.
"""

from netwatch.models import AlertKind
from netwatch.rules import Rule


class SuspiciousPortAccess(Rule):
    id = "suspicious_port"
    name = "Suspicious Port Access"
    kind = AlertKind.SUSPICIOUS_CONNECTION

    def evaluate(self, packet, registry, config, now):
        if packet.dest_port is None or packet.dest_port not in config.sensitive_ports:
            return None

        tracker = registry.port_scan_tracker(packet.source_ip)
        tracker.record(packet.dest_port, packet.dest_ip,
                       timestamp=packet.captured_at, now=now)

        count = tracker.suspicious_port_count()
        if count < config.suspicious_port_threshold:
            return None

        ports = sorted(tracker.suspicious_ports())
        return self.candidate(
            packet,
            f"Suspicious port access\n"
            f"Source IP: {packet.source_ip}\n"
            f"Sensitive ports accessed: {count}\n"
            f"Ports: {ports}",
            now,
            evidence={"suspicious_port_count": count, "ports": ports},
        )
