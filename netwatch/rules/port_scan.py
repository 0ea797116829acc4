"""Port scan: one source touching many distinct destination ports.

Records every destination port (sensitive or not) and fires once the
source has hit the configured number of distinct ports.  The scan pattern
(sequential sweep, common-service probe, random) goes into the evidence.
"""

from netwatch.models import AlertKind
from netwatch.rules import Rule


class PortScan(Rule):
    id = "port_scan"
    name = "Port Scan"
    kind = AlertKind.PORT_SCAN

    def evaluate(self, packet, registry, config, now):
        tracker = registry.port_scan_tracker(packet.source_ip)
        evidence = tracker.record_and_check(
            packet.dest_port, packet.dest_ip, config.port_scan_threshold,
            timestamp=packet.captured_at, now=now,
        )
        if evidence is None:
            return None

        return self.candidate(
            packet,
            f"Port scan detected\n"
            f"Attacker IP: {packet.source_ip}\n"
            f"Ports scanned: {evidence['unique_ports']}\n"
            f"Ports: {evidence['ports']}\n"
            f"Target server: {packet.dest_ip}\n"
            f"Pattern: {evidence['pattern']}",
            now,
            evidence=evidence,
            affected_port=None,
        )
