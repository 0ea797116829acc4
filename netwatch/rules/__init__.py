# Per-packet classification rules.
#
# Each rule lives in its own file and implements evaluate().  Rules that need
# history record the packet into a tracker obtained from the registry and
# read it back through the tracker's methods; they never touch the registry's
# maps directly.  Severity follows the kind's default severity.
# ALL_RULES fixes the evaluation order.

from netwatch.models import AlertCandidate, AlertKind, PacketRecord, Severity


class Rule:
    """Base classification rule. Subclass and implement evaluate()."""

    id: str
    name: str
    kind: AlertKind

    @property
    def severity(self) -> Severity:
        return self.kind.default_severity

    def evaluate(self, packet: PacketRecord, registry, config,
                 now: float) -> AlertCandidate | None:
        """Inspect one packet (updating trackers as needed).

        Returns a candidate alert when the rule's condition is met, else None.
        """
        raise NotImplementedError

    def candidate(self, packet: PacketRecord | None, description: str,
                  now: float, evidence: dict | None = None,
                  **fields) -> AlertCandidate:
        """Build a candidate stamped with this rule's kind and severity."""
        base = {
            "source_ip": packet.source_ip if packet else None,
            "dest_ip": packet.dest_ip if packet else None,
            "affected_port": packet.dest_port if packet else None,
        }
        base.update(fields)
        return AlertCandidate(
            kind=self.kind,
            severity=self.severity,
            description=description,
            detected_at=now,
            evidence={"rule_id": self.id, **(evidence or {})},
            **base,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"


from netwatch.rules.large_packet import LargePacket
from netwatch.rules.suspicious_port import SuspiciousPortAccess
from netwatch.rules.brute_force import BruteForce
from netwatch.rules.port_scan import PortScan
from netwatch.rules.traffic_spike import TrafficSpike

ALL_RULES = [LargePacket(), SuspiciousPortAccess(), BruteForce(), PortScan(), TrafficSpike()]
