"""Typed records that flow through the engine.

PacketRecord comes in from the capture side, AlertCandidate is what a rule
produces, AlertRecord is what the persistence collaborator hands back once a
candidate has been stored.  Everything except the resolution fields on
AlertRecord is immutable.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from netwatch.errors import MalformedPacket


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    ICMP = "ICMP"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value) -> "Protocol":
        """Case-insensitive lookup; anything unrecognised is OTHER."""
        if isinstance(value, Protocol):
            return value
        if not value:
            return cls.OTHER
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.OTHER


class Severity(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class AlertKind(str, Enum):
    # network
    TRAFFIC_SPIKE = "TRAFFIC_SPIKE"
    PORT_SCAN = "PORT_SCAN"
    SYN_FLOOD = "SYN_FLOOD"
    DDOS_ATTACK = "DDOS_ATTACK"
    PROTOCOL_FLOOD = "PROTOCOL_FLOOD"
    # packet
    LARGE_PACKET = "LARGE_PACKET"
    MALFORMED_PACKET = "MALFORMED_PACKET"
    SUSPICIOUS_PAYLOAD = "SUSPICIOUS_PAYLOAD"
    # connection
    SUSPICIOUS_CONNECTION = "SUSPICIOUS_CONNECTION"
    MULTIPLE_FAILED_ATTEMPTS = "MULTIPLE_FAILED_ATTEMPTS"
    BRUTE_FORCE_ATTACK = "BRUTE_FORCE_ATTACK"
    # system
    SYSTEM_OVERLOAD = "SYSTEM_OVERLOAD"
    CAPTURE_FAILURE = "CAPTURE_FAILURE"

    @property
    def default_severity(self) -> Severity:
        return _DEFAULT_SEVERITY.get(self, Severity.MEDIUM)

    @property
    def label(self) -> str:
        return _LABELS[self]


_DEFAULT_SEVERITY = {
    # severities the engine emits
    AlertKind.TRAFFIC_SPIKE: Severity.CRITICAL,
    AlertKind.PORT_SCAN: Severity.HIGH,
    AlertKind.MULTIPLE_FAILED_ATTEMPTS: Severity.HIGH,
    AlertKind.LARGE_PACKET: Severity.MEDIUM,
    AlertKind.SUSPICIOUS_CONNECTION: Severity.MEDIUM,
    AlertKind.PROTOCOL_FLOOD: Severity.MEDIUM,
    AlertKind.DDOS_ATTACK: Severity.MEDIUM,
    # kinds raised only by external producers
    AlertKind.SYN_FLOOD: Severity.CRITICAL,
    AlertKind.BRUTE_FORCE_ATTACK: Severity.CRITICAL,
    AlertKind.MALFORMED_PACKET: Severity.MEDIUM,
    AlertKind.SUSPICIOUS_PAYLOAD: Severity.LOW,
    AlertKind.SYSTEM_OVERLOAD: Severity.LOW,
}

_LABELS = {
    AlertKind.TRAFFIC_SPIKE: "Traffic spike",
    AlertKind.PORT_SCAN: "Port scan",
    AlertKind.SYN_FLOOD: "SYN flood",
    AlertKind.DDOS_ATTACK: "DDoS attack",
    AlertKind.PROTOCOL_FLOOD: "Protocol flood",
    AlertKind.LARGE_PACKET: "Large packet",
    AlertKind.MALFORMED_PACKET: "Malformed packet",
    AlertKind.SUSPICIOUS_PAYLOAD: "Suspicious payload",
    AlertKind.SUSPICIOUS_CONNECTION: "Suspicious connection",
    AlertKind.MULTIPLE_FAILED_ATTEMPTS: "Multiple failed attempts",
    AlertKind.BRUTE_FORCE_ATTACK: "Brute-force attack",
    AlertKind.SYSTEM_OVERLOAD: "System overload",
    AlertKind.CAPTURE_FAILURE: "Packet capture failure",
}


class ScanPattern(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    COMMON_PORTS = "COMMON_PORTS"
    RANDOM = "RANDOM"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


# ---------------------------------------------------------------------------
# Packets
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PacketRecord:
    source_ip: str
    dest_ip: str
    source_port: int | None = None
    dest_port: int | None = None
    protocol: Protocol = Protocol.OTHER
    size_bytes: int | None = None
    payload_bytes: int | None = None
    flags: frozenset[str] = frozenset()
    captured_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict) -> "PacketRecord":
        """Decode the JSON shape published on the packet topic."""
        if not isinstance(data, dict):
            raise MalformedPacket(f"expected an object, got {type(data).__name__}")

        source_ip = data.get("source_ip")
        dest_ip = data.get("dest_ip")
        if not source_ip or not dest_ip:
            raise MalformedPacket("packet is missing source_ip or dest_ip")

        captured_at = data.get("captured_at")
        try:
            return cls(
                source_ip=str(source_ip),
                dest_ip=str(dest_ip),
                source_port=_optional_int(data.get("source_port")),
                dest_port=_optional_int(data.get("dest_port")),
                protocol=Protocol.parse(data.get("protocol")),
                size_bytes=_optional_int(data.get("size_bytes")),
                payload_bytes=_optional_int(data.get("payload_bytes")),
                flags=_parse_flags(data.get("flags")),
                captured_at=float(captured_at) if captured_at is not None else time.time(),
            )
        except (TypeError, ValueError) as e:
            raise MalformedPacket(f"unparseable packet field: {e}") from e

    def to_dict(self) -> dict:
        return {
            "source_ip": self.source_ip,
            "dest_ip": self.dest_ip,
            "source_port": self.source_port,
            "dest_port": self.dest_port,
            "protocol": self.protocol.value,
            "size_bytes": self.size_bytes,
            "payload_bytes": self.payload_bytes,
            "flags": sorted(self.flags),
            "captured_at": self.captured_at,
        }


def _optional_int(value) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"boolean is not a valid integer field: {value!r}")
    return int(value)


def _parse_flags(value) -> frozenset[str]:
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(str(f).strip().upper() for f in value if str(f).strip())


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlertCandidate:
    kind: AlertKind | None
    severity: Severity | None
    description: str
    source_ip: str | None = None
    dest_ip: str | None = None
    affected_port: int | None = None
    detected_at: float = field(default_factory=time.time)
    evidence: dict = field(default_factory=dict)

    @property
    def dedup_key(self) -> tuple[str, str]:
        kind = self.kind.value if isinstance(self.kind, AlertKind) else str(self.kind)
        return (self.source_ip or "unknown", kind)


@dataclass
class AlertRecord:
    alert_id: str
    candidate: AlertCandidate
    resolved: bool = False
    resolved_at: float | None = None
    resolved_by: str | None = None

    @property
    def kind(self) -> AlertKind:
        return self.candidate.kind

    @property
    def severity(self) -> Severity:
        return self.candidate.severity

    @property
    def source_ip(self) -> str | None:
        return self.candidate.source_ip

    @property
    def description(self) -> str:
        return self.candidate.description

    def mark_resolved(self, resolved_by: str, now: float | None = None) -> None:
        self.resolved = True
        self.resolved_at = time.time() if now is None else now
        self.resolved_by = resolved_by

    def to_dict(self) -> dict:
        c = self.candidate
        return {
            "alert_id": self.alert_id,
            "kind": c.kind.value,
            "label": c.kind.label,
            "severity": c.severity.name,
            "description": c.description,
            "source_ip": c.source_ip,
            "dest_ip": c.dest_ip,
            "affected_port": c.affected_port,
            "detected_at": c.detected_at,
            "evidence": c.evidence,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
        }
