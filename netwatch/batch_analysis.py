"""Network-wide heuristics run over a batch of recent packets.

Too noisy or too expensive to evaluate per packet, so the engine runs these
on a timer against whatever the persistence side returns for the last few
minutes.  Each function is pure: packets in, candidates out.
"""

from __future__ import annotations

import ipaddress
from collections import Counter

from netwatch.models import AlertCandidate, AlertKind, PacketRecord


def is_private_ip(ip: str) -> bool:
    """RFC 1918 / loopback / link-local.  Unparseable strings count as external."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


def find_heavy_hitters(packets: list[PacketRecord], factor: int,
                       now: float) -> list[AlertCandidate]:
    """Sources responsible for more than ``factor`` x the per-source average."""
    counts = Counter(p.source_ip for p in packets)
    if not counts:
        return []

    average = sum(counts.values()) / len(counts)
    alerts = []
    for source_ip, count in counts.most_common():
        if count <= average * factor:
            break
        alerts.append(AlertCandidate(
            kind=AlertKind.SUSPICIOUS_CONNECTION,
            severity=AlertKind.SUSPICIOUS_CONNECTION.default_severity,
            description=(
                f"Abnormally active source\n"
                f"Source IP: {source_ip}\n"
                f"Packets in batch: {count} (per-source average: {average:.1f})\n"
                f"Likely automated tooling or bot activity"
            ),
            source_ip=source_ip,
            detected_at=now,
            evidence={
                "heuristic": "heavy_hitter",
                "packet_count": count,
                "average_per_source": round(average, 2),
                "factor": factor,
            },
        ))
    return alerts


def find_protocol_flood(packets: list[PacketRecord], share: float,
                        now: float) -> list[AlertCandidate]:
    """Any single protocol carrying more than ``share`` of the batch."""
    total = len(packets)
    if not total:
        return []

    counts = Counter(p.protocol.value for p in packets)
    alerts = []
    for protocol, count in counts.items():
        if count <= total * share:
            continue
        pct = count * 100 / total
        alerts.append(AlertCandidate(
            kind=AlertKind.PROTOCOL_FLOOD,
            severity=AlertKind.PROTOCOL_FLOOD.default_severity,
            description=(
                f"Possible {protocol} flood\n"
                f"{protocol} packets: {count} of {total} ({pct:.0f}%)"
            ),
            detected_at=now,
            evidence={
                "heuristic": "protocol_flood",
                "protocol": protocol,
                "packet_count": count,
                "batch_size": total,
                "share_pct": round(pct, 1),
                "distribution": dict(counts),
            },
        ))
    return alerts


def find_distributed_sources(packets: list[PacketRecord], threshold: int,
                             now: float) -> list[AlertCandidate]:
    """More than ``threshold`` distinct external sources in one batch."""
    external = {p.source_ip for p in packets if not is_private_ip(p.source_ip)}
    if len(external) <= threshold:
        return []

    return [AlertCandidate(
        kind=AlertKind.DDOS_ATTACK,
        severity=AlertKind.DDOS_ATTACK.default_severity,
        description=(
            f"Many external sources in one window\n"
            f"Distinct external source IPs: {len(external)} (threshold: {threshold})\n"
            f"Possible coordinated or distributed attack"
        ),
        detected_at=now,
        evidence={
            "heuristic": "distributed_sources",
            "external_sources": len(external),
            "threshold": threshold,
            "sample": sorted(external)[:10],
        },
    )]


def analyze_batch(packets: list[PacketRecord], config, now: float) -> list[AlertCandidate]:
    return [
        *find_heavy_hitters(packets, config.heavy_hitter_factor, now),
        *find_protocol_flood(packets, config.protocol_flood_share, now),
        *find_distributed_sources(packets, config.external_source_threshold, now),
    ]
