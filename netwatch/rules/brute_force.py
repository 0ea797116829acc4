"""Brute force: sustained connection attempts from a single source.

Counts every packet from a source as an attempt, regardless of target, and
fires when the trailing window reaches the configured threshold (50 in 5
minutes by default).  The tracker is reset after firing so the same backlog
cannot fire again; the source has to re-accumulate.
"""

from netwatch.models import AlertKind
from netwatch.rules import Rule


class BruteForce(Rule):
    id = "brute_force"
    name = "Brute-Force Connection Attempts"
    kind = AlertKind.MULTIPLE_FAILED_ATTEMPTS

    def evaluate(self, packet, registry, config, now):
        tracker = registry.connection_tracker(packet.source_ip)
        evidence = tracker.record_and_check(
            packet, config.connection_attempt_threshold,
            config.time_window_minutes, now=now,
        )
        if evidence is None:
            return None

        return self.candidate(
            packet,
            f"Brute-force attack detected\n"
            f"Attacker IP: {packet.source_ip}\n"
            f"Connection attempts: {evidence['attempts_in_window']} "
            f"({evidence['window_minutes']} min)\n"
            f"Target: {packet.dest_ip}:{packet.dest_port}",
            now,
            evidence=evidence,
        )
