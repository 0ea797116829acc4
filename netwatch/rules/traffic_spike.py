"""Traffic spike: too many packets inside one wall-clock minute.

Network-wide, not per source.  Keeps firing for every packet past the
threshold until the minute bucket rolls over; the alert pipeline's cooldown
collapses those into one notification.
"""

from netwatch.models import AlertKind
from netwatch.rules import Rule
from netwatch.trackers import minute_bucket


class TrafficSpike(Rule):
    id = "traffic_spike"
    name = "Traffic Spike"
    kind = AlertKind.TRAFFIC_SPIKE

    def evaluate(self, packet, registry, config, now):
        # Keyed on the engine clock; capture timestamps are not trusted here.
        bucket = minute_bucket(now)
        tracker = registry.traffic_tracker(bucket)
        count = tracker.record(packet, now=now)

        threshold = config.traffic_spike_threshold
        if count < threshold:
            return None

        summary = tracker.summary(now)
        return self.candidate(
            None,
            f"Network traffic spike\n"
            f"Minute bucket: {bucket}\n"
            f"Packets: {count}\n"
            f"Unique source IPs: {summary['unique_sources']}\n"
            f"Threshold: {threshold}",
            now,
            evidence={
                **summary,
                "threshold": threshold,
                "volume_anomalous": tracker.is_volume_anomalous(now),
            },
        )
