"""Severity-tiered notification.

Tiering is a pure function of severity: the pipeline looks the tier up in
TIER_FOR_SEVERITY, and the notifier looks its handler up by tier.  No
switch statements, no per-kind special cases.
"""

import sys
from enum import Enum

import structlog

from netwatch.models import AlertRecord, Severity

log = structlog.get_logger(__name__)


class NotificationTier(str, Enum):
    IMMEDIATE = "immediate"   # page-worthy, high-visibility banner
    STANDARD = "standard"     # normal notification
    PASSIVE = "passive"       # log-level only
    DEBUG = "debug"           # debug record only


TIER_FOR_SEVERITY = {
    Severity.CRITICAL: NotificationTier.IMMEDIATE,
    Severity.HIGH: NotificationTier.STANDARD,
    Severity.MEDIUM: NotificationTier.PASSIVE,
    Severity.LOW: NotificationTier.DEBUG,
}


def tier_for(severity: Severity) -> NotificationTier:
    return TIER_FOR_SEVERITY[severity]


class ConsoleNotifier:
    """Writes alerts to a stream (stdout by default) and the structured log."""

    def __init__(self, stream=None):
        self._stream = stream if stream is not None else sys.stdout
        self._handlers = {
            NotificationTier.IMMEDIATE: self._immediate,
            NotificationTier.STANDARD: self._standard,
            NotificationTier.PASSIVE: self._passive,
            NotificationTier.DEBUG: self._debug,
        }

    def notify(self, record: AlertRecord, tier: NotificationTier) -> None:
        self._handlers[tier](record)

    def _immediate(self, record):
        bar = "=" * 60
        print(f"\n{bar}\n"
              f"  CRITICAL SECURITY ALERT  {record.alert_id}\n"
              f"  time:   {record.candidate.detected_at:.3f}\n"
              f"  kind:   {record.kind.label} ({record.kind.value})\n"
              f"  source: {record.source_ip or 'unknown'}\n"
              f"  {record.description}\n"
              f"{bar}\n", file=self._stream, flush=True)
        log.critical("alert_critical", alert_id=record.alert_id,
                     kind=record.kind.value, source_ip=record.source_ip)

    def _standard(self, record):
        first_line = record.description.split("\n", 1)[0]
        print(f"[HIGH] {record.kind.label:<26s} {record.source_ip or 'unknown'}\n"
              f"   -> {first_line}", file=self._stream, flush=True)
        log.warning("alert_high", alert_id=record.alert_id,
                    kind=record.kind.value, source_ip=record.source_ip)

    def _passive(self, record):
        log.info("alert_medium", alert_id=record.alert_id,
                 kind=record.kind.value, source_ip=record.source_ip)

    def _debug(self, record):
        log.debug("alert_low", alert_id=record.alert_id,
                  kind=record.kind.value, source_ip=record.source_ip)
