"""Exception types raised inside netwatch.

The engine never lets these escape ``DetectionEngine.ingest``; they exist
so the component boundaries can tell a bad packet from a broken sink.
"""


class NetwatchError(Exception):
    """Base class for everything netwatch raises on purpose."""


class MalformedPacket(NetwatchError, ValueError):
    """A wire record is missing required fields or has unparseable values."""


class ConfigError(NetwatchError, ValueError):
    """A configuration file or override failed validation."""


class PersistenceError(NetwatchError):
    """The persistence collaborator rejected or failed to store an alert."""
