"""Error taxonomy for scrapes, encoding and startup.

Retryable errors put the scheduler into backoff and keep the previous
snapshot visible. Schema errors disable a single statistics group.
Authentication errors halt scheduling for the target.
"""
from typing import Optional


class ExporterError(Exception):
    """Base class for all exporter errors."""


class ConfigurationError(ExporterError):
    """Invalid startup configuration (unparseable address, bad TLS pair...)."""


class EncodingError(ExporterError):
    """Failure while serializing a snapshot. Indicates an internal defect."""


class ScrapeError(ExporterError):
    """An error raised while querying or mapping one statistics group."""

    kind = "internal"
    retryable = True
    fatal_for_target = False

    def __init__(self, message: str, group: Optional[str] = None):
        super().__init__(message)
        self.group = group

    def __str__(self):
        base = super().__str__()
        if self.group:
            return f"[{self.group}] {base}"
        return base


class DatabaseConnectionError(ScrapeError):
    """Connection refused, reset or dropped."""

    kind = "connection"


class QueryTimeoutError(ScrapeError):
    """The per-query statement timeout fired."""

    kind = "timeout"


class TransientQueryError(ScrapeError):
    """Serialization failure, deadlock and other errors worth retrying."""

    kind = "transient"


class SchemaError(ScrapeError):
    """The source does not look like what the descriptors declare.

    Missing views, functions or columns, NULL-free columns with values that
    can't be coerced, inconsistent histogram buckets. Fatal for the group.
    """

    kind = "schema"
    retryable = False


class AuthenticationError(ScrapeError):
    """Credentials were rejected. Fatal for the target."""

    kind = "authentication"
    retryable = False
    fatal_for_target = True
