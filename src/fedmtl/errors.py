"""
Exceptions raised by the aggregation engine.

All errors are fatal to the current round: the server aborts before any
checkpoint write-back and re-raises. Retrying is left to the caller.
"""


class AggregationError(Exception):
    """Base class for every error raised by fedmtl."""


class ShapeMismatchError(AggregationError, ValueError):
    """Two weight maps disagree on key sets or tensor shapes where they must agree."""


class CollisionError(AggregationError, KeyError):
    """Canonicalization mapped two distinct parameter names to one logical name."""

    def __str__(self):
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ""


class KeyFormatError(AggregationError, ValueError):
    """A decoder key does not follow the configured naming scheme."""


class UnsupportedStrategyError(AggregationError, ValueError):
    """An aggregation strategy was requested that cannot run in the current setup."""
