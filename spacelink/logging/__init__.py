"""Logging helpers for spacelink."""

from spacelink.logging.filters import StreamRoutingFilter
from spacelink.logging.formatters import StreamFormatter

__all__ = ["StreamFormatter", "StreamRoutingFilter"]
