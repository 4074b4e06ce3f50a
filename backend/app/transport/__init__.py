"""Room data transports.

Normalizes the persistence/transport provider into a bulk query, an insert
and a per-room change feed, with a degraded in-memory adapter exposing the
identical interface when no provider is configured.
"""
from .base import InsertCallback, Subscription, Transport
from .degraded import DegradedStore, DegradedTransport
from .resolver import build_transport
from .schemas import (
    MessageReactionRow,
    MessageRow,
    ReactionRow,
    ReactionType,
    Row,
    Table,
    TransportError,
    TransportMode,
    TransportResult,
)
from .supabase import SupabaseTransport

__all__ = [
    "DegradedStore",
    "DegradedTransport",
    "InsertCallback",
    "MessageReactionRow",
    "MessageRow",
    "ReactionRow",
    "ReactionType",
    "Row",
    "Subscription",
    "SupabaseTransport",
    "Table",
    "Transport",
    "TransportError",
    "TransportMode",
    "TransportResult",
    "build_transport",
]
