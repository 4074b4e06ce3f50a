"""Mention resolution over the message collection.

Pure functions of (messages, local handle): nothing here holds state, and
callers recompute whenever the collection changes.
"""
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from .schemas import Message

# "@" followed by a run of non-whitespace, as typed in the composer.
MENTION_PATTERN = re.compile(r"@(\S+)")


def extract_mentions(text: str) -> List[str]:
    """Return handles written as ``@handle`` in *text*, in order, without repeats."""
    return list(dict.fromkeys(MENTION_PATTERN.findall(text)))


def is_addressed_to(message: Message, local_handle: str) -> bool:
    """Whether *message* mentions *local_handle*."""
    return local_handle in message.mentioned_handles


def addressable_handles(messages: Iterable[Message], local_handle: str) -> List[str]:
    """Every handle that can be mentioned, for autocomplete.

    The local handle comes first, followed by author handles, host display
    names and previously mentioned handles in order of first appearance.
    System notices contribute nothing.
    """
    seen = {local_handle: None}
    for message in messages:
        if message.is_system:
            continue
        seen.setdefault(message.author_handle, None)
        if message.is_from_host and message.host_display_name:
            seen.setdefault(message.host_display_name, None)
        for handle in message.mentioned_handles:
            seen.setdefault(handle, None)
    return list(seen)


@dataclass
class MentionView:
    """Resolver output for one collection state."""
    handles: List[str] = field(default_factory=list)
    addressed_to_me: Set[str] = field(default_factory=set)


def resolve_mentions(messages: List[Message], local_handle: str) -> MentionView:
    return MentionView(
        handles=addressable_handles(messages, local_handle),
        addressed_to_me={m.id for m in messages if is_addressed_to(m, local_handle)},
    )
