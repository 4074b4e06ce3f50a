"""Tests for mention extraction and resolution."""
from app.room.mentions import (
    addressable_handles,
    extract_mentions,
    is_addressed_to,
    resolve_mentions,
)
from app.room.schemas import SYSTEM_HANDLE, Message

ME = "匿名の参加者#BEEF"


def _message(id, author="匿名の参加者#CAFE", mentions=(), is_host=False, host_name=None, is_system=False):
    return Message(
        id=id,
        room_id="room-1",
        text="...",
        created_at="2024-05-01T10:00:00+00:00",
        author_handle=author,
        is_from_host=is_host,
        host_display_name=host_name,
        mentioned_handles=list(mentions),
        is_system=is_system,
    )


class TestExtractMentions:
    def test_single_mention(self):
        assert extract_mentions("hi @alice") == ["alice"]

    def test_mention_runs_until_whitespace(self):
        assert extract_mentions("@匿名の参加者#BEEF どう思う?") == ["匿名の参加者#BEEF"]

    def test_repeats_collapsed_in_order(self):
        assert extract_mentions("@b @a @b") == ["b", "a"]

    def test_no_mentions(self):
        assert extract_mentions("mail me at nobody") == []

    def test_bare_at_sign_ignored(self):
        assert extract_mentions("@ alone") == []


class TestMessageMentions:
    def test_mentioned_handles_are_unique(self):
        message = _message("m1", mentions=["a", "b", "a"])
        assert message.mentioned_handles == ["a", "b"]

    def test_is_addressed_to(self):
        assert is_addressed_to(_message("m1", mentions=[ME]), ME)
        assert not is_addressed_to(_message("m2", mentions=["someone"]), ME)


class TestAddressableHandles:
    def test_local_handle_first(self):
        assert addressable_handles([], ME) == [ME]

    def test_collects_authors_hosts_and_mentions(self):
        messages = [
            _message("m1", author="A"),
            _message("m2", author="B", is_host=True, host_name="Speaker"),
            _message("m3", author="A", mentions=["C", ME]),
        ]
        assert addressable_handles(messages, ME) == [ME, "A", "B", "Speaker", "C"]

    def test_system_messages_contribute_nothing(self):
        notice = _message("n", author=SYSTEM_HANDLE, is_system=True)
        assert addressable_handles([notice], ME) == [ME]


def test_resolve_mentions():
    messages = [
        _message("m1", mentions=[ME]),
        _message("m2"),
        _message("m3", mentions=["x", ME]),
    ]
    view = resolve_mentions(messages, ME)
    assert view.addressed_to_me == {"m1", "m3"}
    assert view.handles[0] == ME
