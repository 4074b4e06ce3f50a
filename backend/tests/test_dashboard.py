"""Tests for dashboard aggregates."""
import pytest

from app.room.dashboard import message_reaction_summary, room_stats
from app.room.schemas import SYSTEM_HANDLE, DeliveryStatus, Message, MessageReaction, RoomReaction
from app.transport.schemas import ReactionType

TS = "2024-05-01T10:00:00+00:00"
ME = "匿名の参加者#BEEF"


def _message(id, author="someone", is_system=False):
    return Message(id=id, room_id="r", text="t", created_at=TS, author_handle=author, is_system=is_system)


def _reaction(id, type_):
    return RoomReaction(id=id, room_id="r", type=type_, created_at=TS)


def _message_reaction(id, message_id, author="someone", type_=ReactionType.LIKE):
    return MessageReaction(
        id=id, room_id="r", message_id=message_id, author_handle=author, type=type_, created_at=TS,
    )


class TestRoomStats:
    def test_empty_room(self):
        stats = room_stats([], [])
        assert stats.message_count == 0
        assert stats.reaction_count == 0
        assert stats.messages.goal == 500
        assert stats.reactions.goal == 1000
        assert set(stats.breakdown) == set(ReactionType)
        assert all(share.percent == 0.0 for share in stats.breakdown.values())

    def test_system_notice_not_counted(self):
        messages = [_message("n", author=SYSTEM_HANDLE, is_system=True), _message("m1")]
        assert room_stats(messages, []).message_count == 1

    def test_breakdown_percentages(self):
        reactions = [
            _reaction("1", ReactionType.LIKE),
            _reaction("2", ReactionType.LIKE),
            _reaction("3", ReactionType.IDEA),
            _reaction("4", ReactionType.QUESTION),
        ]
        stats = room_stats([], reactions)
        assert stats.breakdown[ReactionType.LIKE].count == 2
        assert stats.breakdown[ReactionType.LIKE].percent == pytest.approx(50.0)
        assert stats.breakdown[ReactionType.CONFUSED].count == 0

    def test_progress_is_capped(self):
        messages = [_message(str(i)) for i in range(6)]
        stats = room_stats(messages, [], message_goal=4)
        assert stats.messages.percent == 100.0
        assert stats.messages.current == 6


class TestMessageReactionSummary:
    def test_counts_only_target_message(self):
        reactions = [
            _message_reaction("1", "m1"),
            _message_reaction("2", "m1", type_=ReactionType.IDEA),
            _message_reaction("3", "m2"),
        ]
        summary = message_reaction_summary("m1", reactions, ME)
        assert summary.count == 2
        assert summary.by_type[ReactionType.LIKE] == 1
        assert summary.by_type[ReactionType.IDEA] == 1
        assert summary.reacted_by_me is False

    def test_reacted_by_me(self):
        summary = message_reaction_summary("m1", [_message_reaction("1", "m1", author=ME)], ME)
        assert summary.reacted_by_me is True

    def test_failed_own_reaction_not_counted_as_mine(self):
        failed = _message_reaction("1", "m1", author=ME).model_copy(update={"delivery": DeliveryStatus.FAILED})
        summary = message_reaction_summary("m1", [failed], ME)
        assert summary.reacted_by_me is False
