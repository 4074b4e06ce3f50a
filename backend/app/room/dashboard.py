"""Room dashboard aggregates: participation goals and sentiment breakdown."""
from typing import Dict, List

from pydantic import BaseModel

from app.transport.schemas import ReactionType

from .schemas import DeliveryStatus, Message, MessageReaction, RoomReaction


class GoalProgress(BaseModel):
    current: int
    goal: int
    percent: float  # capped at 100


class ReactionShare(BaseModel):
    count: int
    percent: float


class RoomStats(BaseModel):
    """Counts shown above the message list."""
    message_count: int
    reaction_count: int
    messages: GoalProgress
    reactions: GoalProgress
    breakdown: Dict[ReactionType, ReactionShare]


class MessageReactionSummary(BaseModel):
    message_id: str
    count: int
    by_type: Dict[ReactionType, int]
    reacted_by_me: bool


def _progress(current: int, goal: int) -> GoalProgress:
    return GoalProgress(current=current, goal=goal, percent=min(current / goal * 100, 100.0))


def room_stats(
    messages: List[Message],
    reactions: List[RoomReaction],
    message_goal: int = 500,
    reaction_goal: int = 1000,
) -> RoomStats:
    """Aggregate the room's collections.

    System notices are not counted as messages. Every reaction type appears
    in ``breakdown``, with zero counts when nobody used it.
    """
    message_count = sum(1 for m in messages if not m.is_system)
    total = len(reactions)

    counts = {reaction_type: 0 for reaction_type in ReactionType}
    for reaction in reactions:
        counts[reaction.type] += 1

    breakdown = {
        reaction_type: ReactionShare(
            count=count,
            percent=(count / total * 100) if total else 0.0,
        )
        for reaction_type, count in counts.items()
    }
    return RoomStats(
        message_count=message_count,
        reaction_count=total,
        messages=_progress(message_count, message_goal),
        reactions=_progress(total, reaction_goal),
        breakdown=breakdown,
    )


def message_reaction_summary(
    message_id: str,
    message_reactions: List[MessageReaction],
    local_handle: str,
) -> MessageReactionSummary:
    """Reaction badge data for a single message."""
    for_message = [r for r in message_reactions if r.message_id == message_id]
    by_type = {reaction_type: 0 for reaction_type in ReactionType}
    for reaction in for_message:
        by_type[reaction.type] += 1
    return MessageReactionSummary(
        message_id=message_id,
        count=len(for_message),
        by_type=by_type,
        reacted_by_me=any(
            r.author_handle == local_handle and r.delivery is not DeliveryStatus.FAILED
            for r in for_message
        ),
    )
