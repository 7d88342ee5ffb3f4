import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import models
from app.core.schemas import ConversationSummary, Turn, TurnResponse, TurnRole
from app.ai_feature.errors import NotOwned

logger = logging.getLogger(__name__)

# Rough estimate used to keep history inside the backend's context window
TOKENS_PER_CHAR = 0.25
TITLE_LENGTH = 80


def estimate_tokens(text: str) -> int:
    return int(len(text) * TOKENS_PER_CHAR)


def trim_history(turns: Sequence[Turn], max_turns: int, max_tokens: int) -> List[Turn]:
    """
    Keep the newest turns that fit the token budget, in chronological order.
    The newest turn is always kept, even when it alone exceeds the budget.
    """
    if not turns:
        return []

    window = list(turns)[-max_turns:] if max_turns > 0 else []
    kept: List[Turn] = []
    used = 0
    for turn in reversed(window):
        cost = estimate_tokens(turn.text)
        if used + cost > max_tokens:
            break
        kept.append(turn)
        used += cost

    if not kept:
        kept.append(turns[-1])

    kept.reverse()
    return kept


class ConversationStore:
    """
    Append-only turn log keyed by conversation id and scoped to its owner.

    Each load/append runs in its own session. Whole turns of one conversation
    are serialized with `lock()`; the append itself also locks the
    conversation row so the next seq is computed atomically.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def lock(self, conversation_id: str):
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._waiters[conversation_id] = self._waiters.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[conversation_id] -= 1
            if self._waiters[conversation_id] == 0:
                del self._waiters[conversation_id]
                del self._locks[conversation_id]

    async def _get_owned(
        self, session: AsyncSession, conversation_id: str, user_id: int, for_update: bool = False
    ):
        query = select(models.AssistantConversation).where(
            models.AssistantConversation.id == conversation_id
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        conversation = result.scalars().first()

        if conversation is not None and conversation.owner_id != user_id:
            logger.warning(
                f"[User {user_id}] Access to conversation {conversation_id} denied"
            )
            raise NotOwned("Conversation not found")
        return conversation

    async def load(self, conversation_id: str, user_id: int) -> List[TurnResponse]:
        async with self.session_factory() as session:
            conversation = await self._get_owned(session, conversation_id, user_id)
            if conversation is None:
                return []

            query = (
                select(models.AssistantTurn)
                .where(models.AssistantTurn.conversation_id == conversation_id)
                .order_by(models.AssistantTurn.seq)
            )
            result = await session.execute(query)
            return [TurnResponse.model_validate(row) for row in result.scalars().all()]

    async def append(self, conversation_id: str, user_id: int, turn: Turn) -> None:
        async with self.session_factory() as session:
            try:
                conversation = await self._get_owned(
                    session, conversation_id, user_id, for_update=True
                )
                if conversation is None:
                    title = turn.text[:TITLE_LENGTH] if turn.role == TurnRole.USER else None
                    conversation = models.AssistantConversation(
                        id=conversation_id, owner_id=user_id, title=title
                    )
                    session.add(conversation)
                    await session.flush()
                    next_seq = 1
                else:
                    seq_query = select(func.max(models.AssistantTurn.seq)).where(
                        models.AssistantTurn.conversation_id == conversation_id
                    )
                    next_seq = ((await session.execute(seq_query)).scalar() or 0) + 1

                session.add(
                    models.AssistantTurn(
                        conversation_id=conversation_id,
                        seq=next_seq,
                        role=turn.role.value,
                        text=turn.text,
                        query_used=turn.query_used,
                    )
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def list_conversations(self, user_id: int) -> List[ConversationSummary]:
        async with self.session_factory() as session:
            query = (
                select(
                    models.AssistantConversation.id,
                    models.AssistantConversation.title,
                    models.AssistantConversation.created_at,
                    func.count(models.AssistantTurn.id).label("turn_count"),
                )
                .outerjoin(
                    models.AssistantTurn,
                    models.AssistantTurn.conversation_id == models.AssistantConversation.id,
                )
                .where(models.AssistantConversation.owner_id == user_id)
                .group_by(
                    models.AssistantConversation.id,
                    models.AssistantConversation.title,
                    models.AssistantConversation.created_at,
                )
                .order_by(models.AssistantConversation.created_at.desc())
            )
            result = await session.execute(query)
            return [
                ConversationSummary(
                    conversation_id=row.id,
                    title=row.title,
                    created_at=row.created_at,
                    turn_count=row.turn_count,
                )
                for row in result.all()
            ]
