"""Orchestration of one assistant turn.

Flow, strictly sequential per conversation:
1. Load history (ownership checked)
2. Route: synthesize SQL or answer directly
3. Guard -> execute -> compose, or compose directly
4. Append the user turn, then the assistant turn
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.schemas import AskResult, Decision, Outcome, Turn, TurnRole
from app.ai_feature.backend import GenerationBackend, build_backend
from app.ai_feature.composer import AnswerComposer
from app.ai_feature.conversation import ConversationStore
from app.ai_feature.errors import ExecutionFailed
from app.ai_feature.executor import QueryExecutor
from app.ai_feature.guard import SqlGuard
from app.ai_feature.schema import SchemaCatalog
from app.ai_feature.synthesizer import IntentRouter, SqlSynthesizer

logger = logging.getLogger(__name__)


class Assistant:
    def __init__(
        self,
        store: ConversationStore,
        router: IntentRouter,
        guard: SqlGuard,
        executor: QueryExecutor,
        composer: AnswerComposer,
        catalog: SchemaCatalog,
    ):
        self.store = store
        self.router = router
        self.guard = guard
        self.executor = executor
        self.composer = composer
        self.catalog = catalog

    async def ask(
        self, user_id: int, question: str, conversation_id: Optional[str] = None
    ) -> str:
        result = await self.ask_extended(user_id, question, conversation_id)
        return result.answer

    async def ask_extended(
        self, user_id: int, question: str, conversation_id: Optional[str] = None
    ) -> AskResult:
        """
        Answer one question inside a conversation.

        Raises NotOwned when the conversation belongs to someone else and
        ValueError for an empty question. Every other failure is turned into
        an answer.
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("Question must not be empty")

        conversation_id = conversation_id or uuid.uuid4().hex

        async with self.store.lock(conversation_id):
            history = await self.store.load(conversation_id, user_id)
            routing = await self.router.route(user_id, question, history)

            query_used = None
            if routing.decision == Decision.NEEDS_QUERY:
                sql_text = routing.generated.sql_text
                verdict = self.guard.check(sql_text, self.catalog.describe())

                if not verdict.approved:
                    logger.warning(
                        f"[User {user_id}] Generated SQL rejected: {verdict.rejection_reason} "
                        f"| question={question!r} sql={sql_text!r}"
                    )
                    answer = self.composer.explain_rejection()
                    outcome = Outcome.GUARD_REJECTED
                else:
                    try:
                        result = await self.executor.execute(verdict.normalized_sql)
                    except ExecutionFailed as e:
                        logger.warning(f"[User {user_id}] Query failed ({e.kind}): {e.reason}")
                        answer = self.composer.explain_execution_failure(e)
                        outcome = Outcome.EXECUTION_FAILED
                    else:
                        answer = await self.composer.compose(
                            user_id,
                            question,
                            (verdict.normalized_sql, result),
                            history,
                        )
                        query_used = verdict.normalized_sql
                        outcome = (
                            Outcome.COMPOSER_UNAVAILABLE
                            if answer.fallback
                            else Outcome.ANSWERED_WITH_QUERY
                        )
            else:
                answer = await self.composer.compose(
                    user_id, question, None, history, notice=routing.notice
                )
                outcome = (
                    Outcome.GENERATION_UNAVAILABLE
                    if routing.generated.unavailable
                    else Outcome.ANSWERED_DIRECTLY
                )

            await self.store.append(
                conversation_id, user_id, Turn(role=TurnRole.USER, text=question)
            )
            await self.store.append(
                conversation_id,
                user_id,
                Turn(role=TurnRole.ASSISTANT, text=answer.text, query_used=query_used),
            )

        logger.info(f"[User {user_id}] Conversation {conversation_id} answered: {outcome.value}")
        return AskResult(
            answer=answer.text,
            conversation_id=conversation_id,
            outcome=outcome,
            query_used=query_used,
        )


def build_assistant(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    readonly_engine: AsyncEngine,
    catalog: SchemaCatalog,
    backend: Optional[GenerationBackend] = None,
) -> Assistant:
    backend = backend or build_backend(settings)
    synthesizer = SqlSynthesizer(
        backend,
        temperature=settings.SQL_GENERATION_TEMPERATURE,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
        history_max_turns=settings.HISTORY_MAX_TURNS,
        history_max_tokens=settings.HISTORY_MAX_TOKENS,
    )
    composer = AnswerComposer(
        backend,
        temperature=settings.ANSWER_TEMPERATURE,
        max_tokens=settings.ANSWER_MAX_TOKENS,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
        history_max_turns=settings.HISTORY_MAX_TURNS,
        history_max_tokens=settings.HISTORY_MAX_TOKENS,
    )
    return Assistant(
        store=ConversationStore(session_factory),
        router=IntentRouter(synthesizer, catalog),
        guard=SqlGuard(max_rows=settings.SQL_MAX_ROWS, max_length=settings.SQL_MAX_LENGTH),
        executor=QueryExecutor(
            readonly_engine,
            max_rows=settings.SQL_MAX_ROWS,
            timeout_seconds=settings.SQL_STATEMENT_TIMEOUT_SECONDS,
        ),
        composer=composer,
        catalog=catalog,
    )
