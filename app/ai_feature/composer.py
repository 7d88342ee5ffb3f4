import asyncio
import json
import logging
from typing import List, Optional, Sequence, Tuple

from app.core.schemas import ComposedAnswer, QueryResult, Turn
from app.ai_feature.backend import GenerationBackend
from app.ai_feature.conversation import trim_history
from app.ai_feature.errors import ComposerUnavailable, ExecutionFailed, GenerationUnavailable
from app.ai_feature.prompts import (
    ANSWER_WITH_RESULTS_PROMPT,
    DIRECT_ANSWER_PROMPT,
    RESULTS_MESSAGE,
)

logger = logging.getLogger(__name__)

PROMPT_ROWS = 20
FALLBACK_ROWS = 20

FALLBACK_CAPTION = (
    "I found the data below but could not write a summary right now. "
    "Here are the raw results:"
)
APOLOGY = "Sorry, I can't answer right now. Please try again in a moment."
DEGRADED_APOLOGY = (
    "Sorry, the assistant is unavailable right now, so I can't look anything up. "
    "Please try again in a moment."
)
REJECTION_TEXT = (
    "I can't run that request: it would need data or operations I'm not permitted to use. "
    "I can only read the business data you have access to. Try asking a different question."
)

EXECUTION_FAILURE_TEXT = {
    "timeout": "That lookup took too long. Try narrowing it down, for example to a date range.",
    "missing_object": (
        "The data you asked about isn't available in the system. "
        "Try phrasing the question more simply or with different terms."
    ),
    "invalid_date": "I couldn't understand the date. Please write dates as year-month-day, e.g. 2024-05-23.",
    "division_by_zero": (
        "The calculation divided by zero. Some values in the data you filtered may be missing."
    ),
    "too_complex": "That question is too complex to look up at once. Try splitting it into smaller questions.",
    "connection": "I couldn't reach the database just now. Please try again in a moment.",
}
EXECUTION_FAILURE_DEFAULT = (
    "I couldn't look that up. Please try again, or rephrase the question more clearly."
)

QueryContext = Optional[Tuple[str, QueryResult]]


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def format_results(result: QueryResult, limit: int = PROMPT_ROWS) -> str:
    """Render rows one JSON object per line, capped at `limit` with a tail note."""
    if not result.rows:
        return "The query returned no rows."

    lines = [json.dumps(row, ensure_ascii=False, default=str) for row in result.rows[:limit]]
    hidden = result.row_count - limit
    if hidden > 0:
        lines.append(f"... and {hidden} more rows")
    if result.truncated:
        lines.append(f"(Results were cut off at {result.row_count} rows.)")
    return "\n".join(lines)


def format_table(result: QueryResult, limit: int = FALLBACK_ROWS) -> str:
    """Plain text table for when no summary can be written."""
    if not result.rows:
        return "(no rows)"

    rows = [[_cell(row.get(c)) for c in result.columns] for row in result.rows[:limit]]
    widths = [
        max([len(c)] + [len(r[i]) for r in rows]) for i, c in enumerate(result.columns)
    ]
    lines = [
        " | ".join(c.ljust(w) for c, w in zip(result.columns, widths)),
        "-+-".join("-" * w for w in widths),
    ]
    lines.extend(" | ".join(v.ljust(w) for v, w in zip(r, widths)) for r in rows)

    hidden = result.row_count - limit
    if hidden > 0:
        lines.append(f"... and {hidden} more rows")
    if result.truncated:
        lines.append("(more rows exist than are shown)")
    return "\n".join(lines)


class AnswerComposer:
    def __init__(
        self,
        backend: GenerationBackend,
        temperature: float = 0.7,
        max_tokens: int = 800,
        timeout: float = 20.0,
        history_max_turns: int = 10,
        history_max_tokens: int = 2000,
    ):
        self.backend = backend
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.history_max_turns = history_max_turns
        self.history_max_tokens = history_max_tokens

    def build_messages(
        self, question: str, query_context: QueryContext, history: Sequence[Turn]
    ) -> List[dict]:
        system = ANSWER_WITH_RESULTS_PROMPT if query_context else DIRECT_ANSWER_PROMPT
        messages = [{"role": "system", "content": system}]
        for turn in trim_history(history, self.history_max_turns, self.history_max_tokens):
            messages.append({"role": turn.role.value, "content": turn.text})

        if query_context:
            sql, result = query_context
            content = RESULTS_MESSAGE.format(
                sql=sql, results=format_results(result), question=question
            )
        else:
            content = question
        messages.append({"role": "user", "content": content})
        return messages

    async def _complete(self, messages: List[dict]) -> str:
        try:
            text = await asyncio.wait_for(
                self.backend.complete(
                    messages, temperature=self.temperature, max_tokens=self.max_tokens
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ComposerUnavailable("Answer generation timed out") from e
        except GenerationUnavailable as e:
            raise ComposerUnavailable(str(e)) from e
        return text.strip()

    async def compose(
        self,
        user_id: int,
        question: str,
        query_context: QueryContext,
        history: Sequence[Turn] = (),
        notice: Optional[str] = None,
    ) -> ComposedAnswer:
        """
        Phrase the final answer. Always returns non-empty text.

        `notice` is set when the router fell back to a direct answer because
        generation was unavailable; the model is told no data was checked.
        """
        messages = self.build_messages(question, query_context, history)
        if notice:
            messages[0]["content"] += f"\n\nNote: {notice} Do not state any figures."
        try:
            text = await self._complete(messages)
            if not text:
                raise ComposerUnavailable("Empty answer")
        except ComposerUnavailable as e:
            logger.warning(f"[User {user_id}] Answer composition failed: {e}")
            if query_context:
                _, result = query_context
                text = f"{FALLBACK_CAPTION}\n\n{format_table(result)}"
            else:
                text = DEGRADED_APOLOGY if notice else APOLOGY
            return ComposedAnswer(text=text, fallback=True)

        return ComposedAnswer(text=text)

    def explain_rejection(self) -> ComposedAnswer:
        return ComposedAnswer(text=REJECTION_TEXT)

    def explain_execution_failure(self, error: ExecutionFailed) -> ComposedAnswer:
        return ComposedAnswer(text=EXECUTION_FAILURE_TEXT.get(error.kind, EXECUTION_FAILURE_DEFAULT))
