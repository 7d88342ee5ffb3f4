import asyncio
import json
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from app.core.schemas import (
    Decision,
    GeneratedQuery,
    RoutingDecision,
    SchemaDescriptor,
    Turn,
)
from app.ai_feature.backend import GenerationBackend
from app.ai_feature.conversation import trim_history
from app.ai_feature.errors import GenerationUnavailable
from app.ai_feature.prompts import DIALECT_NAMES, SQL_GENERATION_PROMPT
from app.ai_feature.schema import SchemaCatalog


# -----------------------------------------------------------------------------
# SYNTHESIZER MODULE - Question -> candidate SQL
# Purpose: One backend request that both decides whether SQL is needed and
# writes it. The output is untrusted; the guard is the enforcement point.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

DEGRADED_NOTICE = (
    "The database lookup service is unavailable right now, "
    "so this answer was given without checking the data."
)


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    m = re.search(r"```(?:json|sql)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else raw


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    raw = (text or "").strip()
    # The query itself may carry a fence, so try the whole reply first
    for candidate in (raw, _strip_fence(raw)):
        try:
            obj = json.loads(candidate)
        except ValueError:
            i = candidate.find("{")
            j = candidate.rfind("}")
            if i == -1 or j <= i:
                continue
            try:
                obj = json.loads(candidate[i : j + 1])
            except ValueError:
                continue
        if isinstance(obj, dict):
            return obj
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def parse_generation(content: str) -> GeneratedQuery:
    """
    Turn the backend's JSON reply into a GeneratedQuery.
    Raises GenerationUnavailable when there is no usable JSON object.
    """
    data = _extract_json(content)
    if data is None:
        raise GenerationUnavailable("Backend reply was not a JSON object")

    requires_sql = _as_bool(data.get("requires_sql", False))
    sql_text = data.get("query") or ""
    if not isinstance(sql_text, str):
        raise GenerationUnavailable("Backend returned a non-text query")
    sql_text = _strip_fence(sql_text).strip()

    explanation = data.get("explanation") or ""
    if not isinstance(explanation, str):
        explanation = str(explanation)

    if requires_sql and not sql_text:
        requires_sql = False
        explanation = explanation or "No query was produced."

    return GeneratedQuery(
        sql_text=sql_text,
        requires_sql=requires_sql,
        explanation=explanation or "No explanation given.",
    )


class SqlSynthesizer:
    def __init__(
        self,
        backend: GenerationBackend,
        temperature: float = 0.2,
        timeout: float = 20.0,
        history_max_turns: int = 10,
        history_max_tokens: int = 2000,
    ):
        self.backend = backend
        self.temperature = temperature
        self.timeout = timeout
        self.history_max_turns = history_max_turns
        self.history_max_tokens = history_max_tokens

    def build_messages(
        self,
        question: str,
        schema: SchemaDescriptor,
        history: Sequence[Turn],
        today: Optional[date] = None,
    ) -> List[Dict[str, str]]:
        system = SQL_GENERATION_PROMPT.format(
            dialect=DIALECT_NAMES.get(schema.dialect, schema.dialect),
            today=(today or date.today()).isoformat(),
            schema=schema.to_prompt(),
        )
        messages = [{"role": "system", "content": system}]
        for turn in trim_history(history, self.history_max_turns, self.history_max_tokens):
            messages.append({"role": turn.role.value, "content": turn.text})
        messages.append({"role": "user", "content": question})
        return messages

    async def generate(
        self,
        user_id: int,
        question: str,
        schema: SchemaDescriptor,
        history: Sequence[Turn] = (),
    ) -> GeneratedQuery:
        """
        Ask the backend for (requires_sql, query, explanation).

        Never raises for backend trouble: timeouts, errors and malformed
        replies come back as requires_sql=False with unavailable=True.
        """
        messages = self.build_messages(question, schema, history)
        try:
            content = await asyncio.wait_for(
                self.backend.complete(
                    messages, temperature=self.temperature, json_mode=True
                ),
                timeout=self.timeout,
            )
            generated = parse_generation(content)
        except asyncio.TimeoutError:
            logger.warning(f"[User {user_id}] SQL generation timed out after {self.timeout}s")
            return GeneratedQuery(
                requires_sql=False,
                unavailable=True,
                explanation="SQL generation timed out.",
            )
        except GenerationUnavailable as e:
            logger.warning(f"[User {user_id}] SQL generation unavailable: {e}")
            return GeneratedQuery(
                requires_sql=False,
                unavailable=True,
                explanation=f"SQL generation failed: {e}",
            )

        logger.info(
            f"[User {user_id}] Question analysed: requires_sql={generated.requires_sql} "
            f"explanation={generated.explanation!r}"
        )
        return generated


class IntentRouter:
    """
    Routing decision = the synthesizer's requires_sql flag, from one request.
    Fails open to a direct answer when generation is unavailable.
    """

    def __init__(self, synthesizer: SqlSynthesizer, catalog: SchemaCatalog):
        self.synthesizer = synthesizer
        self.catalog = catalog

    async def route(
        self, user_id: int, question: str, history: Sequence[Turn] = ()
    ) -> RoutingDecision:
        generated = await self.synthesizer.generate(
            user_id, question, self.catalog.describe(), history
        )

        if generated.unavailable:
            return RoutingDecision(
                decision=Decision.DIRECT_ANSWER,
                generated=generated,
                notice=DEGRADED_NOTICE,
            )
        if generated.requires_sql:
            return RoutingDecision(decision=Decision.NEEDS_QUERY, generated=generated)
        return RoutingDecision(decision=Decision.DIRECT_ANSWER, generated=generated)
