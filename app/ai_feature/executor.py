import asyncio
import logging
import re
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, List, Set

from sqlalchemy.exc import DBAPIError, InterfaceError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from app.core.schemas import QueryResult
from app.ai_feature.errors import ExecutionFailed


# -----------------------------------------------------------------------------
# EXECUTOR MODULE - Run one approved statement
# Purpose: Read-only transaction, statement deadline, row cap and
# JSON-friendly values. Every failure comes back as ExecutionFailed.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

# Card numbers, TR IBANs and 11 digit national ids inside free text
MASK_PATTERNS = [
    (re.compile(r"\b\d{16}\b"), "****-****-****-****"),
    (re.compile(r"\bTR\d{24}\b", re.IGNORECASE), "TR**-****-****-****-****-****"),
    (re.compile(r"(?<!\d)\d{11}(?!\d)"), "***********"),
]

# (kind, substrings of the driver message), first match wins
ERROR_KINDS = [
    ("timeout", ("statement timeout", "canceling statement due to")),
    (
        "missing_object",
        ("does not exist", "no such table", "no such column", "unknown column", "doesn't exist"),
    ),
    (
        "invalid_date",
        (
            "invalid input syntax for type date",
            "invalid input syntax for type timestamp",
            "date/time field value out of range",
            "invalid date",
            "incorrect datetime value",
        ),
    ),
    ("division_by_zero", ("division by zero",)),
    ("too_complex", ("too complex", "too many tables", "stack depth", "out of memory")),
]


def mask_sensitive(text: str) -> str:
    for pattern, replacement in MASK_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def normalize_value(value: Any) -> Any:
    """Convert a driver value to something json.dumps accepts."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return mask_sensitive(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<binary {len(bytes(value))} bytes>"
    if isinstance(value, dict):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [normalize_value(v) for v in value]
    return mask_sensitive(str(value))


def unique_columns(keys: List[str]) -> List[str]:
    """Suffix repeated column names (id, id_2, ...) so every row key is distinct."""
    seen: Set[str] = set()
    columns: List[str] = []
    for key in keys:
        candidate, n = key, 1
        while candidate in seen:
            n += 1
            candidate = f"{key}_{n}"
        seen.add(candidate)
        columns.append(candidate)
    return columns


def classify_error(error: BaseException) -> str:
    message = str(getattr(error, "orig", None) or error).lower()
    for kind, needles in ERROR_KINDS:
        if any(needle in message for needle in needles):
            return kind
    if isinstance(error, InterfaceError) or isinstance(error, OSError):
        return "connection"
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return "connection"
    return "error"


class QueryExecutor:
    def __init__(self, engine: AsyncEngine, max_rows: int = 100, timeout_seconds: float = 10.0):
        self.engine = engine
        self.max_rows = max_rows
        self.timeout_seconds = timeout_seconds

    async def _restrict(self, conn: AsyncConnection) -> None:
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            await conn.exec_driver_sql("SET TRANSACTION READ ONLY")
            timeout_ms = int(self.timeout_seconds * 1000)
            await conn.exec_driver_sql(f"SET LOCAL statement_timeout = {timeout_ms}")
        elif dialect == "sqlite":
            # Stays on for the pooled connection, the engine is read-only anyway
            await conn.exec_driver_sql("PRAGMA query_only = ON")
        else:
            logger.warning(f"No read-only session settings for dialect {dialect}")

    async def _run(self, normalized_sql: str) -> QueryResult:
        async with self.engine.connect() as conn:
            trans = await conn.begin()
            try:
                await self._restrict(conn)
                # Driver level execution, no bind parameter parsing of the text
                result = await conn.exec_driver_sql(normalized_sql)
                columns = unique_columns(list(result.keys()))
                rows = result.fetchmany(self.max_rows + 1)
            finally:
                await trans.rollback()

        truncated = len(rows) > self.max_rows
        return QueryResult(
            columns=columns,
            rows=[
                {key: normalize_value(value) for key, value in zip(columns, row)}
                for row in rows[: self.max_rows]
            ],
            truncated=truncated,
        )

    async def execute(self, normalized_sql: str) -> QueryResult:
        try:
            result = await asyncio.wait_for(
                self._run(normalized_sql), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Query timed out after {self.timeout_seconds}s: {normalized_sql}")
            raise ExecutionFailed("Query timed out", kind="timeout", timed_out=True)
        except (SQLAlchemyError, OSError) as e:
            kind = classify_error(e)
            logger.error(f"Query failed ({kind}): {e} | sql={normalized_sql}")
            raise ExecutionFailed(str(e), kind=kind, timed_out=kind == "timeout") from e

        logger.info(
            f"Query returned {result.row_count} rows"
            + (" (truncated)" if result.truncated else "")
        )
        return result
