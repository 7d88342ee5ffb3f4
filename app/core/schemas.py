from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, EmailStr, model_validator


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Decision(str, Enum):
    NEEDS_QUERY = "needs_query"
    DIRECT_ANSWER = "direct_answer"


class Outcome(str, Enum):
    """How a turn was answered. Internal, used for logging and tests."""

    ANSWERED_WITH_QUERY = "answered_with_query"
    ANSWERED_DIRECTLY = "answered_directly"
    GENERATION_UNAVAILABLE = "generation_unavailable"
    GUARD_REJECTED = "guard_rejected"
    EXECUTION_FAILED = "execution_failed"
    COMPOSER_UNAVAILABLE = "composer_unavailable"


# =========================
# USER
# =========================
class UserLogin(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# =========================
# SCHEMA ALLOW-LIST
# =========================
class TableAllowance(BaseModel):
    """
    Columns of one table the assistant may see.
    An empty `columns` list means every column that is not sensitive.
    """

    columns: List[str] = []
    exclude: List[str] = []


class SchemaAllowList(BaseModel):
    tables: Dict[str, TableAllowance]


class Relationship(BaseModel):
    source_table: str
    source_column: str
    target_table: str
    target_column: str


class SchemaDescriptor(BaseModel):
    """
    Allow-listed view of the database, safe to hand to the generation backend.
    Hidden column names are kept for the guard but never serialized.
    """

    tables: Dict[str, List[Tuple[str, str]]]
    relationships: List[Relationship] = []
    schema_name: Optional[str] = None
    dialect: str = "postgresql"
    hidden_columns: Dict[str, List[str]] = Field(default_factory=dict, exclude=True)

    model_config = ConfigDict(frozen=True)

    def to_prompt(self) -> str:
        lines = ["Tables and columns:"]
        for table, columns in self.tables.items():
            lines.append(f"- {table}")
            for column, declared_type in columns:
                lines.append(f"  - {column}: {declared_type}")
        if self.relationships:
            lines.append("")
            lines.append("Relationships:")
            for rel in self.relationships:
                lines.append(
                    f"- {rel.source_table}.{rel.source_column} -> "
                    f"{rel.target_table}.{rel.target_column}"
                )
        return "\n".join(lines)


# =========================
# CONVERSATION
# =========================
class Turn(BaseModel):
    role: TurnRole
    text: str
    query_used: Optional[str] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)


class TurnResponse(Turn):
    created_at: Optional[datetime] = None


class ConversationSummary(BaseModel):
    conversation_id: str
    title: Optional[str] = None
    created_at: datetime
    turn_count: int


# =========================
# QUERY PIPELINE
# =========================
class GeneratedQuery(BaseModel):
    sql_text: str = ""
    requires_sql: bool = False
    explanation: str = ""
    # True when the backend could not be reached or returned garbage
    unavailable: bool = False

    @model_validator(mode="after")
    def drop_sql_when_not_required(self):
        if not self.requires_sql:
            self.sql_text = ""
        return self


class RoutingDecision(BaseModel):
    decision: Decision
    generated: GeneratedQuery
    notice: Optional[str] = None


class GuardVerdict(BaseModel):
    approved: bool
    normalized_sql: Optional[str] = None
    rejection_reason: Optional[str] = None
    referenced_tables: List[str] = []

    @model_validator(mode="after")
    def check_fields(self):
        if self.approved and not self.normalized_sql:
            raise ValueError("approved verdict needs normalized_sql")
        if not self.approved and not self.rejection_reason:
            raise ValueError("rejected verdict needs rejection_reason")
        return self


class QueryResult(BaseModel):
    columns: List[str] = []
    rows: List[Dict[str, Any]] = []
    truncated: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)


class ComposedAnswer(BaseModel):
    text: str
    # True when the backend failed and a canned answer was used
    fallback: bool = False


class AskResult(BaseModel):
    answer: str
    conversation_id: str
    outcome: Outcome
    query_used: Optional[str] = None


# =========================
# ASSISTANT API
# =========================
class AskRequest(BaseModel):
    question: str = Field(min_length=1, max_length=4000)
    conversation_id: Optional[str] = Field(
        default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$"
    )


class AskResponse(BaseModel):
    answer: str
    conversation_id: str
