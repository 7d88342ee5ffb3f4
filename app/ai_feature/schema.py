import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.schemas import (
    Relationship,
    SchemaAllowList,
    SchemaDescriptor,
    TableAllowance,
)
from app.ai_feature.errors import SchemaConfigurationError


# -----------------------------------------------------------------------------
# SCHEMA MODULE - Allow-listed schema description
# Purpose: Tell the generation backend (and the guard) which tables and columns
# the assistant may touch. Built once at startup, read-only afterwards.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

# Column names that never leave the database, whatever the allow-list says
SENSITIVE_COLUMN_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"password", r"secret", r"token", r"api_?key", r"credential", r"two_factor")
]

# Business tables of the admin backend. customer_credentials is deliberately absent.
DEFAULT_ALLOW_LIST = SchemaAllowList(
    tables={
        "customers": TableAllowance(),
        "customer_groups": TableAllowance(),
        "customer_notes": TableAllowance(),
        "leads": TableAllowance(),
        "debts": TableAllowance(),
        "commissions": TableAllowance(),
        "commission_payouts": TableAllowance(),
        "suppliers": TableAllowance(),
        "transactions": TableAllowance(),
        "categories": TableAllowance(),
        "accounts": TableAllowance(),
        "projects": TableAllowance(),
        "tasks": TableAllowance(),
        "users": TableAllowance(columns=["id", "name", "email", "role", "created_at"]),
    }
)


def is_sensitive_column(name: str) -> bool:
    return any(pattern.search(name) for pattern in SENSITIVE_COLUMN_PATTERNS)


def load_allow_list(path: Optional[str] = None) -> SchemaAllowList:
    """
    Load the allow-list from a JSON file, or fall back to the built-in one.

    Expected shape:
        {"tables": {"customers": {"columns": [], "exclude": ["tc_no"]}}}
    """
    if not path:
        return DEFAULT_ALLOW_LIST

    file_path = Path(path)
    if not file_path.exists():
        raise SchemaConfigurationError(f"Allow-list file not found: {path}")

    try:
        return SchemaAllowList.model_validate_json(file_path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise SchemaConfigurationError(f"Invalid allow-list file {path}: {e}") from e


def _reflect(
    sync_conn, allow_list: SchemaAllowList, schema_name: Optional[str]
) -> SchemaDescriptor:
    """Runs inside run_sync, the inspector needs a sync connection."""
    inspector = inspect(sync_conn)
    dialect = sync_conn.dialect.name
    schema = schema_name if dialect == "postgresql" else None

    physical_tables = set(inspector.get_table_names(schema=schema))
    missing = [t for t in allow_list.tables if t not in physical_tables]
    if missing:
        raise SchemaConfigurationError(
            f"Allow-listed tables missing from the database: {', '.join(missing)}"
        )

    tables: Dict[str, List[Tuple[str, str]]] = {}
    hidden: Dict[str, List[str]] = {}

    for table, allowance in allow_list.tables.items():
        columns = inspector.get_columns(table, schema=schema)
        names = [c["name"] for c in columns]

        unknown = [c for c in allowance.columns if c not in names]
        if unknown:
            raise SchemaConfigurationError(
                f"Allow-listed columns missing from {table}: {', '.join(unknown)}"
            )

        excluded = {e.lower() for e in allowance.exclude}
        visible: List[Tuple[str, str]] = []
        hidden_here: List[str] = []
        for column in columns:
            name = column["name"]
            listed = not allowance.columns or name in allowance.columns
            if listed and not is_sensitive_column(name) and name.lower() not in excluded:
                visible.append((name, str(column["type"])))
            else:
                hidden_here.append(name)

        tables[table] = visible
        if hidden_here:
            hidden[table] = hidden_here

    relationships: List[Relationship] = []
    for table in tables:
        visible_here = {name for name, _ in tables[table]}
        for fk in inspector.get_foreign_keys(table, schema=schema):
            target = fk.get("referred_table")
            if target not in tables:
                continue
            visible_target = {name for name, _ in tables[target]}
            pairs = zip(fk.get("constrained_columns", []), fk.get("referred_columns", []))
            for source_column, target_column in pairs:
                if source_column in visible_here and target_column in visible_target:
                    relationships.append(
                        Relationship(
                            source_table=table,
                            source_column=source_column,
                            target_table=target,
                            target_column=target_column,
                        )
                    )

    return SchemaDescriptor(
        tables=tables,
        relationships=relationships,
        schema_name=schema,
        dialect=dialect,
        hidden_columns=hidden,
    )


async def build_schema_descriptor(
    engine: AsyncEngine,
    allow_list: SchemaAllowList,
    schema_name: Optional[str] = "public",
) -> SchemaDescriptor:
    """
    Reflect the live database and keep only what the allow-list exposes.

    Raises SchemaConfigurationError when the allow-list and the database
    disagree. Meant to run at startup, never per request.
    """
    async with engine.connect() as conn:
        descriptor = await conn.run_sync(_reflect, allow_list, schema_name)

    hidden_count = sum(len(cols) for cols in descriptor.hidden_columns.values())
    logger.info(
        f"Schema descriptor built: {len(descriptor.tables)} tables, "
        f"{len(descriptor.relationships)} relationships, {hidden_count} hidden columns"
    )
    return descriptor


class SchemaCatalog:
    """Process-wide holder of the descriptor. Safe to share, never mutated."""

    def __init__(self, descriptor: SchemaDescriptor):
        self._descriptor = descriptor

    @classmethod
    async def from_database(
        cls,
        engine: AsyncEngine,
        allow_list: SchemaAllowList,
        schema_name: Optional[str] = "public",
    ) -> "SchemaCatalog":
        return cls(await build_schema_descriptor(engine, allow_list, schema_name))

    def describe(self) -> SchemaDescriptor:
        return self._descriptor
