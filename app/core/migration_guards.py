"""Guarded Alembic operations that skip work already present in the database."""

from __future__ import annotations

from typing import Any

from alembic import op
from sqlalchemy import text


def _exists(statement: str, params: dict[str, Any]) -> bool:
  result = op.get_bind().execute(text(statement), params)
  return result.first() is not None


def table_exists(*, table_name: str, schema: str | None = None) -> bool:
  """Return True when a table exists in the target schema."""
  statement = """
    SELECT 1
    FROM information_schema.tables
    WHERE table_schema = :schema
      AND table_name = :table_name
      AND table_type = 'BASE TABLE'
    LIMIT 1
  """
  return _exists(statement, {"schema": schema or "public", "table_name": table_name})


def column_exists(*, table_name: str, column_name: str, schema: str | None = None) -> bool:
  """Return True when a column exists on the specified table."""
  statement = """
    SELECT 1
    FROM information_schema.columns
    WHERE table_schema = :schema
      AND table_name = :table_name
      AND column_name = :column_name
    LIMIT 1
  """
  return _exists(statement, {"schema": schema or "public", "table_name": table_name, "column_name": column_name})


def index_exists(*, index_name: str, schema: str | None = None) -> bool:
  """Return True when an index exists in the target schema."""
  statement = """
    SELECT 1
    FROM pg_indexes
    WHERE schemaname = :schema
      AND indexname = :index_name
    LIMIT 1
  """
  return _exists(statement, {"schema": schema or "public", "index_name": index_name})


def guarded_create_table(table_name: str, *args: Any, **kwargs: Any) -> None:
  """Create a table only when it does not already exist."""
  if table_exists(table_name=table_name, schema=kwargs.get("schema")):
    return
  op.create_table(table_name, *args, **kwargs)


def guarded_drop_table(table_name: str, *args: Any, **kwargs: Any) -> None:
  """Drop a table only when it exists."""
  if not table_exists(table_name=table_name, schema=kwargs.get("schema")):
    return
  op.drop_table(table_name, *args, **kwargs)


def guarded_create_index(index_name: str, table_name: str, columns: list[str], **kwargs: Any) -> None:
  """Create an index when the table and its columns exist and the index does not."""
  schema = kwargs.get("schema")
  if not table_exists(table_name=table_name, schema=schema):
    return
  for column in columns:
    if not column_exists(table_name=table_name, column_name=column, schema=schema):
      return
  if index_exists(index_name=index_name, schema=schema):
    return
  op.create_index(index_name, table_name, columns, **kwargs)


def guarded_drop_index(index_name: str, **kwargs: Any) -> None:
  """Drop an index only when it exists."""
  if not index_exists(index_name=index_name, schema=kwargs.get("schema")):
    return
  op.drop_index(index_name, **kwargs)
