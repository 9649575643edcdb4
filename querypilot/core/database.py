import json
import logging
import re
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from querypilot.core.config import settings
from querypilot.core.schemas import (
    ColumnDetail,
    IndexInfo,
    SchemaTable,
    TableDetail,
    TableInfo,
    TableSample,
)

logger = logging.getLogger(__name__)

# One pooled engine per target database, created on first use
_engines: Dict[str, AsyncEngine] = {}


TABLES_QUERY = """
  SELECT
    t.table_schema AS schema,
    t.table_name AS name,
    t.table_type AS type,
    (
      SELECT reltuples::bigint
      FROM pg_class c
      JOIN pg_namespace n ON n.oid = c.relnamespace
      WHERE c.relname = t.table_name
        AND n.nspname = t.table_schema
    ) AS row_count
  FROM information_schema.tables t
  WHERE t.table_schema NOT IN ('pg_catalog', 'information_schema')
    AND t.table_type IN ('BASE TABLE', 'VIEW')
  ORDER BY t.table_schema, t.table_name
"""

SCHEMA_QUERY = """
  WITH table_columns AS (
    SELECT
      c.table_schema,
      c.table_name,
      c.column_name,
      c.data_type,
      COALESCE(
        (SELECT true FROM information_schema.table_constraints tc
         JOIN information_schema.key_column_usage kcu
           ON tc.constraint_name = kcu.constraint_name
           AND tc.table_schema = kcu.table_schema
         WHERE tc.constraint_type = 'PRIMARY KEY'
           AND tc.table_schema = c.table_schema
           AND tc.table_name = c.table_name
           AND kcu.column_name = c.column_name),
        false
      ) AS is_primary_key,
      c.ordinal_position
    FROM information_schema.columns c
    WHERE c.table_schema NOT IN ('pg_catalog', 'information_schema')
  )
  SELECT
    t.table_schema AS schema,
    t.table_name AS name,
    t.table_type AS type,
    COALESCE(
      json_agg(
        json_build_object(
          'name', tc.column_name,
          'type', tc.data_type,
          'isPrimaryKey', tc.is_primary_key
        )
        ORDER BY tc.ordinal_position
      ) FILTER (WHERE tc.column_name IS NOT NULL),
      '[]'::json
    ) AS columns
  FROM information_schema.tables t
  LEFT JOIN table_columns tc
    ON tc.table_schema = t.table_schema
    AND tc.table_name = t.table_name
  WHERE t.table_schema NOT IN ('pg_catalog', 'information_schema')
    AND t.table_type IN ('BASE TABLE', 'VIEW')
  GROUP BY t.table_schema, t.table_name, t.table_type
  ORDER BY t.table_schema, t.table_name
"""

TABLE_COLUMNS_QUERY = """
  SELECT
    c.column_name AS name,
    c.data_type AS type,
    c.is_nullable = 'YES' AS nullable,
    c.column_default AS default_value,
    EXISTS (
      SELECT 1 FROM information_schema.table_constraints tc
      JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
      WHERE tc.constraint_type = 'PRIMARY KEY'
        AND tc.table_schema = :schema
        AND tc.table_name = :table
        AND kcu.column_name = c.column_name
    ) AS is_primary_key,
    EXISTS (
      SELECT 1 FROM information_schema.table_constraints tc
      JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
      WHERE tc.constraint_type = 'FOREIGN KEY'
        AND tc.table_schema = :schema
        AND tc.table_name = :table
        AND kcu.column_name = c.column_name
    ) AS is_foreign_key,
    (
      SELECT ccu.table_schema || '.' || ccu.table_name || '(' || ccu.column_name || ')'
      FROM information_schema.table_constraints tc
      JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
      JOIN information_schema.constraint_column_usage ccu
        ON tc.constraint_name = ccu.constraint_name
        AND tc.table_schema = ccu.table_schema
      WHERE tc.constraint_type = 'FOREIGN KEY'
        AND tc.table_schema = :schema
        AND tc.table_name = :table
        AND kcu.column_name = c.column_name
      LIMIT 1
    ) AS referenced_column
  FROM information_schema.columns c
  WHERE c.table_schema = :schema AND c.table_name = :table
  ORDER BY c.ordinal_position
"""

TABLE_INDEXES_QUERY = """
  SELECT
    i.relname AS name,
    array_agg(a.attname ORDER BY array_position(ix.indkey, a.attnum)) AS columns,
    ix.indisunique AS is_unique,
    ix.indisprimary AS is_primary
  FROM pg_index ix
  JOIN pg_class i ON i.oid = ix.indexrelid
  JOIN pg_class t ON t.oid = ix.indrelid
  JOIN pg_namespace n ON n.oid = t.relnamespace
  JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
  WHERE n.nspname = :schema AND t.relname = :table
  GROUP BY i.relname, ix.indisunique, ix.indisprimary
  ORDER BY i.relname
"""

ROW_ESTIMATE_QUERY = """
  SELECT reltuples::bigint
  FROM pg_class c
  JOIN pg_namespace n ON n.oid = c.relnamespace
  WHERE c.relname = :table AND n.nspname = :schema
"""

SAMPLE_COLUMNS_QUERY = """
  SELECT column_name, data_type
  FROM information_schema.columns
  WHERE table_schema = :schema AND table_name = :table
  ORDER BY ordinal_position
"""

TABLE_DETAIL_SAMPLE_ROWS = 10
JSON_SAMPLES_PER_COLUMN = 2


def to_async_url(database_url: str) -> str:
    """Point plain postgres URLs at the asyncpg driver."""
    for prefix in ("postgresql://", "postgres://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix):]
    return database_url


def get_engine(database_url: str) -> AsyncEngine:
    url = to_async_url(database_url)
    engine = _engines.get(url)
    if engine is None:
        engine = create_async_engine(
            url,
            pool_pre_ping=True,
            connect_args={
                "timeout": settings.CONNECT_TIMEOUT_SECONDS,
                "command_timeout": settings.QUERY_TIMEOUT_SECONDS,
            },
        )
        _engines[url] = engine
    return engine


async def dispose_engines() -> None:
    # Close every pool once the app shuts down
    for engine in list(_engines.values()):
        await engine.dispose()
    _engines.clear()


@asynccontextmanager
async def connect(database_url: str, commit: bool = False) -> AsyncIterator[AsyncConnection]:
    """
    Borrow one connection for the duration of a single operation.

    With commit=True the work runs in a transaction that is committed on
    success; otherwise it is rolled back when the connection is returned.
    """
    engine = get_engine(database_url)
    if commit:
        async with engine.begin() as conn:
            yield conn
    else:
        async with engine.connect() as conn:
            yield conn


def _decode_json(value: Any) -> Any:
    # asyncpg hands json columns back as text
    if isinstance(value, str):
        return json.loads(value)
    return value


def quote_ident(name: str) -> str:
    """Quote a PostgreSQL identifier, doubling any embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_table(schema: str, table: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(table)}"


_QUALIFIED_NAME = re.compile(r'^"?([^"]+)"?\."?([^"]+)"?$')


def split_table_name(name: str) -> Tuple[str, str]:
    """
    Split a table reference into (schema, table).

    Accepts users, "users", sales.orders and "sales"."orders"; an
    unqualified name lives in the public schema.
    """
    match = _QUALIFIED_NAME.match(name.strip())
    if match:
        return match.group(1), match.group(2)
    return "public", name.strip().replace('"', "")


def truncate_value(value: Any, max_length: int = 200) -> Any:
    """Shorten long strings, lists and objects so samples stay small."""
    if isinstance(value, str):
        return value[:max_length] + "..." if len(value) > max_length else value

    if isinstance(value, list):
        truncated = [truncate_value(item, max_length // 2) for item in value[:3]]
        if len(value) > 3:
            truncated.append(f"... ({len(value) - 3} more items)")
        return truncated

    if isinstance(value, dict):
        keys = list(value)
        truncated = {key: truncate_value(value[key], max_length // 2) for key in keys[:5]}
        if len(keys) > 5:
            truncated["..."] = f"({len(keys) - 5} more fields)"
        return truncated

    return value


class DatabaseGateway:
    """
    Access to one target database.

    Only run_query(commit=True) keeps changes; every other call is rolled
    back. Every method opens its own connection and gives it back before
    returning, so no connection outlives a single tool call or request.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

    async def fetch_tables(self) -> List[TableInfo]:
        async with connect(self.database_url) as conn:
            result = await conn.execute(text(TABLES_QUERY))
            rows = result.mappings().all()

        return [
            TableInfo(
                schema=row["schema"],
                name=row["name"],
                type="view" if row["type"] == "VIEW" else "table",
                row_count=int(row["row_count"]) if row["row_count"] else None,
            )
            for row in rows
        ]

    async def fetch_schema(self) -> List[SchemaTable]:
        async with connect(self.database_url) as conn:
            result = await conn.execute(text(SCHEMA_QUERY))
            rows = result.mappings().all()

        return [
            SchemaTable(
                schema=row["schema"],
                name=row["name"],
                type="view" if row["type"] == "VIEW" else "table",
                columns=_decode_json(row["columns"]) or [],
            )
            for row in rows
        ]

    async def run_query(self, sql: str, commit: bool = False) -> Dict[str, Any]:
        """
        Run a statement and return its rows as JSON-ready dicts.

        Statements that return no rows (INSERT, UPDATE, ...) report the
        affected row count instead. Only commit=True makes changes stick.

        Returns:
            {"columns": [...], "rows": [...], "rowCount": int, "executionTime": ms}
        """
        async with connect(self.database_url, commit=commit) as conn:
            started = time.monotonic()
            result = await conn.execute(text(sql))
            if result.returns_rows:
                columns = list(result.keys())
                rows = [dict(row) for row in result.mappings().all()]
                row_count = len(rows)
            else:
                columns, rows = [], []
                row_count = max(result.rowcount, 0)
            execution_time = int((time.monotonic() - started) * 1000)

        return {
            "columns": columns,
            "rows": jsonable_encoder(rows),
            "rowCount": row_count,
            "executionTime": execution_time,
        }

    async def explain(self, sql: str) -> None:
        async with connect(self.database_url) as conn:
            await conn.execute(text(f"EXPLAIN {sql}"))

    async def json_keys(
        self,
        table: str,
        column: str,
        nested_path: Optional[str] = None,
        sample_values: bool = False,
    ) -> Dict[str, Any]:
        source = quote_table(*split_table_name(table))
        params: Dict[str, Any] = {}
        json_expr = f"{quote_ident(column)}::jsonb"
        if nested_path:
            json_expr = f"({json_expr} -> CAST(:path AS text))"
            params["path"] = nested_path

        async with connect(self.database_url) as conn:
            keys_result = await conn.execute(
                text(
                    f"SELECT DISTINCT jsonb_object_keys({json_expr}) AS key "
                    f"FROM {source} WHERE jsonb_typeof({json_expr}) = 'object' LIMIT 50"
                ),
                params,
            )
            keys = [row[0] for row in keys_result.all()]

            samples: Dict[str, List[Any]] = {}
            if sample_values:
                for key in keys[:10]:
                    sample_result = await conn.execute(
                        text(
                            f"SELECT DISTINCT {json_expr} ->> CAST(:key AS text) AS value "
                            f"FROM {source} "
                            f"WHERE {json_expr} ->> CAST(:key AS text) IS NOT NULL LIMIT 3"
                        ),
                        {**params, "key": key},
                    )
                    samples[key] = [row[0] for row in sample_result.all()]

        return {"keys": keys, "samples": samples if sample_values else None}

    async def fetch_table_detail(self, schema: str, table: str) -> TableDetail:
        """Columns with constraints, indexes, a few rows and the row estimate."""
        params = {"schema": schema, "table": table}

        async with connect(self.database_url) as conn:
            columns = (await conn.execute(text(TABLE_COLUMNS_QUERY), params)).mappings().all()
            indexes = (await conn.execute(text(TABLE_INDEXES_QUERY), params)).mappings().all()
            sample = await conn.execute(
                text(
                    f"SELECT * FROM {quote_table(schema, table)} "
                    f"LIMIT {TABLE_DETAIL_SAMPLE_ROWS}"
                )
            )
            sample_rows = [dict(row) for row in sample.mappings().all()]
            row_count = (await conn.execute(text(ROW_ESTIMATE_QUERY), params)).scalar()

        return TableDetail(
            schema=schema,
            name=table,
            columns=[
                ColumnDetail(
                    name=row["name"],
                    type=row["type"],
                    nullable=row["nullable"],
                    default_value=row["default_value"],
                    is_primary_key=row["is_primary_key"],
                    is_foreign_key=row["is_foreign_key"],
                    references=row["referenced_column"],
                )
                for row in columns
            ],
            indexes=[
                IndexInfo(
                    name=row["name"],
                    columns=list(row["columns"]),
                    is_unique=row["is_unique"],
                    is_primary=row["is_primary"],
                )
                for row in indexes
            ],
            sample_data=jsonable_encoder(sample_rows),
            row_count=int(row_count) if row_count else None,
        )

    async def sample_table(self, name: str, sample_size: int) -> TableSample:
        """
        A few truncated rows from one table, plus distinct examples of the
        shape of each JSON/JSONB column.
        """
        schema, table = split_table_name(name)
        params = {"schema": schema, "table": table}

        async with connect(self.database_url) as conn:
            described = (await conn.execute(text(SAMPLE_COLUMNS_QUERY), params)).all()
            result = await conn.execute(
                text(f"SELECT * FROM {quote_table(schema, table)} LIMIT {int(sample_size)}")
            )
            rows = jsonable_encoder([dict(row) for row in result.mappings().all()])

        columns = [row[0] for row in described]
        json_columns = [row[0] for row in described if row[1] in ("json", "jsonb")]
        for row in rows:
            for column in json_columns:
                if row.get(column) is not None:
                    row[column] = _decode_json(row[column])

        json_field_samples: Dict[str, List[Any]] = {}
        for column in json_columns:
            samples: List[Any] = []
            for row in rows:
                if not row.get(column):
                    continue
                sample = truncate_value(row[column])
                if sample not in samples:
                    samples.append(sample)
                if len(samples) >= JSON_SAMPLES_PER_COLUMN:
                    break
            if samples:
                json_field_samples[column] = samples

        return TableSample(
            table=name,
            columns=columns,
            rows=[{key: truncate_value(value) for key, value in row.items()} for row in rows],
            json_field_samples=json_field_samples or None,
        )


def get_gateway_factory():
    """FastAPI dependency: builds a gateway for a connection string."""
    return DatabaseGateway


def resolve_database_url(connection_string: Optional[str]) -> str:
    """Request connection string, falling back to DATABASE_URL."""
    database_url = (connection_string or "").strip() or settings.DATABASE_URL
    if not database_url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Database connection is required",
        )
    return database_url


def _sqlstate(error: BaseException) -> Optional[str]:
    # SQLAlchemy keeps the driver error on .orig; asyncpg exposes the code as sqlstate
    for candidate in (error, getattr(error, "orig", None), error.__cause__):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return code
    return None


def database_http_error(error: Exception, table: Optional[str] = None) -> HTTPException:
    """
    Translate a database failure into an HTTP error with a readable message.

    `table` names the table a request was about, for a clearer 404.
    """
    if isinstance(error, DBAPIError) and error.orig is not None:
        message = str(error.orig).strip()
    else:
        message = str(error).strip() or type(error).__name__

    if isinstance(error, ConnectionRefusedError) or isinstance(
        getattr(error, "orig", None), ConnectionRefusedError
    ):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to connect to database. Check your connection string and ensure the database is running.",
        )

    code = _sqlstate(error)
    if code == "28P01":
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed. Check your username and password.",
        )
    if code == "3D000":
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Database does not exist. Check your connection string.",
        )
    if code == "42601":
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"SQL syntax error: {message}",
        )
    if code == "42P01":
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Table {table} does not exist." if table else f"Table does not exist: {message}",
        )

    logger.error(f"Query execution error: {message}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)
