"""
QUERY AGENT TOOLS - everything the model can do against the target database

Tools:
    get_table_schema  -> tables, views and columns
    get_json_keys     -> keys inside a JSON/JSONB column
    execute_query     -> run a read-only query, return a small sample
    validate_query    -> EXPLAIN without running
    update_query_ui   -> hand the final query to the user (terminal)
    manage_todo       -> the model's own plan for multi-step work

Each tool has an explicit pydantic argument model; the executor validates
arguments against it before the handler runs.
"""

import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from querypilot.ai_feature.models import TodoStatus, utc_now
from querypilot.ai_feature.registry import ToolFailure, ToolRegistry, ToolSpec
from querypilot.core import sql_guard
from querypilot.core.config import settings
from querypilot.core.database import DatabaseGateway
from querypilot.core.schemas import SchemaTable, TableType

TERMINAL_TOOL = "update_query_ui"
EXECUTE_QUERY_TOOL = "execute_query"
TODO_TOOL = "manage_todo"

SAMPLE_ROWS = 5
TODO_ACTIONS = ("create", "set_current", "complete", "skip", "add")


# =========================
# Argument models
# =========================
class GetTableSchemaArgs(BaseModel):
    include_views: bool = Field(
        default=True, description="Whether to include views in the result."
    )
    filter: Optional[str] = Field(
        default=None,
        description="Only return tables whose name contains this text (case-insensitive).",
    )


class GetJsonKeysArgs(BaseModel):
    table: str = Field(description='The table name (e.g., "users" or "schema"."table")')
    column: str = Field(description="The JSON/JSONB column name to inspect")
    nested_path: Optional[str] = Field(
        default=None,
        description="Optional nested key to explore (keys of column->'nested_path')",
    )
    sample_values: bool = Field(
        default=False, description="Include up to three sample values per key."
    )


class ExecuteQueryArgs(BaseModel):
    sql: str = Field(description="The SQL SELECT query to execute")
    title: str = Field(
        default="", description="Short title describing what this query does"
    )
    description: str = Field(
        default="", description="Brief explanation of what this query retrieves and why"
    )
    limit: int = Field(
        default=settings.AGENT_ROW_LIMIT,
        ge=1,
        description="Maximum number of rows to return. Defaults to 100, capped at 1000.",
    )


class ValidateQueryArgs(BaseModel):
    sql: str = Field(description="The SQL query to validate")


class UpdateQueryUiArgs(BaseModel):
    sql: str = Field(min_length=1, description="The final SQL query to display to the user")
    explanation: str = Field(
        description="What this query does and how it addresses the user's goal"
    )
    summary: str = Field(default="", description="Key findings from the analysis")
    changes: List[str] = Field(
        default_factory=list,
        description="Changes made from the previous query, if this is a modification",
    )
    confidence: Literal["high", "medium", "low"] = Field(
        default="high", description="Confidence that this query meets the goal"
    )
    suggestions: List[str] = Field(
        default_factory=list, description="Ways the user could refine the query further"
    )


class ManageTodoArgs(BaseModel):
    action: Literal["create", "set_current", "complete", "skip", "add"] = Field(
        description="The action to perform"
    )
    items: Optional[List[str]] = Field(
        default=None, description='For "create": the todo items to initialize'
    )
    item_id: Optional[str] = Field(
        default=None, description='For "set_current", "complete", "skip": the item ID'
    )
    item_text: Optional[str] = Field(default=None, description='For "add": the new item text')


# =========================
# Helpers
# =========================
def database_error_message(error: Exception) -> str:
    if isinstance(error, DBAPIError) and error.orig is not None:
        return str(error.orig).strip()
    return str(error).strip() or type(error).__name__


def _execution_suggestion(message: str) -> str:
    lowered = message.lower()
    if "column" in lowered:
        return (
            "Check column names against the schema. Use get_table_schema or "
            "get_json_keys to verify field names."
        )
    if "syntax" in lowered:
        return "There is a syntax error in your SQL. Review the query structure."
    return "Review the query and try again."


def _validation_suggestion(message: str) -> str:
    lowered = message.lower()
    if "column" in lowered:
        return "A referenced column does not exist. Check column names against the schema."
    if "relation" in lowered:
        return "A referenced table does not exist. Use get_table_schema to see available tables."
    if "syntax" in lowered:
        return "There is a syntax error in the query. Review SQL syntax."
    return "Review the query and fix the issue."


def _starts_with(sql: str, *keywords: str) -> bool:
    normalized = sql_guard.strip_comments(sql).strip().upper()
    return any(normalized.startswith(keyword) for keyword in keywords)


# =========================
# Tool set
# =========================
class QueryAgentTools:
    """Tool handlers bound to one target database for one run."""

    def __init__(
        self,
        gateway: DatabaseGateway,
        schema: Optional[List[SchemaTable]] = None,
    ):
        self.gateway = gateway
        self._schema = schema

    async def _load_schema(self) -> List[SchemaTable]:
        # Introspect once per run when the caller did not send a snapshot
        if self._schema is None:
            try:
                self._schema = await self.gateway.fetch_schema()
            except (SQLAlchemyError, OSError) as error:
                raise ToolFailure(
                    f"Failed to load schema: {database_error_message(error)}",
                    {"suggestion": "Check that the database is reachable."},
                )
        return self._schema

    async def get_table_schema(self, args: GetTableSchemaArgs) -> Dict[str, Any]:
        tables = await self._load_schema()
        if not args.include_views:
            tables = [t for t in tables if t.type != TableType.VIEW]
        if args.filter:
            needle = args.filter.lower()
            tables = [t for t in tables if needle in t.name.lower()]

        result = [
            {
                "name": table.qualified_name,
                "type": table.type.value,
                "columns": [
                    {"name": c.name, "type": c.type, "isPrimaryKey": c.is_primary_key}
                    for c in table.columns
                ],
            }
            for table in tables
        ]
        return {
            "tableCount": len(result),
            "tables": result,
            "hint": "Use get_json_keys to explore JSON/JSONB column structures if needed.",
        }

    async def get_json_keys(self, args: GetJsonKeysArgs) -> Dict[str, Any]:
        try:
            found = await self.gateway.json_keys(
                args.table, args.column, args.nested_path, args.sample_values
            )
        except (SQLAlchemyError, OSError) as error:
            raise ToolFailure(
                database_error_message(error),
                {
                    "table": args.table,
                    "column": args.column,
                    "suggestion": "Check that the table and column names are correct.",
                },
            )

        keys = found["keys"]
        if keys:
            hint = (
                f"Found {len(keys)} unique keys. Use these in your query like: "
                f"{args.column}->>'{keys[0]}'"
            )
        else:
            hint = "No keys found. The column might be empty, an array, or have a different structure."

        return {
            "table": args.table,
            "column": args.column,
            "nestedPath": args.nested_path,
            "keys": keys,
            "keyCount": len(keys),
            "sampleValues": found["samples"],
            "hint": hint,
        }

    async def execute_query(self, args: ExecuteQueryArgs) -> Dict[str, Any]:
        described = {"title": args.title or None, "description": args.description or None}

        if sql_guard.is_mutation_query(args.sql):
            raise ToolFailure(
                "Query rejected: Only SELECT queries are allowed. Mutation queries are blocked for safety.",
                {"suggestion": "Rewrite as a SELECT query to read data instead of modifying it.", **described},
            )
        if not _starts_with(args.sql, "SELECT", "WITH", "EXPLAIN"):
            raise ToolFailure(
                "Query must start with SELECT, WITH, or EXPLAIN.",
                {"suggestion": "Start your query with SELECT to read data from the database.", **described},
            )

        limit = min(args.limit, settings.AGENT_MAX_ROW_LIMIT)
        query = sql_guard.strip_trailing_semicolon(args.sql)
        if not sql_guard.has_limit_clause(query):
            query = f"{query} LIMIT {limit}"

        try:
            result = await self.gateway.run_query(query)
        except (SQLAlchemyError, OSError) as error:
            message = database_error_message(error)
            raise ToolFailure(
                message, {"suggestion": _execution_suggestion(message), **described}
            )

        rows = result["rows"]
        empty_columns = []
        if rows:
            empty_columns = [
                column
                for column in result["columns"]
                if all(row.get(column) is None for row in rows)
            ]

        warning = None
        if empty_columns:
            warning = (
                f"These columns returned all NULL values: {', '.join(empty_columns)}. "
                "This might indicate wrong field names or JSON paths."
            )

        return {
            "rowCount": result["rowCount"],
            "executionTime": result["executionTime"],
            "columns": result["columns"],
            "rows": rows[:SAMPLE_ROWS],
            "hasMoreRows": result["rowCount"] > SAMPLE_ROWS,
            "warning": warning,
            "emptyColumns": empty_columns or None,
            **described,
        }

    async def validate_query(self, args: ValidateQueryArgs) -> Dict[str, Any]:
        if not _starts_with(args.sql, "SELECT", "WITH"):
            raise ToolFailure("Query must start with SELECT or WITH", {"isValid": False})
        if sql_guard.is_mutation_query(args.sql):
            raise ToolFailure(
                "Query contains disallowed keywords. Only SELECT queries are permitted.",
                {"isValid": False},
            )

        try:
            await self.gateway.explain(sql_guard.strip_trailing_semicolon(args.sql))
        except (SQLAlchemyError, OSError) as error:
            message = database_error_message(error)
            raise ToolFailure(
                message, {"isValid": False, "suggestion": _validation_suggestion(message)}
            )

        return {"isValid": True, "message": "Query is syntactically valid PostgreSQL"}

    async def update_query_ui(self, args: UpdateQueryUiArgs) -> Dict[str, Any]:
        # Nothing to run here: the loop and the client act on the arguments
        return {
            "action": "updateUI",
            "sql": args.sql.strip(),
            "explanation": args.explanation,
            "summary": args.summary,
            "changes": args.changes,
            "confidence": args.confidence,
            "suggestions": args.suggestions,
            "message": "Query has been updated in the editor for user review.",
        }

    async def manage_todo(self, args: ManageTodoArgs) -> Dict[str, Any]:
        now = utc_now().isoformat()

        if args.action == "create":
            if not args.items:
                raise ToolFailure("Must provide items array for create action", {"action": args.action})
            batch = uuid.uuid4().hex[:8]
            items = [
                {
                    "id": f"todo-{batch}-{index}",
                    "text": text,
                    "status": (TodoStatus.IN_PROGRESS if index == 0 else TodoStatus.PENDING).value,
                    "createdAt": now,
                }
                for index, text in enumerate(args.items)
            ]
            return {
                "action": "create",
                "items": items,
                "message": f"Created todo list with {len(items)} items",
            }

        if args.action == "add":
            if not args.item_text:
                raise ToolFailure("Must provide item_text for add action", {"action": args.action})
            return {
                "action": "add",
                "item": {
                    "id": f"todo-{uuid.uuid4().hex[:8]}-new",
                    "text": args.item_text,
                    "status": TodoStatus.PENDING.value,
                    "createdAt": now,
                    "addedDuringExecution": True,
                },
                "message": f"Added new todo: {args.item_text}",
            }

        if not args.item_id:
            raise ToolFailure(
                f"Must provide item_id for {args.action} action", {"action": args.action}
            )

        messages = {
            "set_current": f"Set current item to {args.item_id}",
            "complete": f"Marked {args.item_id} as completed",
            "skip": f"Skipped {args.item_id}",
        }
        return {
            "action": args.action,
            "itemId": args.item_id,
            "timestamp": now,
            "message": messages[args.action],
        }


def create_query_agent_tools(
    gateway: DatabaseGateway,
    schema: Optional[List[SchemaTable]] = None,
) -> ToolRegistry:
    """Build the registry of query agent tools for one run."""
    tools = QueryAgentTools(gateway, schema)

    return ToolRegistry(
        [
            ToolSpec(
                name="get_table_schema",
                description=(
                    "Get the database schema: tables, views and their columns with data "
                    "types and primary keys. Use this first to understand the database "
                    "structure before writing queries."
                ),
                args_model=GetTableSchemaArgs,
                handler=tools.get_table_schema,
            ),
            ToolSpec(
                name="get_json_keys",
                description=(
                    "Extract the unique keys of a JSON or JSONB column to learn its "
                    "structure, so you can write paths like data->>'fieldName'."
                ),
                args_model=GetJsonKeysArgs,
                handler=tools.get_json_keys,
            ),
            ToolSpec(
                name=EXECUTE_QUERY_TOOL,
                description=(
                    "Execute a read-only SQL query and return a sample of the results. "
                    "Only SELECT queries are allowed; a LIMIT is applied when none is "
                    "given. Always provide a title and description."
                ),
                args_model=ExecuteQueryArgs,
                handler=tools.execute_query,
            ),
            ToolSpec(
                name="validate_query",
                description=(
                    "Check that a query is valid PostgreSQL using EXPLAIN, without "
                    "running it."
                ),
                args_model=ValidateQueryArgs,
                handler=tools.validate_query,
            ),
            ToolSpec(
                name=TERMINAL_TOOL,
                description=(
                    "Put the final query in the editor for the user to review and run. "
                    "THIS IS THE FINAL STEP - call it once you have a working query, "
                    "with a clear explanation and a short summary of findings."
                ),
                args_model=UpdateQueryUiArgs,
                handler=tools.update_query_ui,
                terminal=True,
            ),
            ToolSpec(
                name=TODO_TOOL,
                description=(
                    "Track a todo list for complex queries (3+ steps). Actions: create "
                    "(initial plan), set_current, complete, skip, add (new item found "
                    "during execution). Keep items specific and actionable."
                ),
                args_model=ManageTodoArgs,
                handler=tools.manage_todo,
            ),
        ]
    )
