import json

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import DBAPIError, ProgrammingError

from fakes import finish_request, tool_request, tool_turn


class PgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def frames_of(text: str):
    return [line[len("data: "):] for line in text.split("\n") if line.startswith("data: ")]


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_agent_limits(client: AsyncClient):
    response = await client.get("/ai-agent")
    assert response.status_code == 200
    assert response.json() == {"maxSteps": 25}


@pytest.mark.asyncio
async def test_agent_streams_run(client: AsyncClient, model, gateway):
    """Frames for the whole run, then the done marker"""
    model.turns = [
        tool_turn(tool_request("execute_query", "toolu_1", sql="SELECT id FROM users")),
        tool_turn(finish_request("toolu_2", sql="SELECT id FROM users")),
    ]
    payload = {
        "prompt": "user ids",
        "apiKey": "sk-test",
        "connectionString": "postgresql://db/app",
        "maxSteps": 5,
    }

    response = await client.post("/ai-agent", json=payload)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"

    frames = frames_of(response.text)
    assert frames[-1] == "[DONE]"
    events = [json.loads(frame) for frame in frames[:-1]]
    assert [e["type"] for e in events] == [
        "step",
        "tool_call_start",
        "tool_call_result",
        "step",
        "tool_call_start",
        "tool_call_result",
        "complete",
    ]
    assert events[0] == {"type": "step", "step": 1, "maxSteps": 5}
    assert events[-1]["state"]["currentSql"] == "SELECT id FROM users"
    assert gateway.queries == ["SELECT id FROM users LIMIT 100"]
    assert model.closed is True


@pytest.mark.asyncio
async def test_agent_uses_supplied_schema(client: AsyncClient, model, gateway):
    model.turns = [
        tool_turn(tool_request("get_table_schema", "toolu_1")),
        tool_turn(finish_request("toolu_2")),
    ]
    payload = {
        "prompt": "orders",
        "apiKey": "sk-test",
        "connectionString": "postgresql://db/app",
        "schema": [{"schema": "public", "name": "orders", "type": "table", "columns": []}],
    }

    response = await client.post("/ai-agent", json=payload)

    events = [json.loads(frame) for frame in frames_of(response.text)[:-1]]
    schema_result = events[2]["toolCall"]["result"]
    assert [t["name"] for t in schema_result["tables"]] == ['"orders"']
    assert gateway.schema_loads == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, detail",
    [
        ({"prompt": "  ", "apiKey": "k", "connectionString": "postgresql://db"}, "Missing required field: prompt"),
        ({"prompt": "hi", "connectionString": "postgresql://db"}, "API key is required"),
        ({"prompt": "hi", "apiKey": "k"}, "Database connection is required"),
    ],
)
async def test_agent_rejects_incomplete_requests(client: AsyncClient, payload, detail, monkeypatch):
    from querypilot.core.config import settings

    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", "")
    monkeypatch.setattr(settings, "DATABASE_URL", "")

    response = await client.post("/ai-agent", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == detail


@pytest.mark.asyncio
async def test_agent_rejects_out_of_range_budget(client: AsyncClient):
    payload = {"prompt": "hi", "apiKey": "k", "connectionString": "postgresql://db", "maxSteps": 0}

    response = await client.post("/ai-agent", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_query_adds_default_limit(client: AsyncClient, gateway):
    response = await client.post(
        "/query", json={"connectionString": "postgresql://db/app", "sql": "SELECT * FROM users"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["limitAdded"] is True
    assert data["rowCount"] == 2
    assert data["fields"] == [{"name": "id"}, {"name": "email"}]
    assert "limited to 1000 rows" in data["warning"]
    assert gateway.queries == ["SELECT * FROM users LIMIT 1000"]


@pytest.mark.asyncio
async def test_query_keeps_keyword_warning(client: AsyncClient, gateway):
    response = await client.post(
        "/query", json={"connectionString": "postgresql://db/app", "sql": "DELETE FROM sessions"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["limitAdded"] is False
    assert data["warning"].startswith("Warning: Query contains DELETE")


@pytest.mark.asyncio
async def test_query_rejects_empty_sql(client: AsyncClient):
    response = await client.post("/query", json={"connectionString": "postgresql://db", "sql": ""})

    assert response.status_code == 400
    assert response.json()["detail"] == "SQL query cannot be empty"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, status_code, detail_start",
    [
        (ConnectionRefusedError("refused"), 503, "Unable to connect to database"),
        (DBAPIError("SELECT", None, PgError("password failed", "28P01")), 401, "Authentication failed"),
        (DBAPIError("SELECT", None, PgError("no such db", "3D000")), 404, "Database does not exist"),
        (DBAPIError("SELECT", None, PgError("near FORM", "42601")), 400, "SQL syntax error: near FORM"),
        (DBAPIError("SELECT", None, PgError('relation "x" missing', "42P01")), 404, "Table does not exist"),
        (DBAPIError("SELECT", None, PgError("division by zero", "22012")), 500, "division by zero"),
    ],
)
async def test_query_maps_database_errors(client: AsyncClient, gateway, error, status_code, detail_start):
    gateway.error = error

    response = await client.post("/query", json={"connectionString": "postgresql://db", "sql": "SELECT 1"})

    assert response.status_code == status_code
    assert response.json()["detail"].startswith(detail_start)


@pytest.mark.asyncio
async def test_tables_and_schema(client: AsyncClient):
    tables = await client.post("/tables", json={"connectionString": "postgresql://db"})
    schema = await client.post("/schema", json={"connectionString": "postgresql://db"})

    assert tables.status_code == 200
    assert tables.json()["tables"][0] == {
        "schema": "public",
        "name": "users",
        "type": "table",
        "rowCount": 42,
    }
    assert schema.status_code == 200
    users = schema.json()["tables"][0]
    assert users["columns"][0] == {"name": "id", "type": "integer", "isPrimaryKey": True}
    assert schema.json()["tables"][1]["schema"] == "reporting"


@pytest.mark.asyncio
async def test_query_commits_statement_without_rows(client: AsyncClient, gateway):
    gateway.affected = 3

    response = await client.post(
        "/query", json={"connectionString": "postgresql://db", "sql": "UPDATE users SET plan = 'pro'"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["rowCount"] == 3
    assert data["rows"] == []
    assert data["fields"] == []
    assert data["limitAdded"] is False
    assert data["warning"].startswith("Warning: Query contains UPDATE")
    assert gateway.commits == [True]


@pytest.mark.asyncio
async def test_agent_queries_are_not_committed(client: AsyncClient, model, gateway):
    model.turns = [
        tool_turn(tool_request("execute_query", "toolu_1", sql="SELECT id FROM users")),
        tool_turn(finish_request("toolu_2", sql="SELECT id FROM users")),
    ]
    payload = {"prompt": "ids", "apiKey": "sk-test", "connectionString": "postgresql://db"}

    await client.post("/ai-agent", json=payload)

    assert gateway.commits == [False]


@pytest.mark.asyncio
async def test_table_info(client: AsyncClient):
    response = await client.post(
        "/table-info",
        json={"connectionString": "postgresql://db", "schema": "public", "table": "users"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["schema"] == "public"
    assert data["name"] == "users"
    assert data["columns"][0]["isPrimaryKey"] is True
    assert data["indexes"][0] == {
        "name": "users_pkey",
        "columns": ["id"],
        "isUnique": True,
        "isPrimary": True,
    }
    assert data["sampleData"][0]["email"] == "a@example.com"
    assert data["rowCount"] == 42


@pytest.mark.asyncio
async def test_table_info_requires_schema_and_table(client: AsyncClient):
    response = await client.post("/table-info", json={"connectionString": "postgresql://db", "table": ""})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required fields: schema and table"


@pytest.mark.asyncio
async def test_table_info_names_missing_table(client: AsyncClient, gateway):
    gateway.error = DBAPIError("SELECT", None, PgError('relation "x" missing', "42P01"))

    response = await client.post(
        "/table-info",
        json={"connectionString": "postgresql://db", "schema": "public", "table": "ghosts"},
    )

    assert response.status_code == 404
    assert response.json()["detail"] == 'Table "ghosts" in schema "public" does not exist.'


@pytest.mark.asyncio
async def test_sample_data_skips_unreadable_tables(client: AsyncClient, gateway):
    gateway.unreadable["secrets"] = ProgrammingError("SELECT", None, PgError("permission denied", "42501"))
    tables = ["users", "secrets"] + [f"t{i}" for i in range(12)]

    response = await client.post(
        "/sample-data",
        json={"connectionString": "postgresql://db", "tables": tables, "sampleSize": 50},
    )

    assert response.status_code == 200
    samples = response.json()["samples"]
    assert [s["table"] for s in samples] == ["users"] + [f"t{i}" for i in range(8)]
    assert len(gateway.sampled) == 10
    assert {size for _, size in gateway.sampled} == {5}


@pytest.mark.asyncio
async def test_sample_data_requires_tables(client: AsyncClient):
    response = await client.post("/sample-data", json={"connectionString": "postgresql://db", "tables": []})

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing required field: tables"
