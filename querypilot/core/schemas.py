from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for every model that crosses the wire (JSON uses camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =========================
# Enums
# =========================
class TableType(str, Enum):
    TABLE = "table"
    VIEW = "view"


class ConversationRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# =========================
# SCHEMA
# =========================
class ConnectionRequest(CamelModel):
    connection_string: Optional[str] = None


class SchemaColumn(CamelModel):
    name: str
    type: str
    is_primary_key: bool = False


class SchemaTable(CamelModel):
    schema_name: str = Field(default="public", alias="schema")
    name: str
    type: TableType = TableType.TABLE
    columns: List[SchemaColumn] = []

    @property
    def qualified_name(self) -> str:
        if self.schema_name == "public":
            return f'"{self.name}"'
        return f'"{self.schema_name}"."{self.name}"'


class SchemaResponse(CamelModel):
    tables: List[SchemaTable]


class TableInfo(CamelModel):
    schema_name: str = Field(alias="schema")
    name: str
    type: TableType
    row_count: Optional[int] = None


class TablesResponse(CamelModel):
    tables: List[TableInfo]


class ColumnDetail(CamelModel):
    name: str
    type: str
    nullable: bool = True
    default_value: Optional[str] = None
    is_primary_key: bool = False
    is_foreign_key: bool = False
    references: Optional[str] = None


class IndexInfo(CamelModel):
    name: str
    columns: List[str]
    is_unique: bool = False
    is_primary: bool = False


class TableDetailRequest(ConnectionRequest):
    schema_name: str = Field(default="", alias="schema")
    table: str = ""


class TableDetail(CamelModel):
    schema_name: str = Field(alias="schema")
    name: str
    columns: List[ColumnDetail]
    indexes: List[IndexInfo]
    sample_data: List[Dict[str, Any]]
    row_count: Optional[int] = None


class SampleDataRequest(ConnectionRequest):
    tables: List[str] = []
    sample_size: int = Field(default=3, ge=1)


class TableSample(CamelModel):
    table: str
    columns: List[str]
    rows: List[Dict[str, Any]]
    json_field_samples: Optional[Dict[str, List[Any]]] = None


class SampleDataResponse(CamelModel):
    samples: List[TableSample]


# =========================
# QUERY
# =========================
class QueryRequest(ConnectionRequest):
    sql: str


class QueryField(CamelModel):
    name: str


class QueryResponse(CamelModel):
    rows: List[Dict[str, Any]]
    fields: List[QueryField]
    row_count: int
    execution_time: int
    warning: Optional[str] = None
    limit_added: bool = False


# =========================
# AGENT
# =========================
class ConversationTurn(CamelModel):
    role: ConversationRole
    content: str


class AgentRunRequest(CamelModel):
    prompt: str = ""
    api_key: Optional[str] = None
    connection_string: Optional[str] = None
    tables: Optional[List[SchemaTable]] = Field(default=None, alias="schema")
    previous_sql: Optional[str] = None
    previous_context: Optional[str] = None
    conversation_history: List[ConversationTurn] = []
    max_steps: Optional[int] = Field(default=None, ge=1, le=100)
