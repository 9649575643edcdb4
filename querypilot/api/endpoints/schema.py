import logging
from typing import Annotated, Callable

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import ProgrammingError, SQLAlchemyError

from querypilot.core.database import (
    DatabaseGateway,
    database_http_error,
    get_gateway_factory,
    resolve_database_url,
)
from querypilot.core.schemas import (
    ConnectionRequest,
    SampleDataRequest,
    SampleDataResponse,
    SchemaResponse,
    TableDetail,
    TableDetailRequest,
    TablesResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Schema"])

gateway_factory_dep = Annotated[Callable[[str], DatabaseGateway], Depends(get_gateway_factory)]

MAX_SAMPLED_TABLES = 10
MAX_SAMPLE_SIZE = 5


@router.post("/tables", response_model=TablesResponse, response_model_by_alias=True)
async def list_tables(payload: ConnectionRequest, gateway_factory: gateway_factory_dep):
    """Tables and views with their estimated row counts."""
    gateway = gateway_factory(resolve_database_url(payload.connection_string))
    try:
        tables = await gateway.fetch_tables()
    except (SQLAlchemyError, OSError) as error:
        raise database_http_error(error)
    return TablesResponse(tables=tables)


@router.post("/schema", response_model=SchemaResponse, response_model_by_alias=True)
async def get_schema(payload: ConnectionRequest, gateway_factory: gateway_factory_dep):
    gateway = gateway_factory(resolve_database_url(payload.connection_string))
    try:
        tables = await gateway.fetch_schema()
    except (SQLAlchemyError, OSError) as error:
        raise database_http_error(error)
    return SchemaResponse(tables=tables)


@router.post("/table-info", response_model=TableDetail, response_model_by_alias=True)
async def get_table_info(payload: TableDetailRequest, gateway_factory: gateway_factory_dep):
    """Columns, constraints, indexes and sample rows of one table."""
    if not payload.schema_name or not payload.table:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: schema and table",
        )

    gateway = gateway_factory(resolve_database_url(payload.connection_string))
    try:
        return await gateway.fetch_table_detail(payload.schema_name, payload.table)
    except (SQLAlchemyError, OSError) as error:
        raise database_http_error(
            error, table=f'"{payload.table}" in schema "{payload.schema_name}"'
        )


@router.post("/sample-data", response_model=SampleDataResponse, response_model_by_alias=True)
async def sample_data(payload: SampleDataRequest, gateway_factory: gateway_factory_dep):
    """
    A few rows from each requested table (at most 10 tables, 5 rows each).

    Tables that cannot be read are left out of the response.
    """
    if not payload.tables:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required field: tables",
        )

    gateway = gateway_factory(resolve_database_url(payload.connection_string))
    sample_size = min(payload.sample_size, MAX_SAMPLE_SIZE)

    samples = []
    for table in payload.tables[:MAX_SAMPLED_TABLES]:
        try:
            samples.append(await gateway.sample_table(table, sample_size))
        except ProgrammingError as error:
            logger.warning(f"Skipping sample of {table}: {error.orig}")
        except (SQLAlchemyError, OSError) as error:
            raise database_http_error(error)
    return SampleDataResponse(samples=samples)
