from typing import Annotated, Callable

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from querypilot.core import sql_guard
from querypilot.core.config import settings
from querypilot.core.database import (
    DatabaseGateway,
    database_http_error,
    get_gateway_factory,
    resolve_database_url,
)
from querypilot.core.schemas import QueryField, QueryRequest, QueryResponse

router = APIRouter(prefix="/query", tags=["Query"])

gateway_factory_dep = Annotated[Callable[[str], DatabaseGateway], Depends(get_gateway_factory)]


@router.post("", response_model=QueryResponse, response_model_by_alias=True)
async def execute_query(payload: QueryRequest, gateway_factory: gateway_factory_dep):
    """
    Run a user's query against the target database.

    SELECTs without a LIMIT get one (DEFAULT_ROW_LIMIT) added. Other
    statements run after a warning and are committed.
    """
    validation = sql_guard.validate_sql(payload.sql)
    if not validation.valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=validation.error)

    database_url = resolve_database_url(payload.connection_string)
    sql, limit_added = sql_guard.add_default_limit(payload.sql, settings.DEFAULT_ROW_LIMIT)

    try:
        result = await gateway_factory(database_url).run_query(sql, commit=True)
    except (SQLAlchemyError, OSError) as error:
        raise database_http_error(error)

    warning = validation.warning
    if limit_added:
        limit_warning = (
            f"Results limited to {settings.DEFAULT_ROW_LIMIT} rows. "
            "Add your own LIMIT clause to override."
        )
        warning = f"{warning}; {limit_warning}" if warning else limit_warning

    return QueryResponse(
        rows=result["rows"],
        fields=[QueryField(name=column) for column in result["columns"]],
        row_count=result["rowCount"],
        execution_time=result["executionTime"],
        warning=warning,
        limit_added=limit_added,
    )
