import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from fakes import FakeGateway, ScriptedModel
from querypilot.ai_feature.llm import get_model_client_factory
from querypilot.core.database import get_gateway_factory
from querypilot.main import app


@pytest_asyncio.fixture(scope="function")
async def gateway():
    return FakeGateway()


@pytest_asyncio.fixture(scope="function")
async def model():
    # Tests set .turns before making a request
    return ScriptedModel([])


# Client
@pytest_asyncio.fixture(scope="function")
async def client(gateway: FakeGateway, model: ScriptedModel):
    app.dependency_overrides[get_gateway_factory] = lambda: (lambda database_url: gateway)
    app.dependency_overrides[get_model_client_factory] = lambda: (lambda api_key: model)

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
