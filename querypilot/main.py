import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from querypilot.api.router import api_router
from querypilot.core.config import settings
from querypilot.core.database import dispose_engines

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# Close every target-database pool once the app shuts down
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await dispose_engines()


app = FastAPI(title="QueryPilot API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
