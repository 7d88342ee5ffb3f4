import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.config import settings
from app.core.database import AsyncSessionLocal, Base, engine, readonly_engine
from app.api.router import api_router
from app.ai_feature.schema import SchemaCatalog, load_allow_list
from app.ai_feature.service import build_assistant

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# Build the assistant once, close the engines once everything is done
@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        # Users and conversation tables; business tables belong to the host application
        await conn.run_sync(Base.metadata.create_all)

    allow_list = load_allow_list(settings.SCHEMA_ALLOWLIST_PATH)
    catalog = await SchemaCatalog.from_database(
        readonly_engine, allow_list, settings.SCHEMA_NAME
    )
    app.state.assistant = build_assistant(
        settings, AsyncSessionLocal, readonly_engine, catalog
    )
    logger.info("Assistant ready")

    yield

    await readonly_engine.dispose()
    await engine.dispose()


app = FastAPI(title="Database Assistant API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the Database Assistant API"}
