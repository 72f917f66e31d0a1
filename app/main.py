import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from app.api.routes_api import router as api_router
from app.core.config import get_settings
from app.services.discovery_runtime import discovery_lifespan

load_dotenv()

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """Application lifespan context manager."""
    async with discovery_lifespan(app):
        yield


# Initialize FastAPI with overarching lifespan
app = FastAPI(
    title="Reelshelf",
    description="Background episode discovery and caching for TV series",
    version="0.1.0",
    lifespan=app_lifespan,
)

# Include routers
app.include_router(api_router, prefix="/api")
