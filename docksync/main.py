"""FastAPI application for the phone process."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import api
from .config import settings
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="docksync/main")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Start the refresh and mailbox loops for the lifetime of the server."""
    if settings.run_background_loops:
        api.RUNTIME.start()
    try:
        yield
    finally:
        if settings.run_background_loops:
            api.RUNTIME.stop()


app = FastAPI(title="docksync", lifespan=lifespan)


@app.get("/health")
def health():
    """Liveness probe with a summary of local state."""
    count, oldest = api.RUNTIME.stations.cache.status()
    return {
        "status": "ok",
        "favorites": len(api.RUNTIME.favorites.ids()),
        "cached_stations": count,
        "oldest_cache_age": oldest,
    }


app.include_router(api.router, prefix="/v1")
