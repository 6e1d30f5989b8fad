import os

import uvicorn

from docksync.config import settings
from utils.logging_utils import get_tagged_logger, mask_url, setup_logging

logger = get_tagged_logger(__name__, tag="server")


def describe_store() -> None:
    """Log which shared store this process will attach to."""
    backend = settings.store_backend.lower()
    if backend == "redis":
        target = mask_url(settings.store_redis_url)
    elif backend == "sql":
        target = mask_url(settings.store_database_url)
    else:
        target = "process memory"
        logger.warning("In-memory shared store: watch and widget processes will not see this data")
    logger.info("Shared store", extra={"backend": backend, "target": target})


if __name__ == "__main__":
    setup_logging(level=settings.log_level, process_role=settings.process_role)
    describe_store()

    uvicorn.run(
        "docksync.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=False,
    )
