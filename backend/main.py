from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from api import maintenance_router, memory_router
from db import close_memory_service, get_memory_service
from runtime_state import runtime_state


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the memory store on startup, flush it on shutdown."""
    logger.info("Memory API starting...")
    try:
        startup = await runtime_state.ensure_started(get_memory_service)
        logger.info(f"Memory store ready: {startup.get('initialize')}")
    except Exception as e:
        logger.error(f"Failed to initialize memory store: {e}")
        raise RuntimeError("Failed to initialize memory store during startup") from e

    yield

    logger.info("Flushing memory store...")
    await runtime_state.shutdown()
    await close_memory_service()


app = FastAPI(
    title="Memory API",
    description="Second-brain memory backend: typed memories, hybrid search, context assembly",
    version="1.0.0",
    lifespan=lifespan,
)

# Development defaults; restrict origins in production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Memory API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    try:
        service = get_memory_service()
        stats = await service.stats()
        payload["store"] = {
            "total": stats["total"],
            "by_status": stats["by_status"],
            "embedding_coverage": stats["embedding_coverage"],
            "embedding_backend": stats["embedding_backend"],
        }
        payload["lexical"] = stats["lexical"]
        payload["notifications"] = runtime_state.notifications.status()
        if stats["embedding_backend"] == "none":
            payload["status"] = "degraded"
            payload["degrade_reasons"] = ["embedding_disabled"]
    except Exception as e:
        logger.warning(f"[memory] health check degraded: {e}")
        payload["status"] = "degraded"
        payload["store"] = {"available": False, "reason": str(e)}
    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
