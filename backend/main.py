import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🎵 Shotobump sync relay starting up (store: {settings.state_store_backend})...")
    if settings.state_store_backend == "http":
        logger.warning("STATE_STORE_BACKEND=http makes the relay forward to itself — use memory or firestore")
    yield
    from services.state_store import close_state_store
    await close_state_store()
    logger.info("Relay shutting down.")


app = FastAPI(
    title="Shotobump Sync Relay",
    version="0.1.0",
    description="Shared game-state store for the synchronized song-guessing turn engine",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "shotobump-sync", "version": "0.1.0"}


from routers.sync_router import router as sync_router

app.include_router(sync_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
