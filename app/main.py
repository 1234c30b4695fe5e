import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.logging_config import get_logger, setup_logging
from app.routers import oauth, webhook
from app.services.redis_client import close_redis
from app.services.turn_coordinator import get_turn_coordinator

setup_logging()

logger = get_logger("main")

app = FastAPI(
    title="Chat2Act API",
    description="Chat webhook that turns visitor requests into tenant API actions",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(oauth.router)


@app.on_event("shutdown")
async def drain_background_turns() -> None:
    coordinator = get_turn_coordinator()
    await coordinator.drain()
    await close_redis()
    logger.info("Shutdown complete")


@app.get("/health")
async def health():
    return {"status": "ok"}
