import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.database import Base, engine
from app.core.config import settings
from app.core.exceptions import ChatError, chat_error_handler
from app.core.realtime import bus, registry
from app.api.v1.main import api_router
from app.api.v1.endpoints import ws_updates
from app.services.connection_manager import manager
from app.services.websocket_cleanup_service import cleanup_inactive_sessions
from app import models  # noqa: F401  registers every table on Base.metadata

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create all database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
)

# Parse CORS origins from comma-separated string in settings
cors_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ChatError, chat_error_handler)

app.include_router(api_router, prefix=settings.API_V1_STR)
app.include_router(ws_updates.router, prefix="/ws")

@app.get("/")
async def read_root():
    return {"message": f"{settings.PROJECT_NAME} backend is running"}


# Initialize scheduler for background tasks
scheduler = AsyncIOScheduler()


@app.on_event("startup")
async def on_startup():
    # Start WebSocket cleanup scheduler if enabled
    if settings.WS_ENABLE_HEARTBEAT:
        scheduler.add_job(
            cleanup_inactive_sessions,
            'interval',
            seconds=settings.WS_CLEANUP_INTERVAL,
            args=[manager],
            id='websocket_cleanup',
            replace_existing=True
        )
        logger.info(f"[Startup] WebSocket cleanup scheduler started (interval: {settings.WS_CLEANUP_INTERVAL}s, timeout: {settings.WS_SESSION_TIMEOUT}s)")
    else:
        logger.info("[Startup] WebSocket heartbeat disabled (WS_ENABLE_HEARTBEAT=False)")

    if not scheduler.running:
        scheduler.start()

@app.on_event("shutdown")
async def on_shutdown():
    logger.info("Server is shutting down...")

    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("[Shutdown] Scheduler stopped")

    # Disconnect all WebSocket clients, then drop their realtime subscriptions
    await manager.disconnect_all()
    await registry.close()
    await bus.close()
    logger.info("[Shutdown] All WebSocket clients disconnected")

if __name__ == "__main__":
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, ws="websockets")
