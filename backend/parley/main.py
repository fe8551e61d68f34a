from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from parley.api import conversations, messages, presence, search_sync
from parley.config import settings
from parley.database import engine
from parley.errors import ParleyError
from parley.models.base import Base
from parley.services.presence import PresenceTracker, RedisPresenceStore
from parley.services.search_index import init_search_db
from parley.services.search_sync import SearchSyncWorker
from parley.tasks import start_background_tasks, stop_background_tasks
from parley.websocket.handlers import websocket_endpoint


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables on startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await init_search_db()

    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    app.state.presence = PresenceTracker(RedisPresenceStore(redis))

    tasks = []
    if settings.background_tasks_enabled:
        tasks = start_background_tasks(app.state.presence, SearchSyncWorker())
    try:
        yield
    finally:
        await stop_background_tasks(tasks)
        await redis.aclose()


app = FastAPI(
    title="Parley",
    description="Direct messaging API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ParleyError)
async def parley_error_handler(request: Request, exc: ParleyError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# REST API routes
app.include_router(conversations.router)
app.include_router(messages.router)
app.include_router(presence.router)
app.include_router(search_sync.router)

# WebSocket
app.websocket("/ws")(websocket_endpoint)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "parley"}
