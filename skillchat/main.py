import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from skillchat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from skillchat.exceptions import ChatError
from skillchat.logging_config import setup_logging
from skillchat.repositories.conversation_repository import ConversationRepository
from skillchat.repositories.message_repository import MessageRepository
from skillchat.routers.chat import router as chat_router
from skillchat.routers.conversations import router as conversations_router
from skillchat.routers.presence import router as presence_router
from skillchat.services.subscriptions import close_hub
from skillchat.utils.realtime_bus import close_bus

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("Server")
    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    try:
        yield
    finally:
        await close_hub()
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="SkillChat conversation sync", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(presence_router)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "chat"}
