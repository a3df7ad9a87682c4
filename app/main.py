"""
NIBLET MAIN API
===============

This module defines the FastAPI application and all HTTP endpoints. It is
designed for single-user use: one person runs one server (e.g. python run.py)
and uses it as their personal Niblet backend.

ENDPOINTS:
  GET    /                   - Returns API name and list of endpoints.
  GET    /health             - Returns status of all services (for monitoring).
  POST   /chat               - Send a message (optionally with a photo URL); returns the replies.
  GET    /chat/history       - The whole transcript of the current session.
  POST   /chat/personality   - Switch personality (best-friend, professional-coach, tough-love).
  POST   /chat/clear         - Start a new session with a fresh welcome message.
  POST   /chat/transcribe    - Upload a voice note; returns the text to send.
  DELETE /chat/data          - Remove every cached transcript and session marker.

SESSION:
  The server keeps one SessionManager for the configured user. On the first
  request it restores the last session (cache first, then the thread itself) or
  creates a new one. Requests that touch the session are queued one at a time.

STARTUP:
  The lifespan function builds the OpenAI client, the agent gateway, the cache,
  the profile/record stores, the tool dispatcher, the run executor and the
  session manager, then resolves the session so the first chat is fast.
"""


from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from openai import AsyncOpenAI
from tavily import AsyncTavilyClient
import uvicorn
import logging

from app.models import (
    ChatRequest,
    ChatResponse,
    HistoryResponse,
    Message,
    PersonalityRequest,
    TranscriptionResponse,
)
from app.services.agent_gateway import AgentGateway
from app.services.capabilities import MealTrackingCapabilities, build_handlers
from app.services.profile_store import JsonProfileStore, JsonRecordStore
from app.services.run_executor import ConversationError, RunExecutor
from app.services.session_manager import SessionManager
from app.services.storage import FileStorage
from app.services.tool_dispatcher import ToolDispatcher
from app.services.transcript_cache import TranscriptCache
from app.utils.retry import is_rate_limit_error
from config import (
    CACHE_DATA_DIR,
    NIBLET_USER_ID,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    PROFILES_DATA_DIR,
    RECORDS_DATA_DIR,
    TAVILY_API_KEY,
)

# User-friendly message when OpenAI rate limits us.
RATE_LIMIT_MESSAGE = (
    "Niblet is getting a lot of requests right now. "
    "Please wait a moment and try again."
)

# User-friendly message when a run ended without an answer.
NO_RESPONSE_MESSAGE = "Sorry, I could not get a response. Please try again."


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("NIBLET")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
session_manager: SessionManager = None


def build_session_manager() -> SessionManager:
    """Wire every service together for the configured user."""
    if not OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not set. Add it to your .env file.")

    client = AsyncOpenAI(api_key=OPENAI_API_KEY, base_url=OPENAI_BASE_URL)
    gateway = AgentGateway(client)
    cache = TranscriptCache(FileStorage(CACHE_DATA_DIR))
    profiles = JsonProfileStore(PROFILES_DATA_DIR)
    records = JsonRecordStore(RECORDS_DATA_DIR)

    if TAVILY_API_KEY:
        tavily_client = AsyncTavilyClient(api_key=TAVILY_API_KEY)
        logger.info("Tavily search client initialized successfully")
    else:
        tavily_client = None
        logger.warning("TAVILY_API_KEY not set. Nutrition lookup will be unavailable.")

    capabilities = MealTrackingCapabilities(NIBLET_USER_ID, records, profiles, tavily_client)
    dispatcher = ToolDispatcher(build_handlers(capabilities))
    executor = RunExecutor(gateway, dispatcher)
    return SessionManager(NIBLET_USER_ID, gateway, cache, profiles, executor)


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the session manager at startup and resolve the user's session.
    A failure to resolve is logged but does not stop the server; the first
    chat request will try again.
    """
    global session_manager

    logger.info("=" * 60)
    logger.info("NIBLET - Starting Up...")
    logger.info("=" * 60)

    try:
        session_manager = build_session_manager()
    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        raise

    try:
        session = await session_manager.resolve()
        logger.info("Session ready: thread %s (%s)", session.session_id, session.personality_key)
    except Exception as e:
        logger.error(f"Could not resolve a session at startup: {e}", exc_info=True)

    logger.info("NIBLET is online and ready!")
    logger.info("API: http://localhost:8000")
    logger.info("Docs: http://localhost:8000/docs")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down NIBLET. Goodbye!")


# -------------------------------------------------------------------------
# FASTAPI APP AND CORS
# -------------------------------------------------------------------------
app = FastAPI(
    title="Niblet API",
    description="AI meal-tracking assistant",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_manager() -> SessionManager:
    if not session_manager:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    return session_manager


def _to_http_error(e: Exception, action: str) -> HTTPException:
    """Map an engine error to the HTTP status the frontend understands."""
    if isinstance(e, ValueError):
        logger.warning(f"Bad request while trying to {action}: {e}")
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ConversationError):
        logger.error(f"No response while trying to {action}: {e}")
        return HTTPException(status_code=502, detail=NO_RESPONSE_MESSAGE)
    if is_rate_limit_error(e):
        logger.warning(f"Rate limit hit: {e}")
        return HTTPException(status_code=429, detail=RATE_LIMIT_MESSAGE)
    logger.error(f"Error while trying to {action}: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Error while trying to {action}: {str(e)}")


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "Niblet API",
        "endpoints": {
            "/chat": "Send a message to Niblet",
            "/chat/history": "Get the current transcript",
            "/chat/personality": "Change Niblet's personality",
            "/chat/clear": "Start a fresh conversation",
            "/chat/transcribe": "Turn a voice note into text",
            "/chat/data": "Delete cached chat data",
            "/health": "System health check"
        }
    }


@app.get("/health")
async def health():
    """Return 'healthy', whether the chat service exists and whether it has a session."""
    return {
        "status": "healthy",
        "chat_service": session_manager is not None,
        "session": bool(session_manager and session_manager.session),
        "busy": bool(session_manager and session_manager.is_busy),
    }


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """
    Send a message to Niblet.

    HOW IT WORKS:
    1. The message is added to the transcript (and cache) right away.
    2. It is posted to the thread and the assistant is run.
    3. Any tools the assistant calls (log_meal, log_weight, get_nutrition_info) run here.
    4. The assistant's replies are added to the transcript and returned.

    If another message is still being answered, this one waits its turn.
    On failure the user message stays in the history; send it again to retry.
    """
    manager = _require_manager()
    try:
        replies = await manager.send(request.message, request.attachment_url)
        return ChatResponse(session_id=manager.session.session_id, messages=replies)
    except Exception as e:
        raise _to_http_error(e, "process chat")


@app.get("/chat/history", response_model=HistoryResponse)
async def get_chat_history():
    """Return every message of the current session in display order (restoring it if needed)."""
    manager = _require_manager()
    try:
        session = await manager.resolve()
        return HistoryResponse(
            session_id=session.session_id,
            personality=session.personality_key,
            messages=manager.messages,
        )
    except Exception as e:
        raise _to_http_error(e, "retrieve history")


@app.post("/chat/personality", response_model=Message)
async def change_personality(request: PersonalityRequest):
    """Switch personality; the thread and its history are kept."""
    manager = _require_manager()
    try:
        return await manager.change_personality(request.personality)
    except Exception as e:
        raise _to_http_error(e, "change personality")


@app.post("/chat/clear", response_model=ChatResponse)
async def clear_chat():
    """Forget the current thread and start a new one with a welcome message."""
    manager = _require_manager()
    try:
        messages = await manager.clear()
        return ChatResponse(session_id=manager.session.session_id, messages=messages)
    except Exception as e:
        raise _to_http_error(e, "clear chat")


@app.post("/chat/transcribe", response_model=TranscriptionResponse)
async def transcribe(audio: UploadFile = File(...)):
    """Transcribe an uploaded voice note. The text is returned, not sent."""
    manager = _require_manager()
    try:
        data = await audio.read()
        text = await manager.transcribe(data, audio.content_type or "audio/webm")
        return TranscriptionResponse(text=text)
    except Exception as e:
        raise _to_http_error(e, "transcribe audio")


@app.delete("/chat/data")
async def delete_chat_data():
    """Remove every cached transcript, the active-session marker and stored assistant ids."""
    manager = _require_manager()
    try:
        removed = await manager.wipe()
        return {"success": True, "removed": removed}
    except Exception as e:
        raise _to_http_error(e, "delete chat data")


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m app.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m app.main"""
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
