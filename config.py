"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all Niblet settings: API keys, paths, model names, timing
  constants for the run loop and retries, and the personality table that
  defines how the meal-tracking assistant speaks. Designed for single-user
  use: each person runs their own copy of this backend with their own .env
  and database/ folder.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so API keys stay out of code).
  - Defines paths to database/cache_data, database/profiles_data, database/records_data.
  - Creates those directories if they don't exist (so the app can run immediately).
  - Exposes OPENAI_API_KEY, NIBLET_MODEL, TAVILY_API_KEY for the agent and nutrition lookup.
  - Defines retry/backoff and run-polling constants used by the conversation engine.
  - Holds the PERSONALITIES table (one row per personality key).

USAGE:
  Import what you need: `from config import OPENAI_API_KEY, PERSONALITIES, RUN_MAX_POLLS`
  All services import from here so behaviour is consistent.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
load_dotenv()


# -----------------------------------------------------------------------------
# BASE PATH
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent

# ============================================================================
# DATABASE PATHS
# ============================================================================
# These directories store different types of data:
# - cache_data: transcript cache and session metadata (one JSON file per key)
# - profiles_data: user profiles (session/agent ids, personality, current weight)
# - records_data: meals and weight logs written by the assistant's tools

DATABASE_DIR = BASE_DIR / "database"
CACHE_DATA_DIR = DATABASE_DIR / "cache_data"
PROFILES_DATA_DIR = DATABASE_DIR / "profiles_data"
RECORDS_DATA_DIR = DATABASE_DIR / "records_data"

CACHE_DATA_DIR.mkdir(parents=True, exist_ok=True)
PROFILES_DATA_DIR.mkdir(parents=True, exist_ok=True)
RECORDS_DATA_DIR.mkdir(parents=True, exist_ok=True)

# ============================================================================
# OPENAI CONFIGURATION
# ============================================================================
# The agent runs on the OpenAI Assistants API (assistants, threads, runs).
# NIBLET_MODEL is the model each personality's assistant is created with.
# TRANSCRIPTION_MODEL turns voice input into text before it is sent.

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "").strip() or None
NIBLET_MODEL = os.getenv("NIBLET_MODEL", "gpt-4-turbo")
TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "whisper-1")

# ============================================================================
# TAVILY API CONFIGURATION
# ============================================================================
# Used by the get_nutrition_info tool to look up nutrition facts on the web.
# Optional: without a key the tool reports that lookup is unavailable.

TAVILY_API_KEY = os.getenv("TAVILY_API_KEY", "")

# ============================================================================
# USER
# ============================================================================
# One server per user. The profile store and record store are keyed by this id.

NIBLET_USER_ID = os.getenv("NIBLET_USER_ID", "").strip() or "local-user"

# ============================================================================
# RETRY AND RUN LOOP CONFIGURATION
# ============================================================================
# RETRY_*: every remote agent call is wrapped by with_retry. Attempts include
#   the first call; the delay grows by RETRY_BACKOFF_MULTIPLIER each time.
# RUN_*: one inference cycle polls the run at most RUN_MAX_POLLS times,
#   RUN_POLL_INTERVAL seconds apart. A rate-limited poll waits
#   RUN_POLL_INTERVAL * RUN_THROTTLE_MULTIPLIER and does not count as a poll;
#   RUN_MAX_THROTTLED_POLLS caps how many of those we tolerate.

RETRY_MAX_ATTEMPTS = 3
RETRY_INITIAL_DELAY = 1.0
RETRY_BACKOFF_MULTIPLIER = 1.5

RUN_MAX_POLLS = 10
RUN_POLL_INTERVAL = 1.0
RUN_THROTTLE_MULTIPLIER = 5
RUN_MAX_THROTTLED_POLLS = 10

# Messages fetched per list call (the API maximum).
MESSAGE_LIST_LIMIT = 100

# Maximum length (characters) for a single user message.
MAX_MESSAGE_LENGTH = 32_000

# ============================================================================
# NIBLET PERSONALITY CONFIGURATION
# ============================================================================
# Each personality is one row: display name, instructions and temperature.
# One assistant is created per personality key and reused across sessions.
# To add a personality, append a row; nothing else has to change.

ASSISTANT_NAME = (os.getenv("ASSISTANT_NAME", "").strip() or "Niblet")

PERSONALITIES = {
    "best-friend": {
        "display_name": f"{ASSISTANT_NAME} (Best Friend)",
        "instruction_text": (
            f"You are {ASSISTANT_NAME}, a friendly and supportive AI meal tracking assistant. Speak in a warm, "
            "casual tone like you're talking to a close friend. Use encouraging language, be empathetic, and "
            "occasionally add friendly emojis. Make the user feel comfortable sharing their food choices without "
            "judgment. Celebrate their wins and provide gentle guidance when they need it. When users tell you "
            "about a meal, estimate its calories and nutritional content, then offer to log it for them. If they "
            "share an image of food, analyze what's in it and estimate nutrition information based on what you see."
        ),
        "temperature": 0.7,
    },
    "professional-coach": {
        "display_name": f"{ASSISTANT_NAME} (Professional Coach)",
        "instruction_text": (
            f"You are {ASSISTANT_NAME}, a professional nutrition coach and meal tracking assistant. Maintain a "
            "supportive but data-driven approach. Speak with authority and precision, focusing on nutritional facts "
            "and measurable progress. Provide detailed nutritional breakdowns and specific, actionable advice based "
            "on the user's goals. When users tell you about a meal, provide detailed macronutrient estimates and "
            "offer to log it with precise nutritional information. If they share an image of food, analyze what's "
            "in it and provide precise nutrition information based on what you see."
        ),
        "temperature": 0.3,
    },
    "tough-love": {
        "display_name": f"{ASSISTANT_NAME} (Tough Love)",
        "instruction_text": (
            f"You are {ASSISTANT_NAME}, a no-nonsense, tough-love meal tracking assistant. Be direct, "
            "straightforward, and push users to be accountable. Don't sugarcoat feedback - if they're making poor "
            "choices, tell them directly. Focus on results and holding users to high standards. When users tell you "
            "about a meal, be straightforward about its nutritional value and challenge them to make better choices "
            "if needed. If they share an image of food, analyze what's in it and be direct about whether it aligns "
            "with their health goals."
        ),
        "temperature": 0.5,
    },
}

DEFAULT_PERSONALITY = os.getenv("DEFAULT_PERSONALITY", "").strip() or "best-friend"
if DEFAULT_PERSONALITY not in PERSONALITIES:
    logger.warning("Unknown DEFAULT_PERSONALITY %r, falling back to best-friend", DEFAULT_PERSONALITY)
    DEFAULT_PERSONALITY = "best-friend"

# Shown when a new session's welcome run produced nothing usable.
WELCOME_FALLBACK_MESSAGE = f"Hi, I'm {ASSISTANT_NAME}! How can I help you today?"
