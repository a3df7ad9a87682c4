"""
NIBLET APPLICATION PACKAGE
==========================

This directory is the main Python package for the Niblet backend:

  from app.main import app
  from app.models import Message
  from app.services.session_manager import SessionManager

FILE STRUCTURE:
  app/
    __init__.py   - This file; marks 'app' as a package.
    main.py       - FastAPI app and all HTTP endpoints (/chat, /chat/history, /chat/personality, ...).
    models.py     - Pydantic models for messages, sessions, runs, and API requests/responses.
    services/     - The conversation engine: agent gateway, transcript cache, tools, runs, sessions.
    utils/        - Helpers: async retry with backoff and error classifiers.
"""
