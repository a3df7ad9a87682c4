"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (app.main) calls the session manager;
nothing in this package handles HTTP.

MODULES:
    agent_gateway     - OpenAI Assistants API client (assistants, threads, runs, transcription)
    storage           - Key-value storage (in-memory and JSON files)
    transcript_cache  - Per-session transcript cache + active session / assistant ids
    capabilities      - Tool schemas and the meal/weight/nutrition handlers
    tool_dispatcher   - Runs a batch of tool calls and packages their outputs
    run_executor      - Drives one run to completion
    session_manager   - Restores or creates the session; send / change personality / clear
    profile_store     - JSON profile and meal/weight record stores
"""
