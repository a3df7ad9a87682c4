"""
DATA MODELS MODULE
==================

This file defines the Pydantic models used for API requests, responses, and
the conversation engine's internal state. FastAPI uses the request/response
models to validate incoming JSON; the services use the rest when talking to
the agent, running tools, and saving transcripts to the cache.

MODELS:
  Message             - One message in a transcript (user, assistant or system).
  ConversationSession - The active session: remote thread id + assistant id + personality.
  PersonalityProfile  - One row of the personality table (instructions + temperature).
  ToolCallRequest     - A tool call the agent asked for while a run was in requires_action.
  ToolCallResult      - Our answer to one ToolCallRequest (JSON-encoded output).
  RunState            - Snapshot of a run while we poll it. Never persisted.
  ChatRequest / ChatResponse / PersonalityRequest / HistoryResponse /
  TranscriptionResponse - HTTP bodies used by app.main.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from config import MAX_MESSAGE_LENGTH, PERSONALITIES

# ==============================================================================
# CONSTANTS
# ==============================================================================

MessageRole = Literal["user", "assistant", "system"]

RunStatus = Literal[
    "queued",
    "in_progress",
    "requires_action",
    "cancelling",
    "completed",
    "failed",
    "cancelled",
    "expired",
    "incomplete",
]

# A run in one of these states will not change again.
TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled", "expired", "incomplete"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# CONVERSATION MODELS
# ==============================================================================

class Message(BaseModel):
    """
    A single message in a transcript. Order in the list is the display order;
    timestamps never go backwards within one session.
    """
    id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    attachment_url: Optional[str] = None


class ConversationSession(BaseModel):
    """
    The session the user is talking in. session_id is the remote thread and never
    changes; agent_id and personality_key are rebound when the personality changes.
    """
    session_id: str
    agent_id: str
    personality_key: str
    created_at: datetime = Field(default_factory=utc_now)


class PersonalityProfile(BaseModel):
    key: str
    display_name: str
    instruction_text: str
    temperature: float

    @classmethod
    def from_key(cls, key: str) -> "PersonalityProfile":
        """Look up a row of config.PERSONALITIES. Unknown keys raise ValueError."""
        row = PERSONALITIES.get(key)
        if row is None:
            raise ValueError(f"Unknown personality: {key}")
        return cls(key=key, **row)


# ==============================================================================
# RUN MODELS
# ==============================================================================

class ToolCallRequest(BaseModel):
    id: str
    capability_name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolCallResult(BaseModel):
    id: str
    output: str


class RunState(BaseModel):
    run_id: str
    status: RunStatus
    pending_tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


# ==============================================================================
# HTTP REQUEST / RESPONSE MODELS
# ==============================================================================

class ChatRequest(BaseModel):
    """
    Request body for POST /chat.

    - message: The user's text. 1-32,000 characters (empty or too long returns 422).
    - attachment_url: Optional URL of an already-uploaded food photo.
    """
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    attachment_url: Optional[str] = None


class ChatResponse(BaseModel):
    """Response body for POST /chat and POST /chat/clear: the messages this call produced."""
    session_id: str
    messages: List[Message]


class PersonalityRequest(BaseModel):
    personality: str


class HistoryResponse(BaseModel):
    session_id: Optional[str] = None
    personality: Optional[str] = None
    messages: List[Message]


class TranscriptionResponse(BaseModel):
    text: str
