"""
AGENT GATEWAY MODULE
====================

Thin async client over the OpenAI Assistants API. This is the only place in the
app that talks to OpenAI; everything it returns is converted into our own
models (Message, RunState, ToolCallRequest) so the rest of the engine never
touches SDK objects.

VOCABULARY (ours -> OpenAI):
  agent profile -> assistant
  session       -> thread
  run           -> run

RETRIES:
  Every call except transcription goes through with_retry (3 attempts, 1s delay
  growing x1.5). Two kinds of error are passed straight up instead:
  - 404 not found: a remembered assistant/thread is gone; retrying won't help and
    the session manager wants to fall through to its next strategy quickly.
  - 429 while polling a run: the run executor has its own, longer backoff for that.
  Nothing else is interpreted here.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from app.models import Message, PersonalityProfile, RunState, ToolCallRequest, ToolCallResult
from app.services.capabilities import TOOL_SCHEMAS
from app.utils.retry import is_not_found_error, is_rate_limit_error, with_retry
from config import (
    MESSAGE_LIST_LIMIT,
    NIBLET_MODEL,
    RETRY_INITIAL_DELAY,
    RETRY_MAX_ATTEMPTS,
    TRANSCRIPTION_MODEL,
)

logger = logging.getLogger("NIBLET")

# Text sent alongside a photo when the user didn't type anything.
IMAGE_ONLY_TEXT = "Here's an image."


def _retryable(exc: Exception) -> bool:
    return not is_not_found_error(exc)


def _retryable_poll(exc: Exception) -> bool:
    return not is_not_found_error(exc) and not is_rate_limit_error(exc)


def audio_filename_for(mime_type: str) -> str:
    """Pick a filename whose extension matches the recorded audio's MIME type."""
    mime_type = (mime_type or "audio/webm").lower()
    if "mp3" in mime_type or "mpeg" in mime_type:
        return "audio.mp3"
    if "wav" in mime_type:
        return "audio.wav"
    if "m4a" in mime_type or "mp4" in mime_type:
        return "audio.m4a"
    return "audio.webm"


def _message_text(sdk_message: Any) -> str:
    """First text block of an SDK message, or "" (e.g. image-only assistant output)."""
    for block in getattr(sdk_message, "content", None) or []:
        if getattr(block, "type", None) == "text":
            return block.text.value
    return ""


def _message_attachment(sdk_message: Any) -> Optional[str]:
    for block in getattr(sdk_message, "content", None) or []:
        if getattr(block, "type", None) == "image_url":
            return block.image_url.url
    return None


def to_message(sdk_message: Any) -> Message:
    return Message(
        id=sdk_message.id,
        role=sdk_message.role,
        content=_message_text(sdk_message),
        timestamp=datetime.fromtimestamp(sdk_message.created_at, tz=timezone.utc),
        attachment_url=_message_attachment(sdk_message),
    )


def _parse_arguments(raw: Optional[str], tool_name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Could not decode arguments for tool %s: %s", tool_name, e)
        return {}
    return args if isinstance(args, dict) else {}


def to_run_state(sdk_run: Any) -> RunState:
    pending: List[ToolCallRequest] = []
    required_action = getattr(sdk_run, "required_action", None)
    if sdk_run.status == "requires_action" and required_action is not None:
        for tool_call in required_action.submit_tool_outputs.tool_calls:
            pending.append(
                ToolCallRequest(
                    id=tool_call.id,
                    capability_name=tool_call.function.name,
                    args=_parse_arguments(tool_call.function.arguments, tool_call.function.name),
                )
            )
    last_error = getattr(sdk_run, "last_error", None)
    return RunState(
        run_id=sdk_run.id,
        status=sdk_run.status,
        pending_tool_calls=pending,
        last_error=getattr(last_error, "message", None) if last_error else None,
    )


# ==============================================================================
# AGENT GATEWAY CLASS
# ==============================================================================

class AgentGateway:
    """
    Typed wrapper over client.beta.assistants / threads / runs and client.audio.
    Holds no conversation state; callers pass ids in and get models back.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = NIBLET_MODEL,
        max_retries: int = RETRY_MAX_ATTEMPTS,
        initial_delay: float = RETRY_INITIAL_DELAY,
    ):
        self.client = client
        self.model = model
        self.max_retries = max_retries
        self.initial_delay = initial_delay

    async def _call(self, fn, retry_if=_retryable):
        return await with_retry(
            fn,
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            retry_if=retry_if,
        )

    # ------------------------------------------------------------------------------
    # ASSISTANTS AND THREADS
    # ------------------------------------------------------------------------------

    async def create_agent_profile(self, profile: PersonalityProfile) -> str:
        assistant = await self._call(
            lambda: self.client.beta.assistants.create(
                name=profile.display_name,
                instructions=profile.instruction_text,
                model=self.model,
                tools=TOOL_SCHEMAS,
            )
        )
        logger.info("Created assistant %s for personality %s", assistant.id, profile.key)
        return assistant.id

    async def retrieve_agent_profile(self, agent_id: str) -> str:
        """Raises (404) if the assistant no longer exists."""
        assistant = await self._call(lambda: self.client.beta.assistants.retrieve(agent_id))
        return assistant.id

    async def create_session(self) -> str:
        thread = await self._call(lambda: self.client.beta.threads.create())
        logger.info("Created thread %s", thread.id)
        return thread.id

    async def append_message(self, session_id: str, text: str, attachment_url: Optional[str] = None) -> str:
        if attachment_url:
            content: Any = [
                {"type": "text", "text": text or IMAGE_ONLY_TEXT},
                {"type": "image_url", "image_url": {"url": attachment_url}},
            ]
        else:
            content = text
        message = await self._call(
            lambda: self.client.beta.threads.messages.create(session_id, role="user", content=content)
        )
        logger.info("Added message to thread %s (image: %s)", session_id, bool(attachment_url))
        return message.id

    # ------------------------------------------------------------------------------
    # RUNS
    # ------------------------------------------------------------------------------

    async def start_run(self, session_id: str, agent_id: str, temperature: float) -> str:
        run = await self._call(
            lambda: self.client.beta.threads.runs.create(
                session_id,
                assistant_id=agent_id,
                temperature=temperature,
            )
        )
        return run.id

    async def poll_run(self, session_id: str, run_id: str) -> RunState:
        run = await self._call(
            lambda: self.client.beta.threads.runs.retrieve(run_id, thread_id=session_id),
            retry_if=_retryable_poll,
        )
        return to_run_state(run)

    async def submit_tool_results(self, session_id: str, run_id: str, results: List[ToolCallResult]) -> None:
        tool_outputs = [{"tool_call_id": result.id, "output": result.output} for result in results]
        await self._call(
            lambda: self.client.beta.threads.runs.submit_tool_outputs(
                run_id,
                thread_id=session_id,
                tool_outputs=tool_outputs,
            )
        )

    async def cancel_run(self, session_id: str, run_id: str) -> None:
        await self._call(lambda: self.client.beta.threads.runs.cancel(run_id, thread_id=session_id))
        logger.info("Cancelled run %s on thread %s", run_id, session_id)

    async def list_messages(
        self,
        session_id: str,
        order: str = "asc",
        limit: int = MESSAGE_LIST_LIMIT,
        run_id: Optional[str] = None,
    ) -> List[Message]:
        kwargs: Dict[str, Any] = {"order": order, "limit": limit}
        if run_id:
            kwargs["run_id"] = run_id
        page = await self._call(lambda: self.client.beta.threads.messages.list(session_id, **kwargs))
        return [to_message(m) for m in page.data]

    # ------------------------------------------------------------------------------
    # AUDIO
    # ------------------------------------------------------------------------------

    async def transcribe_audio(self, data: bytes, mime_type: str = "audio/webm") -> str:
        """Single call, not retried: the user can simply record again."""
        filename = audio_filename_for(mime_type)
        logger.info("Transcribing audio with MIME type: %s", mime_type)
        response = await self.client.audio.transcriptions.create(
            file=(filename, data, mime_type or "audio/webm"),
            model=TRANSCRIPTION_MODEL,
        )
        return response.text
