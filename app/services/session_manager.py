"""
SESSION MANAGER MODULE
======================

Top-level orchestrator for one user's conversation with Niblet. The API layer
only talks to this class.

RESOLVING A SESSION (first strategy that works wins):
  1. Last active session: the cache remembers which thread was active. If its
     cached transcript is non-empty and the assistant id on the user's profile
     still exists remotely, restore it. No thread or assistant is created.
  2. Profile: if the profile names a thread + assistant, load the transcript from
     the cache, or from the thread itself when the cache is empty.
  3. Create: get an assistant for the personality, create a thread, run the
     assistant once for a welcome message, save the ids to the profile and the
     transcript to the cache.
  A stale id or a failed lookup in 1 or 2 is logged and we move on to the next one.

OPERATIONS:
  send(text, attachment_url)  - user message (cached straight away), one run, new assistant replies.
  change_personality(key)     - new assistant for the same thread + a system note in the transcript.
  clear()                     - forget this thread and start a new one with a fresh welcome.
  wipe()                      - remove everything the cache holds and unlink the profile's session.
  transcribe(data, mime_type) - voice note -> text, to be passed to send().

CONCURRENCY:
  Every operation that touches the session waits on one asyncio.Lock, so a second
  send() queues behind the first instead of starting a second run on the thread.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from uuid import uuid4

from app.models import ConversationSession, Message, PersonalityProfile
from app.services.run_executor import RunExecutor
from app.services.transcript_cache import TranscriptCache
from app.utils.retry import is_not_found_error
from config import DEFAULT_PERSONALITY, PERSONALITIES, WELCOME_FALLBACK_MESSAGE

logger = logging.getLogger("NIBLET")


def personality_label(key: str) -> str:
    """"tough-love" -> "tough love"."""
    return key.replace("-", " ")


class SessionManager:
    def __init__(
        self,
        user_id: str,
        gateway,
        cache: TranscriptCache,
        profiles,
        executor: RunExecutor,
        default_personality: str = DEFAULT_PERSONALITY,
    ):
        self.user_id = user_id
        self.gateway = gateway
        self.cache = cache
        self.profiles = profiles
        self.executor = executor
        self.default_personality = default_personality
        self.session: Optional[ConversationSession] = None
        self._messages: List[Message] = []
        self._lock = asyncio.Lock()

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    # ==============================================================================
    # PUBLIC OPERATIONS
    # ==============================================================================

    async def resolve(self, personality_key: Optional[str] = None) -> ConversationSession:
        """Restore the user's session or create one (with a welcome message)."""
        async with self._lock:
            return await self._ensure_session(personality_key, welcome=True)

    async def send(self, text: str, attachment_url: Optional[str] = None) -> List[Message]:
        """
        Send the user's message and return the assistant replies it produced.

        The user message is added to the transcript and cache before anything is sent,
        and stays there if sending or the run fails; the error is raised to the caller.
        If there is no session yet, one is created without a welcome run so this
        message is what starts the conversation.
        """
        text = (text or "").strip()
        if not text and not attachment_url:
            raise ValueError("Message must not be empty")

        async with self._lock:
            session = await self._ensure_session(None, welcome=False)

            user_message = Message(
                id=f"user-{uuid4().hex}",
                role="user",
                content=text,
                attachment_url=attachment_url,
            )
            self._append([user_message])

            await self.gateway.append_message(session.session_id, text, attachment_url)
            temperature = PersonalityProfile.from_key(session.personality_key).temperature
            replies = await self.executor.execute(session.session_id, session.agent_id, temperature)

            known_ids = {m.id for m in self._messages}
            return self._append([m for m in replies if m.id not in known_ids])

    async def change_personality(self, personality_key: str) -> Message:
        """Switch the assistant behind the current thread. Returns the system note added."""
        profile = PersonalityProfile.from_key(personality_key)

        async with self._lock:
            session = await self._ensure_session(personality_key, welcome=True)
            agent_id = await self._get_or_create_agent(profile)

            self.session = session.model_copy(update={"agent_id": agent_id, "personality_key": profile.key})
            self.cache.remember_active(self.session)

            note = Message(
                id=f"system-{uuid4().hex}",
                role="system",
                content=f"AI personality changed to {personality_label(profile.key)}",
            )
            note = self._append([note])[0]

            await self._save_profile({"agent_id": agent_id, "personality_key": profile.key})
            logger.info("Personality changed to %s (assistant %s)", profile.key, agent_id)
            return note

    async def clear(self) -> List[Message]:
        """Drop the current thread and start a new one. Returns the new transcript."""
        async with self._lock:
            personality_key = self.session.personality_key if self.session else None
            if self.session is not None:
                self.cache.clear(self.session.session_id)
            self.cache.forget_active()
            self.session = None
            self._messages = []
            await self._save_profile({"session_id": None, "agent_id": None})

            if personality_key is None:
                profile = await self._load_profile()
                personality_key = self._valid_personality(profile.get("personality_key"))
            await self._create_session(personality_key, welcome=True)
            logger.info("Chat history cleared")
            return self.messages

    async def wipe(self) -> int:
        """Remove every cached transcript, the active-session marker and assistant ids."""
        async with self._lock:
            removed = self.cache.clear_all()
            self.session = None
            self._messages = []
            await self._save_profile({"session_id": None, "agent_id": None})
            return removed

    async def transcribe(self, data: bytes, mime_type: str) -> str:
        """Voice input -> text. Independent of the session, so it does not take the lock."""
        if not data:
            raise ValueError("Audio file is required")
        return await self.gateway.transcribe_audio(data, mime_type)

    # ==============================================================================
    # RESOLUTION
    # ==============================================================================

    async def _ensure_session(self, personality_key: Optional[str], welcome: bool) -> ConversationSession:
        if self.session is not None:
            return self.session

        profile = await self._load_profile()

        session = await self._restore_last_active(profile)
        if session is None:
            session = await self._restore_from_profile(profile)
        if session is not None:
            return session

        key = self._valid_personality(personality_key or profile.get("personality_key"))
        return await self._create_session(key, welcome=welcome)

    async def _restore_last_active(self, profile: Dict[str, Any]) -> Optional[ConversationSession]:
        active = self.cache.get_active()
        if active is None:
            return None

        messages = self.cache.get(active.session_id)
        if not messages:
            logger.info("No cached transcript for last active thread %s", active.session_id)
            return None

        agent_id = profile.get("agent_id")
        if not agent_id:
            logger.info("Profile has no assistant id; not restoring thread %s from cache", active.session_id)
            return None

        try:
            await self.gateway.retrieve_agent_profile(agent_id)
        except Exception as e:
            logger.warning("Remembered assistant %s could not be resolved: %s", agent_id, e)
            return None

        session = ConversationSession(
            session_id=active.session_id,
            agent_id=agent_id,
            personality_key=self._valid_personality(profile.get("personality_key") or active.personality_key),
            created_at=active.created_at,
        )
        logger.info("Restored last active thread %s from cache (%s messages)", session.session_id, len(messages))
        return self._adopt(session, messages)

    async def _restore_from_profile(self, profile: Dict[str, Any]) -> Optional[ConversationSession]:
        session_id = profile.get("session_id")
        agent_id = profile.get("agent_id")
        if not session_id or not agent_id:
            return None

        messages = self.cache.get(session_id)
        if not messages:
            try:
                # Newest first so the limit keeps the latest turns, then back to display order.
                remote = await self.gateway.list_messages(session_id, order="desc")
            except Exception as e:
                if is_not_found_error(e):
                    logger.warning("Thread %s from profile no longer exists", session_id)
                else:
                    logger.warning("Could not load messages for thread %s: %s", session_id, e)
                return None
            messages = [m for m in reversed(remote) if m.content.strip()]
            if messages:
                self.cache.put(session_id, messages)

        if not messages:
            logger.info("No messages found for existing thread %s, reinitializing...", session_id)
            return None

        session = ConversationSession(
            session_id=session_id,
            agent_id=agent_id,
            personality_key=self._valid_personality(profile.get("personality_key")),
        )
        logger.info("Restored thread %s from profile (%s messages)", session_id, len(messages))
        return self._adopt(session, messages)

    async def _create_session(self, personality_key: str, welcome: bool) -> ConversationSession:
        profile = PersonalityProfile.from_key(personality_key)
        agent_id = await self._get_or_create_agent(profile)
        session_id = await self.gateway.create_session()

        session = ConversationSession(session_id=session_id, agent_id=agent_id, personality_key=profile.key)
        self.session = session
        self._messages = []
        self.cache.remember_active(session)
        await self._save_profile(
            {"session_id": session_id, "agent_id": agent_id, "personality_key": profile.key}
        )

        if welcome:
            try:
                replies = await self.executor.execute(session_id, agent_id, profile.temperature)
            except Exception as e:
                logger.error(f"Welcome run failed for thread {session_id}: {e}", exc_info=True)
                replies = []
            if not replies:
                replies = [Message(id=f"welcome-{uuid4().hex}", role="assistant", content=WELCOME_FALLBACK_MESSAGE)]
            self._append(replies)
        else:
            self.cache.put(session_id, [])

        logger.info("Created new thread %s with personality %s", session_id, profile.key)
        return session

    async def _get_or_create_agent(self, profile: PersonalityProfile) -> str:
        """One assistant per personality, remembered in the cache and checked before reuse."""
        stored_id = self.cache.get_agent_id(profile.key)
        if stored_id:
            try:
                agent_id = await self.gateway.retrieve_agent_profile(stored_id)
                logger.info("Retrieved existing assistant: %s", agent_id)
                return agent_id
            except Exception as e:
                logger.info("Stored assistant %s not usable (%s), creating new one", stored_id, e)
                self.cache.forget_agent_id(profile.key)

        agent_id = await self.gateway.create_agent_profile(profile)
        self.cache.put_agent_id(profile.key, agent_id)
        return agent_id

    # ==============================================================================
    # HELPERS
    # ==============================================================================

    def _adopt(self, session: ConversationSession, messages: List[Message]) -> ConversationSession:
        self.session = session
        self._messages = list(messages)
        self.cache.remember_active(session)
        return session

    def _append(self, new_messages: List[Message]) -> List[Message]:
        """Add messages in order, write the whole transcript to the cache, return what was stored."""
        if self.session is None:
            return []
        appended = []
        for message in new_messages:
            if self._messages and message.timestamp < self._messages[-1].timestamp:
                message = message.model_copy(update={"timestamp": self._messages[-1].timestamp})
            self._messages.append(message)
            appended.append(message)
        self.cache.put(self.session.session_id, self._messages)
        return appended

    def _valid_personality(self, key: Optional[str]) -> str:
        if key and key in PERSONALITIES:
            return key
        if key:
            logger.warning("Unknown personality %r, using %s", key, self.default_personality)
        return self.default_personality

    async def _load_profile(self) -> Dict[str, Any]:
        try:
            return await self.profiles.get_profile(self.user_id) or {}
        except Exception as e:
            logger.warning("Could not load profile for %s: %s", self.user_id, e)
            return {}

    async def _save_profile(self, patch: Dict[str, Any]) -> None:
        try:
            await self.profiles.update_profile(self.user_id, patch)
        except Exception as e:
            logger.error(f"Could not update profile for {self.user_id}: {e}", exc_info=True)
