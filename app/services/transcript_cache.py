"""
TRANSCRIPT CACHE MODULE
=======================

Local, durable copy of each session's transcript plus a little session
metadata. The cache is the first place we look when the app restarts; the
remote thread is only asked for its messages when the cache has nothing.

KEYS (all under a recognised prefix so clear_all() can find them):
  niblet_messages_<session_id> - ordered list of messages for one session
  niblet_session_active        - the last active session (id, personality, created_at)
  assistant_<personality_key>  - assistant id created for that personality

RULES:
  - put() always writes the complete ordered list; there are no partial updates.
  - The cache never re-sorts; insertion order is the display order.
  - A corrupt entry is logged, removed and treated as absent.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError

from app.models import ConversationSession, Message
from app.services.storage import KeyValueStorage


logger = logging.getLogger("NIBLET")

MESSAGE_CACHE_KEY_PREFIX = "niblet_messages_"
SESSION_KEY_PREFIX = "niblet_session_"
AGENT_KEY_PREFIX = "assistant_"
ACTIVE_SESSION_KEY = f"{SESSION_KEY_PREFIX}active"

RECOGNIZED_PREFIXES = (MESSAGE_CACHE_KEY_PREFIX, SESSION_KEY_PREFIX, AGENT_KEY_PREFIX)


def get_message_cache_key(session_id: str) -> str:
    return f"{MESSAGE_CACHE_KEY_PREFIX}{session_id}"


class TranscriptCache:
    def __init__(self, storage: KeyValueStorage):
        self.storage = storage

    # ------------------------------------------------------------------------------
    # TRANSCRIPTS
    # ------------------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[List[Message]]:
        """Return the cached messages for session_id, or None if nothing (valid) is stored."""
        if not session_id:
            return None
        key = get_message_cache_key(session_id)
        try:
            raw = self.storage.get(key)
            if raw is None:
                return None
            if not isinstance(raw, list):
                logger.error("Invalid message cache format for session %s, expected a list", session_id)
                self._discard(session_id)
                return None
            return [Message.model_validate(item) for item in raw]
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError: the file on disk is corrupted.
            logger.error("Error reading cached messages for session %s: %s", session_id, e)
            self._discard(session_id)
            return None

    def _discard(self, session_id: str) -> None:
        # The key itself may be what storage rejected (e.g. an unsafe session id).
        try:
            self.clear(session_id)
        except ValueError as e:
            logger.warning("Could not remove cached messages for session %s: %s", session_id, e)

    def put(self, session_id: str, messages: List[Message]) -> None:
        """Replace the cached transcript for session_id with the full list."""
        if not session_id:
            return
        self.storage.set(
            get_message_cache_key(session_id),
            [message.model_dump(mode="json") for message in messages],
        )

    def clear(self, session_id: str) -> None:
        if not session_id:
            return
        self.storage.remove(get_message_cache_key(session_id))

    def clear_all(self) -> int:
        """
        Remove every entry this cache owns (transcripts, active session, assistant ids)
        and leave everything else in the storage alone. Returns how many keys were removed.
        """
        keys_to_remove = [key for key in self.storage.keys() if key.startswith(RECOGNIZED_PREFIXES)]
        for key in keys_to_remove:
            self.storage.remove(key)
        logger.info("Cleared %s cached entries", len(keys_to_remove))
        return len(keys_to_remove)

    # ------------------------------------------------------------------------------
    # SESSION METADATA
    # ------------------------------------------------------------------------------

    def remember_active(self, session: ConversationSession) -> None:
        self.storage.set(ACTIVE_SESSION_KEY, session.model_dump(mode="json"))

    def get_active(self) -> Optional[ConversationSession]:
        try:
            raw = self.storage.get(ACTIVE_SESSION_KEY)
            return ConversationSession.model_validate(raw) if raw else None
        except (ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable active session entry: %s", e)
            self.forget_active()
            return None

    def forget_active(self) -> None:
        self.storage.remove(ACTIVE_SESSION_KEY)

    def get_agent_id(self, personality_key: str) -> Optional[str]:
        try:
            value = self.storage.get(f"{AGENT_KEY_PREFIX}{personality_key}")
        except ValueError as e:
            logger.warning("Ignoring unreadable assistant id for %s: %s", personality_key, e)
            return None
        return value if isinstance(value, str) and value else None

    def put_agent_id(self, personality_key: str, agent_id: str) -> None:
        self.storage.set(f"{AGENT_KEY_PREFIX}{personality_key}", agent_id)

    def forget_agent_id(self, personality_key: str) -> None:
        self.storage.remove(f"{AGENT_KEY_PREFIX}{personality_key}")
