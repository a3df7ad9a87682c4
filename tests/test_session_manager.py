import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.models import ConversationSession, Message, RunState
from app.services.run_executor import RunFailedError
from config import WELCOME_FALLBACK_MESSAGE
from tests.conftest import USER_ID, FakeAPIError, run_state


def _history(count):
    start = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    return [
        Message(
            id=f"old_{i}",
            role="user" if i % 2 == 0 else "assistant",
            content=f"earlier message {i}",
            timestamp=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


def _creation_calls(gateway):
    return gateway.count("create_agent_profile") + gateway.count("create_session")


# ------------------------------------------------------------------------------
# SEND
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_first_send_creates_one_session_and_runs_once(manager, gateway, cache):
    replies = await manager.send("I had oatmeal for breakfast")

    assert gateway.count("create_agent_profile") == 1
    assert gateway.count("create_session") == 1
    assert gateway.count("start_run") == 1
    assert len(replies) == 1 and replies[0].role == "assistant"

    transcript = manager.messages
    assert len(transcript) >= 2
    assert transcript[0].role == "user"
    assert transcript[0].content == "I had oatmeal for breakfast"
    assert cache.get(manager.session.session_id) == transcript


@pytest.mark.asyncio
async def test_send_saves_session_to_profile(manager, profiles):
    await manager.send("hello")

    profile = profiles.profiles[USER_ID]
    assert profile["session_id"] == manager.session.session_id
    assert profile["agent_id"] == manager.session.agent_id
    assert profile["personality_key"] == "best-friend"


@pytest.mark.asyncio
async def test_send_rejects_blank_text_without_attachment(manager, gateway):
    with pytest.raises(ValueError):
        await manager.send("   ")

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_send_with_photo_only(manager, gateway):
    await manager.send("", attachment_url="https://img.example/plate.jpg")

    append = [c for c in gateway.calls if c[0] == "append_message"][0]
    assert append[3] == "https://img.example/plate.jpg"
    assert manager.messages[0].attachment_url == "https://img.example/plate.jpg"


@pytest.mark.asyncio
async def test_failed_run_keeps_user_message(manager, gateway, cache):
    await manager.resolve()
    gateway.queue_run([run_state("failed")])

    with pytest.raises(RunFailedError):
        await manager.send("Log my lunch")

    last = manager.messages[-1]
    assert last.role == "user" and last.content == "Log my lunch"
    assert cache.get(manager.session.session_id)[-1].content == "Log my lunch"


@pytest.mark.asyncio
async def test_failed_append_keeps_user_message(manager, gateway):
    await manager.resolve()
    gateway.fail_append = FakeAPIError(500, "server error")

    with pytest.raises(FakeAPIError):
        await manager.send("Log my lunch")

    assert manager.messages[-1].content == "Log my lunch"
    assert gateway.count("start_run") == 1


@pytest.mark.asyncio
async def test_replies_already_in_transcript_are_not_duplicated(manager, gateway):
    await manager.resolve()
    welcome = manager.messages[0]
    gateway.queue_run(
        [run_state("completed")],
        replies=[welcome, Message(id="msg_new", role="assistant", content="Got it")],
    )

    replies = await manager.send("hi")

    assert [m.id for m in replies] == ["msg_new"]
    assert [m.id for m in manager.messages].count(welcome.id) == 1


@pytest.mark.asyncio
async def test_timestamps_never_go_backwards(manager, gateway):
    await manager.resolve()
    gateway.queue_run(
        [run_state("completed")],
        replies=[
            Message(
                id="msg_old",
                role="assistant",
                content="Late reply",
                timestamp=datetime(2000, 1, 1, tzinfo=timezone.utc),
            )
        ],
    )

    await manager.send("hi")

    stamps = [m.timestamp for m in manager.messages]
    assert stamps == sorted(stamps)


@pytest.mark.asyncio
async def test_concurrent_sends_never_poll_the_same_thread_at_once(manager, gateway):
    await manager.resolve()
    for _ in range(3):
        gateway.queue_run([run_state("queued"), run_state("in_progress"), run_state("completed")])

    results = await asyncio.gather(
        manager.send("first"),
        manager.send("second"),
        manager.send("third"),
    )

    assert all(len(r) == 1 for r in results)
    assert gateway.max_concurrent_polls == 1
    user_texts = [m.content for m in manager.messages if m.role == "user"]
    assert user_texts == ["first", "second", "third"]


# ------------------------------------------------------------------------------
# RESOLVE
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_resolve_creates_session_with_welcome(manager, gateway):
    session = await manager.resolve()

    assert session.personality_key == "best-friend"
    assert gateway.count("start_run") == 1
    assert len(manager.messages) == 1
    assert manager.messages[0].role == "assistant"


@pytest.mark.asyncio
async def test_resolve_is_idempotent(manager, gateway):
    first = await manager.resolve()
    second = await manager.resolve()

    assert first == second
    assert gateway.count("create_session") == 1


@pytest.mark.asyncio
async def test_welcome_failure_falls_back_to_greeting(manager, gateway):
    gateway.queue_run([run_state("failed")])

    await manager.resolve()

    assert [m.content for m in manager.messages] == [WELCOME_FALLBACK_MESSAGE]


@pytest.mark.asyncio
async def test_restore_last_active_session_from_cache(manager, gateway, cache, profiles):
    history = _history(5)
    cache.put("thread_S1", history)
    cache.remember_active(ConversationSession(session_id="thread_S1", agent_id="asst_A", personality_key="best-friend"))
    gateway.agents.add("asst_A")
    profiles.profiles[USER_ID] = {"session_id": "thread_S1", "agent_id": "asst_A", "personality_key": "best-friend"}

    session = await manager.resolve()

    assert session.session_id == "thread_S1"
    assert session.agent_id == "asst_A"
    assert manager.messages == history
    assert _creation_calls(gateway) == 0
    assert gateway.count("start_run") == 0


@pytest.mark.asyncio
async def test_restore_from_profile_loads_remote_messages_when_cache_empty(manager, gateway, cache, profiles):
    remote = _history(3) + [Message(id="blank", role="assistant", content="")]
    gateway.remote_messages["thread_S2"] = remote
    profiles.profiles[USER_ID] = {"session_id": "thread_S2", "agent_id": "asst_B", "personality_key": "tough-love"}

    session = await manager.resolve()

    assert session.session_id == "thread_S2"
    assert session.personality_key == "tough-love"
    assert [m.id for m in manager.messages] == ["old_0", "old_1", "old_2"]
    assert [m.id for m in cache.get("thread_S2")] == ["old_0", "old_1", "old_2"]
    assert cache.get_active().session_id == "thread_S2"
    assert _creation_calls(gateway) == 0


@pytest.mark.asyncio
async def test_restore_from_profile_prefers_cache(manager, gateway, cache, profiles):
    cache.put("thread_S2", _history(2))
    profiles.profiles[USER_ID] = {"session_id": "thread_S2", "agent_id": "asst_B", "personality_key": "best-friend"}

    await manager.resolve()

    assert len(manager.messages) == 2
    assert gateway.count("list_messages") == 0


@pytest.mark.asyncio
async def test_stale_agent_falls_through_to_profile(manager, gateway, cache, profiles):
    cache.put("thread_S1", _history(4))
    cache.remember_active(ConversationSession(session_id="thread_S1", agent_id="asst_gone", personality_key="best-friend"))
    profiles.profiles[USER_ID] = {"session_id": "thread_S1", "agent_id": "asst_gone", "personality_key": "best-friend"}

    session = await manager.resolve()

    assert session.session_id == "thread_S1"
    assert len(manager.messages) == 4
    assert _creation_calls(gateway) == 0


@pytest.mark.asyncio
async def test_missing_thread_falls_through_to_create(manager, gateway, profiles):
    profiles.profiles[USER_ID] = {"session_id": "thread_deleted", "agent_id": "asst_B", "personality_key": "professional-coach"}

    session = await manager.resolve()

    assert session.session_id != "thread_deleted"
    assert session.personality_key == "professional-coach"
    assert gateway.count("create_session") == 1
    assert profiles.profiles[USER_ID]["session_id"] == session.session_id


@pytest.mark.asyncio
async def test_unknown_profile_personality_uses_default(manager, profiles):
    profiles.profiles[USER_ID] = {"personality_key": "pirate"}

    session = await manager.resolve()

    assert session.personality_key == "best-friend"


@pytest.mark.asyncio
async def test_assistant_is_reused_per_personality(manager, gateway, cache):
    await manager.resolve()
    agent_id = manager.session.agent_id

    await manager.clear()

    assert manager.session.agent_id == agent_id
    assert gateway.count("create_agent_profile") == 1
    assert cache.get_agent_id("best-friend") == agent_id


# ------------------------------------------------------------------------------
# PERSONALITY
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_change_personality_keeps_thread_and_adds_system_note(manager, gateway, profiles):
    await manager.send("hello")
    before = manager.session
    transcript_before = manager.messages

    note = await manager.change_personality("tough-love")

    assert manager.session.session_id == before.session_id
    assert manager.session.agent_id != before.agent_id
    assert manager.session.personality_key == "tough-love"
    assert manager.messages[: len(transcript_before)] == transcript_before

    system_messages = [m for m in manager.messages if m.role == "system"]
    assert len(system_messages) == 1
    assert system_messages[0] == note
    assert "tough love" in note.content
    assert profiles.profiles[USER_ID]["personality_key"] == "tough-love"
    assert profiles.profiles[USER_ID]["agent_id"] == manager.session.agent_id


@pytest.mark.asyncio
async def test_next_send_uses_new_personality(manager, gateway):
    await manager.resolve()
    await manager.change_personality("professional-coach")

    await manager.send("hi")

    start_call = [c for c in gateway.calls if c[0] == "start_run"][-1]
    assert start_call[2] == manager.session.agent_id
    assert start_call[3] == 0.3


@pytest.mark.asyncio
async def test_change_to_unknown_personality_is_rejected(manager, gateway):
    await manager.resolve()
    before = manager.messages

    with pytest.raises(ValueError):
        await manager.change_personality("pirate")

    assert manager.messages == before


# ------------------------------------------------------------------------------
# CLEAR / WIPE / TRANSCRIBE
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_clear_starts_new_session_with_welcome(manager, gateway, cache):
    await manager.send("hello")
    old_session_id = manager.session.session_id

    messages = await manager.clear()

    assert manager.session.session_id != old_session_id
    assert cache.get(old_session_id) is None
    assert cache.get_active().session_id == manager.session.session_id
    assert len(messages) == 1 and messages[0].role == "assistant"


@pytest.mark.asyncio
async def test_clear_keeps_personality(manager):
    await manager.resolve()
    await manager.change_personality("tough-love")

    await manager.clear()

    assert manager.session.personality_key == "tough-love"


@pytest.mark.asyncio
async def test_wipe_removes_cache_and_unlinks_profile(manager, storage, profiles):
    await manager.send("hello")
    storage.set("unrelated", 1)

    removed = await manager.wipe()

    assert removed >= 3
    assert storage.keys() == ["unrelated"]
    assert manager.session is None and manager.messages == []
    assert profiles.profiles[USER_ID]["session_id"] is None


@pytest.mark.asyncio
async def test_transcribe(manager, gateway):
    assert await manager.transcribe(b"\x00\x01", "audio/webm") == "I had oatmeal"
    assert manager.session is None


@pytest.mark.asyncio
async def test_transcribe_rejects_empty_audio(manager):
    with pytest.raises(ValueError):
        await manager.transcribe(b"", "audio/webm")


@pytest.mark.asyncio
async def test_profile_write_failure_does_not_break_send(gateway, cache, executor):
    from app.services.session_manager import SessionManager

    class BrokenProfiles:
        async def get_profile(self, user_id):
            raise OSError("disk unavailable")

        async def update_profile(self, user_id, patch):
            raise OSError("disk unavailable")

    manager = SessionManager(USER_ID, gateway, cache, BrokenProfiles(), executor)

    replies = await manager.send("hello")

    assert len(replies) == 1


def test_run_state_terminal_flags():
    assert RunState(run_id="r", status="completed").is_terminal
    assert not RunState(run_id="r", status="requires_action").is_terminal


# ------------------------------------------------------------------------------
# REGRESSIONS
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_restore_from_profile_keeps_latest_messages_of_long_thread(manager, gateway, cache, profiles):
    start = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    gateway.remote_messages["thread_long"] = [
        Message(
            id=f"m{i}",
            role="user" if i % 2 == 0 else "assistant",
            content=f"message {i}",
            timestamp=start + timedelta(seconds=i),
        )
        for i in range(150)
    ]
    profiles.profiles[USER_ID] = {"session_id": "thread_long", "agent_id": "asst_B", "personality_key": "best-friend"}

    await manager.resolve()

    ids = [m.id for m in manager.messages]
    assert len(ids) == 100
    assert ids[0] == "m50"
    assert ids[-1] == "m149"
    assert [m.id for m in cache.get("thread_long")] == ids


@pytest.mark.asyncio
async def test_failed_clear_does_not_bring_back_old_conversation(manager, gateway, profiles):
    await manager.send("I had oatmeal")
    old_session_id = manager.session.session_id
    gateway.remote_messages[old_session_id] = manager.messages
    gateway.fail_create_session = FakeAPIError(500, "server error")

    with pytest.raises(FakeAPIError):
        await manager.clear()

    assert profiles.profiles[USER_ID]["session_id"] is None
    assert profiles.profiles[USER_ID]["agent_id"] is None

    gateway.fail_create_session = None
    session = await manager.resolve()

    assert session.session_id != old_session_id
    assert all(m.content != "I had oatmeal" for m in manager.messages)


@pytest.mark.asyncio
async def test_send_returns_replies_as_stored_in_transcript(manager, gateway):
    await manager.resolve()
    gateway.queue_run(
        [run_state("completed")],
        replies=[
            Message(
                id="msg_old",
                role="assistant",
                content="Late reply",
                timestamp=datetime(2000, 1, 1, tzinfo=timezone.utc),
            )
        ],
    )

    replies = await manager.send("hi")

    assert replies == manager.messages[-1:]
    assert replies[0].timestamp == manager.messages[-2].timestamp


@pytest.mark.asyncio
async def test_unsafe_session_id_in_profile_starts_a_new_session(gateway, profiles, executor, tmp_path):
    from app.services.session_manager import SessionManager
    from app.services.storage import FileStorage
    from app.services.transcript_cache import TranscriptCache

    cache = TranscriptCache(FileStorage(tmp_path))
    profiles.profiles[USER_ID] = {"session_id": "../thread_x", "agent_id": "asst_B", "personality_key": "best-friend"}
    manager = SessionManager(USER_ID, gateway, cache, profiles, executor)

    replies = await manager.send("hello")

    assert len(replies) == 1
    assert manager.session.session_id != "../thread_x"
    assert profiles.profiles[USER_ID]["session_id"] == manager.session.session_id
