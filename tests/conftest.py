import asyncio
import itertools
from typing import Dict, List, Optional

import pytest

from app.models import Message, RunState, ToolCallRequest
from app.services.profile_store import MemoryProfileStore
from app.services.run_executor import RunExecutor
from app.services.session_manager import SessionManager
from app.services.storage import MemoryStorage
from app.services.tool_dispatcher import ToolDispatcher
from app.services.transcript_cache import TranscriptCache

_real_sleep = asyncio.sleep

USER_ID = "user-1"


class FakeAPIError(Exception):
    """Stands in for openai.APIStatusError: only status_code matters to the engine."""

    def __init__(self, status_code: int, message: str = "api error"):
        super().__init__(message)
        self.status_code = status_code


def run_state(status: str, tool_calls: Optional[List[ToolCallRequest]] = None) -> RunState:
    return RunState(run_id="pending", status=status, pending_tool_calls=tool_calls or [])


class FakeGateway:
    """
    Scripted stand-in for AgentGateway. Each started run consumes the next queued
    script (a list of RunStates or exceptions returned by successive polls) and the
    replies listed for it; by default a run completes on the first poll with one reply.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.agents = set()
        self.remote_messages: Dict[str, List[Message]] = {}
        self._scripts: List[tuple] = []
        self._runs: Dict[str, dict] = {}
        self._ids = itertools.count(1)
        self.polling: Dict[str, int] = {}
        self.max_concurrent_polls = 0
        self.fail_append: Optional[Exception] = None
        self.fail_create_session: Optional[Exception] = None
        self.transcript_text = "I had oatmeal"

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def queue_run(self, states, replies=None):
        self._scripts.append((list(states), replies))

    async def create_agent_profile(self, profile):
        self.calls.append(("create_agent_profile", profile.key))
        agent_id = f"asst_{next(self._ids)}"
        self.agents.add(agent_id)
        return agent_id

    async def retrieve_agent_profile(self, agent_id):
        self.calls.append(("retrieve_agent_profile", agent_id))
        if agent_id not in self.agents:
            raise FakeAPIError(404, f"No assistant found with id '{agent_id}'.")
        return agent_id

    async def create_session(self):
        self.calls.append(("create_session",))
        if self.fail_create_session is not None:
            raise self.fail_create_session
        return f"thread_{next(self._ids)}"

    async def append_message(self, session_id, text, attachment_url=None):
        self.calls.append(("append_message", session_id, text, attachment_url))
        await _real_sleep(0)
        if self.fail_append is not None:
            raise self.fail_append
        return f"msg_user_{next(self._ids)}"

    async def start_run(self, session_id, agent_id, temperature):
        run_id = f"run_{next(self._ids)}"
        self.calls.append(("start_run", session_id, agent_id, temperature))
        await _real_sleep(0)
        if self._scripts:
            states, replies = self._scripts.pop(0)
        else:
            states, replies = [run_state("completed")], None
        if replies is None:
            replies = [Message(id=f"msg_{run_id}", role="assistant", content=f"Reply from {run_id}")]
        self._runs[run_id] = {"states": states, "replies": replies}
        return run_id

    async def poll_run(self, session_id, run_id):
        self.calls.append(("poll_run", session_id, run_id))
        self.polling[session_id] = self.polling.get(session_id, 0) + 1
        self.max_concurrent_polls = max(self.max_concurrent_polls, self.polling[session_id])
        try:
            await _real_sleep(0)
            await _real_sleep(0)
            states = self._runs[run_id]["states"]
            step = states.pop(0) if len(states) > 1 else states[0]
            if isinstance(step, Exception):
                raise step
            return step.model_copy(update={"run_id": run_id})
        finally:
            self.polling[session_id] -= 1

    async def submit_tool_results(self, session_id, run_id, results):
        self.calls.append(("submit_tool_results", session_id, run_id, list(results)))

    async def cancel_run(self, session_id, run_id):
        self.calls.append(("cancel_run", session_id, run_id))

    async def list_messages(self, session_id, order="asc", limit=100, run_id=None):
        self.calls.append(("list_messages", session_id, order, run_id))
        if run_id is not None:
            return list(self._runs[run_id]["replies"])
        if session_id not in self.remote_messages:
            raise FakeAPIError(404, f"No thread found with id '{session_id}'.")
        messages = list(self.remote_messages[session_id])
        if order == "desc":
            messages.reverse()
        return messages[:limit]

    async def transcribe_audio(self, data, mime_type="audio/webm"):
        self.calls.append(("transcribe_audio", len(data), mime_type))
        return self.transcript_text


class RecordingHandlers:
    def __init__(self):
        self.invocations: List[tuple] = []

    def table(self):
        return {
            "log_meal": self.log_meal,
            "log_weight": self.log_weight,
            "get_nutrition_info": self.get_nutrition_info,
        }

    async def log_meal(self, args):
        self.invocations.append(("log_meal", args))
        return {"success": True, "meal_id": "meal_1", "message": f"Logged {args['meal_name']}"}

    async def log_weight(self, args):
        self.invocations.append(("log_weight", args))
        return {"success": True, "weight_id": "weight_1", "message": f"Logged weight: {args['weight']} lbs"}

    async def get_nutrition_info(self, args):
        self.invocations.append(("get_nutrition_info", args))
        raise RuntimeError("lookup service down")


@pytest.fixture
def recorded_sleeps(monkeypatch):
    """Replace asyncio.sleep so tests run instantly; returns the list of requested delays."""
    delays: List[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await _real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage):
    return TranscriptCache(storage)


@pytest.fixture
def profiles():
    return MemoryProfileStore()


@pytest.fixture
def handlers():
    return RecordingHandlers()


@pytest.fixture
def dispatcher(handlers):
    return ToolDispatcher(handlers.table())


@pytest.fixture
def executor(gateway, dispatcher):
    return RunExecutor(gateway, dispatcher, max_polls=10, poll_interval=0)


@pytest.fixture
def manager(gateway, cache, profiles, executor):
    return SessionManager(USER_ID, gateway, cache, profiles, executor)
