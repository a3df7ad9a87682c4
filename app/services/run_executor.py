"""
RUN EXECUTOR MODULE
===================

Drives one inference cycle ("run") on a thread from start to finish.

STATE MACHINE:
  queued -> in_progress -> (requires_action <-> in_progress) -> completed | failed | cancelled | expired

FLOW (execute):
  1. Start the run.
  2. Poll it, at most max_polls times, poll_interval seconds apart:
     - terminal status: stop polling.
     - requires_action: run the whole batch of tool calls through the dispatcher,
       submit every output in one call, then poll again.
     - anything else: sleep, poll again.
     A rate-limited poll (429) sleeps poll_interval * 5 and does NOT use up a poll;
     max_throttled_polls caps how often that may happen.
  3. completed: fetch the messages this run produced (oldest first) and return the
     assistant ones that have text. Any other ending raises RunFailedError; running
     out of polls raises RunTimeoutError.

ONE RUN PER THREAD:
  The executor keeps a map of thread id -> live run id. Asking for a second run on a
  thread that already has one raises RunAlreadyActiveError instead of racing it.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from app.models import Message, RunState
from app.services.tool_dispatcher import ToolDispatcher
from app.utils.retry import is_rate_limit_error
from config import RUN_MAX_POLLS, RUN_MAX_THROTTLED_POLLS, RUN_POLL_INTERVAL, RUN_THROTTLE_MULTIPLIER

logger = logging.getLogger("NIBLET")


# ==============================================================================
# ERRORS
# ==============================================================================

class ConversationError(Exception):
    """Base class for errors that mean "the assistant could not give an answer"."""


class RunFailedError(ConversationError):
    def __init__(self, status: str, detail: Optional[str] = None):
        self.status = status
        self.detail = detail
        message = f"Run failed with status: {status}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class RunTimeoutError(ConversationError):
    def __init__(self, run_id: str, max_polls: int):
        self.run_id = run_id
        self.max_polls = max_polls
        super().__init__(f"Run {run_id} did not complete within {max_polls} polls")


class RunAlreadyActiveError(ConversationError):
    def __init__(self, session_id: str, run_id: str):
        self.session_id = session_id
        self.run_id = run_id
        super().__init__(f"Thread {session_id} already has an active run ({run_id})")


# ==============================================================================
# RUN EXECUTOR CLASS
# ==============================================================================

class RunExecutor:
    def __init__(
        self,
        gateway,
        dispatcher: ToolDispatcher,
        max_polls: int = RUN_MAX_POLLS,
        poll_interval: float = RUN_POLL_INTERVAL,
        throttle_multiplier: float = RUN_THROTTLE_MULTIPLIER,
        max_throttled_polls: int = RUN_MAX_THROTTLED_POLLS,
    ):
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.max_polls = max_polls
        self.poll_interval = poll_interval
        self.throttle_multiplier = throttle_multiplier
        self.max_throttled_polls = max_throttled_polls
        # thread id -> run id (or "pending" while the run is being created)
        self.active_runs: Dict[str, str] = {}

    def has_active_run(self, session_id: str) -> bool:
        return session_id in self.active_runs

    async def execute(self, session_id: str, agent_id: str, temperature: float) -> List[Message]:
        """Run the assistant on the thread and return the new assistant messages."""
        if session_id in self.active_runs:
            raise RunAlreadyActiveError(session_id, self.active_runs[session_id])

        self.active_runs[session_id] = "pending"
        try:
            logger.info("Running assistant %s on thread %s", agent_id, session_id)
            run_id = await self.gateway.start_run(session_id, agent_id, temperature)
            self.active_runs[session_id] = run_id
            logger.info("Created run %s, waiting for completion...", run_id)

            try:
                state = await self.wait_for_completion(session_id, run_id)
            except RunTimeoutError:
                await self._cancel_quietly(session_id, run_id)
                raise
            if state.status != "completed":
                logger.error("Run %s ended with status: %s", run_id, state.status)
                raise RunFailedError(state.status, state.last_error)

            logger.info("Run %s completed successfully, fetching messages", run_id)
            messages = await self.gateway.list_messages(session_id, order="asc", run_id=run_id)
        finally:
            self.active_runs.pop(session_id, None)

        return [m for m in messages if m.role == "assistant" and m.content.strip()]

    async def _cancel_quietly(self, session_id: str, run_id: str) -> None:
        # A timed-out run is still alive remotely and would block the next message.
        try:
            await self.gateway.cancel_run(session_id, run_id)
        except Exception as e:
            logger.warning("Could not cancel timed-out run %s: %s", run_id, e)

    async def wait_for_completion(self, session_id: str, run_id: str) -> RunState:
        """Poll until the run reaches a terminal state; see the module docstring for the rules."""
        polls = 0
        throttled = 0

        while polls < self.max_polls:
            try:
                state = await self.gateway.poll_run(session_id, run_id)
            except Exception as e:
                if not is_rate_limit_error(e) or throttled >= self.max_throttled_polls:
                    logger.error("Error in run status polling: %s", e)
                    raise
                throttled += 1
                logger.warning("Rate limit reached while polling run %s, waiting longer before retry", run_id)
                await asyncio.sleep(self.poll_interval * self.throttle_multiplier)
                continue

            polls += 1

            if state.is_terminal:
                return state

            if state.status == "requires_action" and state.pending_tool_calls:
                results = await self.dispatcher.dispatch_batch(state.pending_tool_calls)
                await self.gateway.submit_tool_results(session_id, run_id, results)
                logger.info("Tool outputs submitted, continuing run %s", run_id)
                continue

            await asyncio.sleep(self.poll_interval)

        raise RunTimeoutError(run_id, self.max_polls)
