"""
TOOL DISPATCHER MODULE
======================

Maps a tool name to a local handler and runs it. When a run stops in
requires_action, the run executor hands the whole batch of tool calls to
dispatch_batch(); every handler in the batch runs concurrently and we return
exactly one ToolCallResult per request id, ready to submit in one go.

FAILURES:
  An unknown tool name or a handler that raises never escapes from here. It is
  logged and turned into {"success": false, "message": ...}, which goes back to
  the assistant as a normal tool output so it can tell the user what went wrong.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Mapping

from app.models import ToolCallRequest, ToolCallResult

logger = logging.getLogger("NIBLET")

Handler = Callable[[Dict[str, Any]], Any]


class ToolDispatcher:
    def __init__(self, handlers: Mapping[str, Handler]):
        self.handlers: Dict[str, Handler] = dict(handlers)

    async def dispatch(self, capability_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """Run one handler. Always returns a payload; never raises."""
        handler = self.handlers.get(capability_name)
        if handler is None:
            logger.warning("No handler registered for tool: %s", capability_name)
            return {"success": False, "message": f"Unknown tool: {capability_name}"}

        logger.info("Executing tool: %s", capability_name)
        try:
            output = handler(args)
            if inspect.isawaitable(output):
                output = await output
        except Exception as e:
            logger.error(f"Error executing tool {capability_name}: {e}", exc_info=True)
            return {"success": False, "message": f"Error executing {capability_name}"}
        return output

    async def _dispatch_one(self, call: ToolCallRequest) -> ToolCallResult:
        output = await self.dispatch(call.capability_name, call.args)
        try:
            encoded = json.dumps(output, default=str)
        except (TypeError, ValueError) as e:
            logger.error("Tool %s returned an unserialisable payload: %s", call.capability_name, e)
            encoded = json.dumps({"success": False, "message": f"Error executing {call.capability_name}"})
        return ToolCallResult(id=call.id, output=encoded)

    async def dispatch_batch(self, calls: List[ToolCallRequest]) -> List[ToolCallResult]:
        """Run every call in the batch together; results come back in request order."""
        logger.info("Processing %s tool calls", len(calls))
        return list(await asyncio.gather(*(self._dispatch_one(call) for call in calls)))
