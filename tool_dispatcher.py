"""Tool declarations for the live model and dispatch of its tool calls.

The model pauses its turn until every function call it issued has a
response, so dispatch() always returns exactly one ToolResponse per call,
with the call's id, whatever the handler does.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from command_bridge import BridgeClient
from feedback import Feedback
from system_tasks import COMMAND_FAILURE, SystemTaskHandler

logger = logging.getLogger(__name__)

MOBILE_TASK_TOOL = "executeMobileTask"
TERMUX_COMMAND_TOOL = "executeTermuxCommand"

# Field names and required sets are what the model is prompted with; keep them stable.
TOOL_DECLARATIONS = [
    {
        "name": MOBILE_TASK_TOOL,
        "parameters": {
            "type": "OBJECT",
            "description": "Execute a mobile system task based on user voice command.",
            "properties": {
                "task": {
                    "type": "STRING",
                    "description": (
                        'The type of task to perform. Values: "SWITCH_MODE", "TOGGLE_THINKING", '
                        '"CLEAR_CONVERSATION", "OPEN_CAMERA", "TOGGLE_PERSISTENCE", '
                        '"SHARE_LOCATION", "INSTALL_TOOL"'
                    ),
                },
                "parameter": {
                    "type": "STRING",
                    "description": (
                        "Context for the task (e.g., target mode name for SWITCH_MODE, "
                        "contact name for SHARE_LOCATION, or package name for INSTALL_TOOL "
                        'like "nmap", "python")'
                    ),
                },
            },
            "required": ["task"],
        },
    },
    {
        "name": TERMUX_COMMAND_TOOL,
        "parameters": {
            "type": "OBJECT",
            "description": "Execute a shell command inside the Termux environment.",
            "properties": {
                "command": {
                    "type": "STRING",
                    "description": (
                        'The full shell command to run (e.g., "pkg update", "ls -la", '
                        '"python script.py").'
                    ),
                },
                "description": {
                    "type": "STRING",
                    "description": "A brief explanation of what this command will do.",
                },
            },
            "required": ["command"],
        },
    },
]


class UnsupportedTool(LookupError):
    """The model called a function this client does not declare."""


@dataclass
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, fc: dict) -> "ToolCall":
        args = fc.get("args") or {}
        if not isinstance(args, dict):
            args = {}
        return cls(id=fc.get("id") or "", name=fc.get("name") or "", args=args)


@dataclass
class ToolResponse:
    id: str
    name: str
    result: str

    def to_wire(self) -> dict:
        return {"id": self.id, "name": self.name, "response": {"result": self.result}}


def tools_config() -> list[dict]:
    """The 'tools' entry of the live session setup."""
    return [{"functionDeclarations": TOOL_DECLARATIONS}]


class ToolDispatcher:
    """Routes a ToolCall to its handler and always produces a ToolResponse."""

    def __init__(self, system_tasks: SystemTaskHandler, bridge: BridgeClient,
                 feedback: Optional[Feedback] = None):
        self.system_tasks = system_tasks
        self.bridge = bridge
        self.feedback = feedback
        self._handlers = {
            MOBILE_TASK_TOOL: self._run_mobile_task,
            TERMUX_COMMAND_TOOL: self._run_termux_command,
        }

    async def dispatch(self, call: ToolCall) -> ToolResponse:
        logger.info("Tool call %s: %s(%s)", call.id, call.name, call.args)
        try:
            handler = self._handlers.get(call.name)
            if handler is None:
                raise UnsupportedTool(call.name)
            result = await handler(call.args)
        except UnsupportedTool:
            logger.warning("Unsupported tool requested: %s", call.name)
            self._notify("UNSUPPORTED_TOOL")
            result = f"UNSUPPORTED_TOOL: {call.name}"
        except Exception as e:
            logger.error("Tool %s failed: %s", call.name, e, exc_info=True)
            self._notify("TOOL_EXECUTION_FAULT")
            result = COMMAND_FAILURE
        return ToolResponse(id=call.id, name=call.name, result=str(result))

    def _notify(self, message: str):
        if self.feedback is not None:
            self.feedback.show(message, "error")

    async def _run_mobile_task(self, args: dict) -> str:
        task = args.get("task")
        if not task:
            raise ValueError("executeMobileTask called without a task")
        return await self.system_tasks.handle(str(task), _opt_str(args.get("parameter")))

    async def _run_termux_command(self, args: dict) -> str:
        command = args.get("command")
        if not command:
            raise ValueError("executeTermuxCommand called without a command")
        command = str(command)
        if self.feedback is not None and self.bridge.connectivity.reachable:
            self.feedback.show(f"EXEC: {command[:15]}...")
        result = await self.bridge.execute(command, _opt_str(args.get("description")))
        if self.feedback is not None and result.notification:
            self.feedback.show(result.notification, "error")
        return result.display_text


def _opt_str(value) -> Optional[str]:
    return None if value is None else str(value)
