"""App-level tasks the model can trigger with executeMobileTask.

The handler only mutates AssistantState (what the UI shows) and reports a
short status string, which the dispatcher passes back to the model verbatim.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from command_bridge import BridgeClient
from feedback import Feedback

logger = logging.getLogger(__name__)

COMMAND_SUCCESS = "COMMAND_SUCCESS"
COMMAND_FAILURE = "COMMAND_FAILURE"


class AppMode(str, Enum):
    CONVERSATION = "CONVERSATION"
    CHAT = "CHAT"
    IMAGE_GEN = "IMAGE_GEN"
    IMAGE_ANALYSIS = "IMAGE_ANALYSIS"
    MAPS = "MAPS"
    TERMUX = "TERMUX"
    HACKING = "HACKING"
    SETTINGS = "SETTINGS"


@dataclass
class Message:
    role: str
    content: str
    type: str = "text"
    location: Optional[dict] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class AssistantState:
    """UI-visible state owned outside the session engine."""
    mode: AppMode = AppMode.CONVERSATION
    thinking_mode: bool = False
    persistent: bool = False
    location: Optional[tuple[float, float]] = None
    messages: list[Message] = field(default_factory=list)


class SystemTaskHandler:
    """Applies executeMobileTask requests to AssistantState."""

    def __init__(self, state: AssistantState, feedback: Feedback,
                 bridge: Optional[BridgeClient] = None):
        self.state = state
        self.feedback = feedback
        self.bridge = bridge
        self._tasks = {
            "SWITCH_MODE": self._switch_mode,
            "TOGGLE_THINKING": self._toggle_thinking,
            "TOGGLE_PERSISTENCE": self._toggle_persistence,
            "CLEAR_CONVERSATION": self._clear_conversation,
            "OPEN_CAMERA": self._open_camera,
            "SHARE_LOCATION": self._share_location,
            "INSTALL_TOOL": self._install_tool,
        }

    async def handle(self, task: str, parameter: Optional[str] = None) -> str:
        fn = self._tasks.get((task or "").upper())
        if fn is None:
            self.feedback.show("INVALID_TASK_REQUEST", "warning")
            return COMMAND_SUCCESS
        try:
            result = await fn(parameter)
        except Exception as e:
            logger.error("System task %s failed: %s", task, e)
            self.feedback.show("TASK_EXECUTION_FAULT", "error")
            return COMMAND_FAILURE
        return result or COMMAND_SUCCESS

    async def _switch_mode(self, parameter):
        target = (parameter or "").strip().upper()
        if target in AppMode.__members__:
            self.state.mode = AppMode[target]
            self.feedback.show(f"MODE_SWITCH: {target}")
        return None

    async def _toggle_thinking(self, parameter):
        self.state.thinking_mode = not self.state.thinking_mode
        self.feedback.show(f"LOGIC_ENGINE: {'EXPANDED' if self.state.thinking_mode else 'STANDARD'}")
        return None

    async def _toggle_persistence(self, parameter):
        self.state.persistent = not self.state.persistent
        if self.state.persistent:
            self.feedback.show("PERSISTENCE_ACTIVE")
        else:
            self.feedback.show("PERSISTENCE_DEACTIVATED", "warning")
        return None

    async def _clear_conversation(self, parameter):
        self.state.messages.clear()
        if self.bridge is not None:
            self.bridge.clear_history()
        self.feedback.show("BUFFER_CLEARED")
        return None

    async def _open_camera(self, parameter):
        self.state.mode = AppMode.IMAGE_ANALYSIS
        self.feedback.show("OPTIC_INITIALIZED")
        return None

    async def _share_location(self, parameter):
        if self.state.location is None:
            self.feedback.show("LOC_SIGNAL_MISSING", "error")
            return "ERROR: NO_COORDINATES"
        lat, lng = self.state.location
        title = parameter or "Shared Location"
        self.state.messages.append(Message(
            role="assistant",
            content=f"LOCATION_BROADCAST: {lat:.4f}, {lng:.4f}",
            type="location",
            location={"lat": lat, "lng": lng, "title": title},
        ))
        self.feedback.show("LOC_LOGGED_TO_CHRONICLE")
        return "SUCCESS: LOGGED_TO_INTERFACE"

    async def _install_tool(self, parameter):
        if not parameter:
            raise ValueError("INSTALL_TOOL needs a package name")
        if self.bridge is None:
            raise RuntimeError("no command bridge configured")
        self.feedback.show(f"INSTALLING: {parameter}")
        result = await self.bridge.execute(f"pkg install {parameter} -y")
        return result.display_text
