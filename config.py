"""Configuration for the sudO live voice assistant.

Constants live at module level; secrets and the bridge endpoint are resolved
from the environment first, then from files under ~/.config.
"""

import os
from dataclasses import dataclass
from pathlib import Path

# Audio settings
INPUT_SAMPLE_RATE = 16000   # mic capture rate expected by the Live API
OUTPUT_SAMPLE_RATE = 24000  # synthesized speech rate returned by the Live API
CHANNELS = 1
CAPTURE_FRAMES = 4096       # samples per capture callback
OUTBOUND_QUEUE_SIZE = 64    # encoded mic frames waiting for the socket

# Live API
LIVE_MODEL = "gemini-2.5-flash-native-audio-preview-12-2025"
LIVE_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
SYSTEM_INSTRUCTION = (
    "You are sudO, an executive AI for mobile. You were created by NYNOAH. "
    "You can control the app with executeMobileTask and run shell commands on the "
    "user's device through the Termux bridge with executeTermuxCommand. "
    "Keep your tone executive and technical. "
    "If Termux is offline, explain that the user needs to start the sudO bridge."
)

# Transcript captions are cleared this long after the model finishes a turn
TRANSCRIPT_CLEAR_DELAY = 4.0

# Command bridge
DEFAULT_BRIDGE_ENDPOINT = "http://localhost:8080"
EXEC_TIMEOUT = 60.0
STATUS_TIMEOUT = 3.0
POLL_INTERVAL = 5.0

# Notifications
FEEDBACK_TTL = 4.0

CONFIG_DIR = Path.home() / ".config" / "sudo-assistant"


def get_api_key():
    """Get the Gemini API key."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        key = os.environ.get(var)
        if key:
            return key
    for path in [
        CONFIG_DIR / "api_key",
        Path.home() / ".config" / "gemini" / "api_key",
    ]:
        if path.exists():
            return path.read_text().strip()
    return None


def get_bridge_endpoint():
    """Get the command bridge base URL."""
    endpoint = os.environ.get("SUDO_BRIDGE_ENDPOINT")
    if endpoint:
        return endpoint.rstrip("/")
    path = CONFIG_DIR / "bridge_endpoint"
    if path.exists():
        value = path.read_text().strip()
        if value:
            return value.rstrip("/")
    return DEFAULT_BRIDGE_ENDPOINT


@dataclass
class Settings:
    api_key: str | None = None
    model: str = LIVE_MODEL
    bridge_endpoint: str = DEFAULT_BRIDGE_ENDPOINT
    exec_timeout: float = EXEC_TIMEOUT
    status_timeout: float = STATUS_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    system_instruction: str = SYSTEM_INSTRUCTION

    @classmethod
    def load(cls, **overrides) -> "Settings":
        """Resolve settings from the environment, then apply non-None overrides."""
        settings = cls(api_key=get_api_key(), bridge_endpoint=get_bridge_endpoint())
        for name, value in overrides.items():
            if value is not None:
                setattr(settings, name, value)
        return settings
