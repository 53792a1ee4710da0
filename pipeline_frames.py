"""Typed frames split out of Live API server messages.

One server message can carry several things at once (tool calls, audio,
transcripts, turn signals). parse_server_message() flattens it into frames in
a fixed order so the session can route each through its dispatch table.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class FrameType(Enum):
    SETUP_COMPLETE = auto()     # Server accepted the setup message
    TOOL_CALL = auto()          # One function call from the model
    AUDIO = auto()              # Base64 PCM part of the model turn
    INPUT_TRANSCRIPT = auto()   # Partial transcript of the user's speech
    OUTPUT_TRANSCRIPT = auto()  # Partial transcript of the model's speech
    TURN_COMPLETE = auto()      # Model finished its turn
    INTERRUPTED = auto()        # User barged in over playback
    GO_AWAY = auto()            # Server will close the connection soon


@dataclass
class PipelineFrame:
    type: FrameType
    data: Any = None
    metadata: dict = field(default_factory=dict)


def parse_server_message(msg: dict) -> list[PipelineFrame]:
    """Split one decoded server message into frames, in processing order."""
    frames: list[PipelineFrame] = []

    if "setupComplete" in msg:
        frames.append(PipelineFrame(FrameType.SETUP_COMPLETE))

    tool_call = msg.get("toolCall") or {}
    for fc in tool_call.get("functionCalls") or []:
        frames.append(PipelineFrame(FrameType.TOOL_CALL, data=fc))

    content = msg.get("serverContent") or {}
    model_turn = content.get("modelTurn") or {}
    for part in model_turn.get("parts") or []:
        inline = part.get("inlineData") or {}
        if inline.get("data"):
            frames.append(PipelineFrame(
                FrameType.AUDIO,
                data=inline["data"],
                metadata={"mime_type": inline.get("mimeType")},
            ))

    output_tr = content.get("outputTranscription") or {}
    if output_tr.get("text"):
        frames.append(PipelineFrame(FrameType.OUTPUT_TRANSCRIPT, data=output_tr["text"]))
    input_tr = content.get("inputTranscription") or {}
    if input_tr.get("text"):
        frames.append(PipelineFrame(FrameType.INPUT_TRANSCRIPT, data=input_tr["text"]))

    if content.get("turnComplete"):
        frames.append(PipelineFrame(FrameType.TURN_COMPLETE))
    if content.get("interrupted"):
        frames.append(PipelineFrame(FrameType.INTERRUPTED))

    if "goAway" in msg:
        frames.append(PipelineFrame(FrameType.GO_AWAY, data=msg.get("goAway")))

    return frames
