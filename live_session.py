#!/usr/bin/env python3
"""
Live voice session with the Gemini Live API:
  Mic (PyAudio, 16 kHz) -> base64 PCM -> duplex WebSocket -> model
  model -> audio parts -> PlaybackScheduler (24 kHz, gapless)
        -> tool calls  -> ToolDispatcher -> tool responses -> model
        -> transcripts -> event bus observers

Lifecycle: IDLE -> CONNECTING -> ACTIVE -> CLOSING -> IDLE, with ERROR -> IDLE
on a channel fault. Every exit path runs the same idempotent teardown; a
duplex media session is never resumed mid-stream, it is torn down and the
user starts a new one.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np
import websockets

from audio_codec import DecodeFault, decode_inbound, media_blob, parse_pcm_rate
from config import (
    CAPTURE_FRAMES,
    CHANNELS,
    INPUT_SAMPLE_RATE,
    LIVE_URL,
    OUTBOUND_QUEUE_SIZE,
    OUTPUT_SAMPLE_RATE,
    TRANSCRIPT_CLEAR_DELAY,
    Settings,
)
from event_bus import EventBus, EventType
from feedback import Feedback
from pipeline_frames import FrameType, PipelineFrame, parse_server_message
from playback_scheduler import PlaybackScheduler
from system_tasks import COMMAND_FAILURE
from tool_dispatcher import ToolCall, ToolDispatcher, ToolResponse, tools_config

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    ERROR = "error"


class PermissionFault(RuntimeError):
    """The microphone could not be opened (denied or missing)."""


class SessionStateError(RuntimeError):
    """Operation not valid in the session's current state."""


@dataclass
class Transcript:
    """Running captions for the current turn."""
    user: str = ""
    assistant: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.user and not self.assistant

    def clear(self):
        self.user = ""
        self.assistant = ""


# ── Microphone ──────────────────────────────────────────────────────

class MicrophoneCapture:
    """PyAudio input stream delivering float32 frames to the event loop.

    acquire() opens the device (the point where access can be refused);
    attach() starts the stream and installs the per-frame tap. PortAudio
    calls back on its own thread, so frames are handed to the loop with
    call_soon_threadsafe and the tap itself always runs on the loop.
    """

    def __init__(self, sample_rate: int = INPUT_SAMPLE_RATE,
                 frames_per_buffer: int = CAPTURE_FRAMES):
        self.sample_rate = sample_rate
        self.frames_per_buffer = frames_per_buffer
        self._pa = None
        self._stream = None
        self._tap: Optional[Callable[[np.ndarray], None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._continue = None

    def acquire(self):
        import pyaudio

        self._continue = pyaudio.paContinue
        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self.frames_per_buffer,
                stream_callback=self._callback,
                start=False,
            )
        except OSError as e:
            self.close()
            raise PermissionFault(f"microphone unavailable: {e}") from e
        logger.info("Microphone acquired (%d Hz)", self.sample_rate)

    def attach(self, tap: Callable[[np.ndarray], None]):
        self._loop = asyncio.get_running_loop()
        self._tap = tap
        if self._stream is not None and not self._stream.is_active():
            self._stream.start_stream()

    def _callback(self, in_data, frame_count, time_info, status):
        tap, loop = self._tap, self._loop
        if tap is not None and loop is not None and in_data:
            samples = np.frombuffer(in_data, dtype=np.float32).copy()
            try:
                loop.call_soon_threadsafe(tap, samples)
            except RuntimeError:
                pass  # loop already closed during shutdown
        return None, self._continue

    def close(self):
        """Stop the stream and release the device. Safe to call repeatedly."""
        self._tap = None
        stream, self._stream = self._stream, None
        pa, self._pa = self._pa, None
        if stream is not None:
            try:
                if stream.is_active():
                    stream.stop_stream()
                stream.close()
            except OSError as e:
                logger.debug("Closing mic stream: %s", e)
        if pa is not None:
            pa.terminate()
            logger.info("Microphone released")


# ── Duplex channel ──────────────────────────────────────────────────

@dataclass
class ChannelCallbacks:
    on_open: Callable[[], None]
    on_message: Callable[[dict], None]
    on_error: Callable[[Exception], None]
    on_close: Callable[[], None]


class GeminiLiveChannel:
    """WebSocket client for the BidiGenerateContent endpoint.

    on_open fires once the server acknowledges setup; on_message gets every
    decoded server message in arrival order; on_close fires exactly once when
    the receive loop ends, whatever the cause.
    """

    def __init__(self, api_key: str, url: str = LIVE_URL):
        self.api_key = api_key
        self.url = url
        self.ws = None
        self._callbacks: Optional[ChannelCallbacks] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self.ws is not None and self._recv_task is not None and not self._recv_task.done()

    async def connect(self, model: str, callbacks: ChannelCallbacks, config: dict):
        self._callbacks = callbacks
        self.ws = await websockets.connect(
            f"{self.url}?key={self.api_key}",
            ping_interval=20,
            max_size=None,
        )
        setup = {
            "model": model if model.startswith("models/") else f"models/{model}",
            "generationConfig": {"responseModalities": config["responseModalities"]},
            "systemInstruction": {"parts": [{"text": config["systemInstruction"]}]},
            "tools": config["tools"],
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
        await self.ws.send(json.dumps({"setup": setup}))
        self._recv_task = asyncio.create_task(self._receive_loop(), name="live-receive")
        logger.info("Live API: connected, setup sent (%s)", setup["model"])

    async def _receive_loop(self):
        cb = self._callbacks
        try:
            async for message in self.ws:
                data = json.loads(message)
                if not self._opened and "setupComplete" in data:
                    self._opened = True
                    cb.on_open()
                cb.on_message(data)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Live API: connection closed (%s)", e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Live API: receive error: %s", e)
            cb.on_error(e)
        finally:
            cb.on_close()

    async def send_realtime_input(self, media: dict):
        await self.ws.send(json.dumps({"realtimeInput": {"mediaChunks": [media]}}))

    async def send_tool_response(self, function_responses: list[dict]):
        await self.ws.send(json.dumps({"toolResponse": {"functionResponses": function_responses}}))

    async def close(self):
        ws = self.ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Live API: close error: %s", e)
        task = self._recv_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                task.cancel()
        self.ws = None


# ── Session engine ──────────────────────────────────────────────────

class LiveSession:
    """One live duplex voice session at a time.

    Usage:
        session = LiveSession(dispatcher, scheduler, settings)
        await session.start()
        await session.wait_closed()   # or: await session.stop()
    """

    def __init__(self, dispatcher: ToolDispatcher, scheduler: PlaybackScheduler,
                 settings: Optional[Settings] = None, bus: Optional[EventBus] = None,
                 feedback: Optional[Feedback] = None,
                 channel_factory: Optional[Callable[[], GeminiLiveChannel]] = None,
                 capture_factory: Optional[Callable[[], MicrophoneCapture]] = None,
                 clear_delay: float = TRANSCRIPT_CLEAR_DELAY,
                 outbound_queue_size: int = OUTBOUND_QUEUE_SIZE):
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.settings = settings or Settings()
        self.bus = bus or EventBus("live_session", "local")
        self.feedback = feedback or Feedback()
        self._channel_factory = channel_factory or (lambda: GeminiLiveChannel(self.settings.api_key))
        self._capture_factory = capture_factory or MicrophoneCapture
        self.clear_delay = clear_delay
        self.outbound_queue_size = outbound_queue_size

        self._state = SessionState.IDLE
        self.transcript = Transcript()

        # Generation ID: callbacks from a torn-down channel carry an old ID and are ignored
        self.generation_id = 0
        self._live_generation: Optional[int] = None

        self._capture: Optional[MicrophoneCapture] = None
        self._channel: Optional[GeminiLiveChannel] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._clear_timers: set[asyncio.TimerHandle] = set()
        self._tool_tasks: set[asyncio.Task] = set()
        self.pending_tool_calls: dict[str, ToolCall] = {}
        self._inbound_seq = 0
        self.frames_sent = 0
        self.frames_dropped = 0
        self._closed = asyncio.Event()
        self._closed.set()

        self._handlers: dict[FrameType, Callable[[PipelineFrame], None]] = {
            FrameType.SETUP_COMPLETE: self._handle_setup_complete,
            FrameType.TOOL_CALL: self._handle_tool_call,
            FrameType.AUDIO: self._handle_audio,
            FrameType.INPUT_TRANSCRIPT: self._handle_input_transcript,
            FrameType.OUTPUT_TRANSCRIPT: self._handle_output_transcript,
            FrameType.TURN_COMPLETE: self._handle_turn_complete,
            FrameType.INTERRUPTED: self._handle_interrupted,
            FrameType.GO_AWAY: self._handle_go_away,
        }

    # ── State ──────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state: SessionState):
        if state == self._state:
            return
        logger.info("Live session: %s -> %s", self._state.value, state.value)
        self._state = state
        self.bus.emit(EventType.STATE, state=state.value)

    # ── Start / stop ───────────────────────────────────────────────

    async def start(self):
        """Open the mic and the duplex channel. Valid only from IDLE.

        Raises:
            SessionStateError: a session is already running.
            PermissionFault: the microphone was refused; no channel was opened.
        """
        if self._state != SessionState.IDLE:
            raise SessionStateError(f"cannot start from {self._state.value}")

        self.generation_id += 1
        gen = self.generation_id
        self._live_generation = gen
        self._closed.clear()
        self._inbound_seq = 0
        self.frames_sent = 0
        self.frames_dropped = 0
        self._set_state(SessionState.CONNECTING)

        try:
            capture = self._capture_factory()
            self._capture = capture
            try:
                capture.acquire()
            except PermissionFault:
                self.feedback.show("MIC_ACCESS_DENIED", "error")
                raise

            self._outbound = asyncio.Queue(maxsize=self.outbound_queue_size)
            channel = self._channel_factory()
            self._channel = channel
            await channel.connect(
                model=self.settings.model,
                callbacks=ChannelCallbacks(
                    on_open=lambda: self._on_open(gen),
                    on_message=lambda msg: self._on_message(gen, msg),
                    on_error=lambda exc: self._on_error(gen, exc),
                    on_close=lambda: self._on_close(gen),
                ),
                config={
                    "responseModalities": ["AUDIO"],
                    "tools": tools_config(),
                    "systemInstruction": self.settings.system_instruction,
                },
            )
        except Exception as e:
            if not isinstance(e, PermissionFault):
                logger.error("Live session: setup failed: %s", e)
                self.feedback.show("NEURAL_LINK_FAULT", "error")
            self.bus.emit(EventType.ERROR, stage="start", error=str(e))
            self._teardown("start failed")
            await self._await_channel_close()
            raise

    async def stop(self):
        """User-initiated stop. No-op when idle; never raises."""
        if self._state == SessionState.IDLE:
            await self._await_channel_close()
            return
        self._set_state(SessionState.CLOSING)
        self._teardown("stopped by user")
        await self._await_channel_close()

    async def wait_closed(self):
        await self._closed.wait()

    def _teardown(self, reason: str):
        """Release everything the session holds. Idempotent, safe from any state."""
        if self._state == SessionState.IDLE and self._capture is None and self._channel is None:
            return
        logger.info("Live session: teardown (%s)", reason)
        self._live_generation = None

        capture, self._capture = self._capture, None
        if capture is not None:
            try:
                capture.close()
            except Exception as e:
                logger.error("Live session: mic close failed: %s", e)

        if self._sender_task is not None:
            self._sender_task.cancel()
            self._sender_task = None
        self._outbound = None

        for handle in self._clear_timers:
            handle.cancel()
        self._clear_timers.clear()

        channel, self._channel = self._channel, None
        if channel is not None:
            self._close_task = asyncio.create_task(channel.close(), name="live-close")

        if self.pending_tool_calls:
            # Dispatched calls may still finish; their responses are dropped
            logger.info("Live session: %d tool call(s) unanswered at teardown",
                        len(self.pending_tool_calls))
            self.pending_tool_calls.clear()

        self.scheduler.interrupt()
        self._clear_transcript()
        self._set_state(SessionState.IDLE)
        self._closed.set()

    async def _await_channel_close(self):
        task, self._close_task = self._close_task, None
        if task is None or task is asyncio.current_task():
            return
        try:
            await task
        except Exception as e:
            logger.debug("Live session: channel close failed: %s", e)

    # ── Channel callbacks ──────────────────────────────────────────

    def _is_current(self, gen: int) -> bool:
        return gen == self._live_generation

    def _on_open(self, gen: int):
        if not self._is_current(gen) or self._state != SessionState.CONNECTING:
            return
        self._capture.attach(self._capture_tap)
        self._sender_task = asyncio.create_task(self._send_loop(gen), name="live-send")
        self._set_state(SessionState.ACTIVE)

    def _on_message(self, gen: int, msg: dict):
        if not self._is_current(gen):
            return
        for frame in parse_server_message(msg):
            handler = self._handlers.get(frame.type)
            if handler is None:
                continue
            try:
                handler(frame)
            except Exception as e:
                logger.error("Live session: %s handler failed: %s", frame.type.name, e, exc_info=True)

    def _on_error(self, gen: int, exc: Exception):
        if not self._is_current(gen):
            return
        self.feedback.show("NEURAL_LINK_FAULT", "error")
        self.bus.emit(EventType.ERROR, stage="channel", error=str(exc))
        self._set_state(SessionState.ERROR)
        self._teardown(f"channel error: {exc}")

    def _on_close(self, gen: int):
        if not self._is_current(gen):
            return
        self._teardown("remote closed")

    # ── Outbound audio ─────────────────────────────────────────────

    def _capture_tap(self, samples: np.ndarray):
        """Per-frame mic callback. Never awaits; drops the oldest frame when full."""
        queue = self._outbound
        if queue is None or self._state != SessionState.ACTIVE:
            return
        blob = media_blob(samples, INPUT_SAMPLE_RATE)
        if queue.full():
            try:
                queue.get_nowait()
                self.frames_dropped += 1
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(blob)

    async def _send_loop(self, gen: int):
        queue = self._outbound
        channel = self._channel
        while self._is_current(gen):
            blob = await queue.get()
            try:
                await channel.send_realtime_input(blob)
                self.frames_sent += 1
            except websockets.exceptions.ConnectionClosed:
                logger.debug("Live session: channel closed while sending audio")
                return
            if self.frames_sent % 100 == 0:
                logger.debug("Live session: sent %d audio frames", self.frames_sent)

    # ── Inbound dispatch table ─────────────────────────────────────

    def _handle_setup_complete(self, frame: PipelineFrame):
        logger.debug("Live session: setup complete")

    def _handle_tool_call(self, frame: PipelineFrame):
        call = ToolCall.from_wire(frame.data)
        self.pending_tool_calls[call.id] = call
        self.bus.emit(EventType.TOOL_CALL, id=call.id, name=call.name, args=call.args)
        task = asyncio.create_task(self._answer_tool_call(self._live_generation, call),
                                   name=f"tool-{call.id}")
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _answer_tool_call(self, gen: int, call: ToolCall):
        try:
            response = await self.dispatcher.dispatch(call)
        except Exception as e:
            logger.error("Live session: dispatcher raised for %s: %s", call.name, e)
            response = ToolResponse(id=call.id, name=call.name, result=COMMAND_FAILURE)

        channel = self._channel
        if not self._is_current(gen) or channel is None:
            logger.info("Live session: dropping response for %s (%s), channel gone",
                        call.id, call.name)
            return
        try:
            await channel.send_tool_response([response.to_wire()])
        except websockets.exceptions.ConnectionClosed:
            logger.info("Live session: channel closed before response to %s", call.id)
            return
        self.pending_tool_calls.pop(call.id, None)
        self.bus.emit(EventType.TOOL_RESPONSE, id=response.id, name=response.name,
                      result=response.result)

    def _handle_audio(self, frame: PipelineFrame):
        self._inbound_seq += 1
        rate = parse_pcm_rate(frame.metadata.get("mime_type"), OUTPUT_SAMPLE_RATE)
        try:
            chunk = decode_inbound(frame.data, rate, CHANNELS, seq=self._inbound_seq)
        except DecodeFault as e:
            logger.debug("Live session: dropping inbound chunk %d: %s", self._inbound_seq, e)
            self.bus.emit(EventType.AUDIO_DROPPED, seq=self._inbound_seq, error=str(e))
            return
        start = self.scheduler.enqueue(chunk)
        self.bus.emit(EventType.AUDIO_CHUNK, seq=chunk.seq, start=start, duration=chunk.duration)

    def _handle_input_transcript(self, frame: PipelineFrame):
        self.transcript.user += frame.data
        self.bus.emit(EventType.USER_TRANSCRIPT, text=frame.data, full=self.transcript.user)

    def _handle_output_transcript(self, frame: PipelineFrame):
        self.transcript.assistant += frame.data
        self.bus.emit(EventType.ASSISTANT_TRANSCRIPT, text=frame.data, full=self.transcript.assistant)

    def _handle_turn_complete(self, frame: PipelineFrame):
        # Cleared unconditionally, even if the next turn has started captioning
        loop = asyncio.get_running_loop()
        handle = None

        def _fire():
            self._clear_timers.discard(handle)
            self._clear_transcript()

        handle = loop.call_later(self.clear_delay, _fire)
        self._clear_timers.add(handle)

    def _handle_interrupted(self, frame: PipelineFrame):
        self.scheduler.interrupt()
        self.bus.emit(EventType.BARGE_IN, active=self.scheduler.active_count)

    def _handle_go_away(self, frame: PipelineFrame):
        logger.warning("Live session: server going away (%s)", frame.data)

    def _clear_transcript(self):
        if self.transcript.is_empty:
            return
        self.transcript.clear()
        self.bus.emit(EventType.TRANSCRIPT_CLEARED)
