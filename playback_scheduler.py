"""Gapless playback of inbound speech with barge-in cancellation.

The scheduler owns the output device and the "next start time" cursor. Each
inbound chunk is placed on the device timeline right after the previous one,
or at "now" if playback has drained, so chunks that arrive in bursts of
varying size still play back-to-back in arrival order.

interrupt() stops everything that is scheduled or playing and moves the
cursor back to the device clock, so the next answer starts fresh instead of
queueing behind audio the user already talked over.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from audio_codec import AudioChunk
from config import CHANNELS, OUTPUT_SAMPLE_RATE

logger = logging.getLogger(__name__)

_HISTORY_SIZE = 256


@dataclass(eq=False)
class ScheduledSource:
    """Handle for one chunk placed on the device timeline."""
    start_time: float
    duration: float
    samples: np.ndarray = None
    start_frame: int = 0
    stopped: bool = False

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


@dataclass(frozen=True)
class PlaybackRecord:
    seq: int
    start_time: float
    duration: float


class PyAudioOutputDevice:
    """PortAudio output stream with a sample clock and scheduled sources.

    The stream runs in callback mode. Every callback renders one window of
    frames, mixing in each scheduled source at its exact start frame, and
    then advances the frame counter that serves as the device clock. A fresh
    device is suspended (clock stopped) until resume() starts the stream.
    """

    def __init__(self, sample_rate: int = OUTPUT_SAMPLE_RATE, channels: int = CHANNELS,
                 frames_per_buffer: int = 1024):
        import pyaudio

        self.sample_rate = sample_rate
        self.channels = channels
        self._pa = pyaudio.PyAudio()
        self._lock = threading.Lock()
        self._sources: list[ScheduledSource] = []
        self._frames_rendered = 0
        self._continue = pyaudio.paContinue
        self._stream = self._pa.open(
            format=pyaudio.paFloat32,
            channels=channels,
            rate=sample_rate,
            output=True,
            frames_per_buffer=frames_per_buffer,
            stream_callback=self._callback,
            start=False,
        )
        logger.info("Output device opened (%d Hz, %d ch)", sample_rate, channels)

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    @property
    def suspended(self) -> bool:
        return self._stream is None or not self._stream.is_active()

    def resume(self):
        if self._stream is not None and not self._stream.is_active():
            self._stream.start_stream()

    def start(self, buffer: AudioChunk, when: float) -> ScheduledSource:
        samples = self._conform(buffer)
        source = ScheduledSource(
            start_time=when,
            duration=buffer.duration,
            samples=samples,
            start_frame=int(round(when * self.sample_rate)),
        )
        with self._lock:
            self._sources.append(source)
        return source

    def stop(self, source: ScheduledSource):
        with self._lock:
            source.stopped = True
            if source in self._sources:
                self._sources.remove(source)

    def close(self):
        with self._lock:
            self._sources.clear()
        if self._stream is not None:
            try:
                self._stream.stop_stream()
                self._stream.close()
            finally:
                self._stream = None
                self._pa.terminate()
        logger.info("Output device closed")

    def _conform(self, buffer: AudioChunk) -> np.ndarray:
        """Match the device's rate and channel count."""
        samples = buffer.samples
        if buffer.sample_rate != self.sample_rate and buffer.frames:
            out_len = int(round(buffer.frames * self.sample_rate / buffer.sample_rate))
            src_x = np.arange(buffer.frames)
            dst_x = np.linspace(0, buffer.frames - 1, out_len)
            samples = np.stack(
                [np.interp(dst_x, src_x, samples[:, c]) for c in range(samples.shape[1])],
                axis=1,
            ).astype(np.float32)
        if samples.shape[1] != self.channels:
            mono = samples.mean(axis=1, keepdims=True)
            samples = np.repeat(mono, self.channels, axis=1)
        return samples

    def _callback(self, in_data, frame_count, time_info, status):
        out = np.zeros((frame_count, self.channels), dtype=np.float32)
        with self._lock:
            window_start = self._frames_rendered
            window_end = window_start + frame_count
            finished = []
            for source in self._sources:
                src_start = source.start_frame
                src_end = src_start + source.samples.shape[0]
                if src_end <= window_start:
                    finished.append(source)
                    continue
                if src_start >= window_end:
                    continue
                lo = max(src_start, window_start)
                hi = min(src_end, window_end)
                out[lo - window_start:hi - window_start] += source.samples[lo - src_start:hi - src_start]
                if src_end <= window_end:
                    finished.append(source)
            for source in finished:
                self._sources.remove(source)
            self._frames_rendered = window_end
        np.clip(out, -1.0, 1.0, out=out)
        return out.tobytes(), self._continue


class PlaybackScheduler:
    """Owns the output device and the playback cursor.

    Nothing outside this class reads or writes the cursor or the active set.

    Usage:
        scheduler = PlaybackScheduler()
        scheduler.enqueue(chunk)   # plays right after whatever is queued
        scheduler.interrupt()      # barge-in: silence now, cursor back to now
    """

    def __init__(self, device_factory: Optional[Callable[[], object]] = None):
        self._device_factory = device_factory or PyAudioOutputDevice
        self._device = None
        self._next_start_time = 0.0
        self._active: set = set()
        self.history: deque[PlaybackRecord] = deque(maxlen=_HISTORY_SIZE)

    # -- Device --

    def _ensure_device(self):
        """Acquire the device on first use; resume it if suspended."""
        if self._device is None:
            self._device = self._device_factory()
        if self._device.suspended:
            self._device.resume()
        return self._device

    @property
    def device_time(self) -> float:
        if self._device is None:
            return 0.0
        return self._device.current_time

    # -- Scheduling --

    @property
    def next_start_time(self) -> float:
        return self._next_start_time

    @property
    def active_count(self) -> int:
        return len(self._active)

    def enqueue(self, buffer: AudioChunk) -> float:
        """Schedule buffer right after the previous one. Returns its start time."""
        device = self._ensure_device()
        now = device.current_time
        self._prune(now)

        start = max(self._next_start_time, now)
        handle = device.start(buffer, start)
        self._next_start_time = start + buffer.duration
        self._active.add(handle)
        self.history.append(PlaybackRecord(buffer.seq, start, buffer.duration))
        logger.debug("Scheduled chunk %d at %.3fs (%.3fs)", buffer.seq, start, buffer.duration)
        return start

    def interrupt(self):
        """Stop every scheduled or playing chunk and reset the cursor to now."""
        if self._device is None:
            self._active.clear()
            self._next_start_time = 0.0
            return

        stopped = 0
        for handle in list(self._active):
            try:
                self._device.stop(handle)
                stopped += 1
            except Exception as e:
                logger.debug("Stopping source failed: %s", e)
        self._active.clear()
        self._next_start_time = self._device.current_time
        if stopped:
            logger.info("Playback interrupted (%d sources stopped)", stopped)

    def _prune(self, now: float):
        done = [h for h in self._active if h.end_time <= now]
        for handle in done:
            self._active.discard(handle)

    def close(self):
        """Release the output device. A later enqueue acquires a new one."""
        self.interrupt()
        if self._device is not None:
            device, self._device = self._device, None
            device.close()
        self._next_start_time = 0.0
