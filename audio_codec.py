"""PCM <-> transport conversions for the live audio channel.

Outbound mic audio is float32 in [-1, 1]; the wire carries base64 of 16-bit
little-endian PCM. Inbound speech comes back the same way and is turned into
an AudioChunk the playback scheduler can place on the output timeline.

Pure functions, no state.
"""

import base64
import binascii
import re
from dataclasses import dataclass

import numpy as np

from config import INPUT_SAMPLE_RATE, OUTPUT_SAMPLE_RATE

SAMPLE_WIDTH = 2  # bytes per 16-bit sample

_RATE_RE = re.compile(r'rate=(\d+)')


class DecodeFault(ValueError):
    """Inbound audio payload could not be turned into samples."""


@dataclass(frozen=True)
class AudioChunk:
    """Immutable block of float32 PCM, shaped (frames, channels)."""
    samples: np.ndarray
    sample_rate: int = OUTPUT_SAMPLE_RATE
    channels: int = 1
    seq: int = 0  # arrival order for inbound chunks

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate


def encode_outbound(samples) -> str:
    """Float PCM in [-1, 1] -> base64 of int16 little-endian."""
    data = np.asarray(samples, dtype=np.float32).reshape(-1)
    if data.size == 0:
        return ""
    pcm = np.clip(data * 32768.0, -32768, 32767).astype('<i2')
    return base64.b64encode(pcm.tobytes()).decode('ascii')


def media_blob(samples, sample_rate: int = INPUT_SAMPLE_RATE) -> dict:
    """Wrap encoded samples the way the Live API expects realtime media."""
    return {
        "data": encode_outbound(samples),
        "mimeType": f"audio/pcm;rate={sample_rate}",
    }


def decode_inbound(chunk, sample_rate: int = OUTPUT_SAMPLE_RATE,
                   channels: int = 1, seq: int = 0) -> AudioChunk:
    """Base64 int16 PCM -> AudioChunk scaled back to [-1, 1).

    Raises:
        DecodeFault: payload is not base64, or its byte length is not a whole
            number of 16-bit samples, or the sample rate is not positive.
    """
    if sample_rate <= 0:
        raise DecodeFault(f"invalid sample rate {sample_rate}")
    if isinstance(chunk, str):
        chunk = chunk.encode('ascii', errors='replace')
    try:
        raw = base64.b64decode(chunk, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeFault(f"invalid base64 audio: {e}") from e

    if len(raw) % SAMPLE_WIDTH:
        raise DecodeFault(f"{len(raw)} bytes is not a multiple of {SAMPLE_WIDTH}")

    ints = np.frombuffer(raw, dtype='<i2')
    frames = ints.size // channels
    samples = (ints[:frames * channels].astype(np.float32) / 32768.0).reshape(frames, channels)
    return AudioChunk(samples=samples, sample_rate=sample_rate, channels=channels, seq=seq)


def parse_pcm_rate(mime_type: str | None, default: int = OUTPUT_SAMPLE_RATE) -> int:
    """Read the rate from e.g. 'audio/pcm;rate=24000'."""
    if mime_type:
        m = _RATE_RE.search(mime_type)
        if m and int(m.group(1)) > 0:
            return int(m.group(1))
    return default
